"""Settlement coordinator - Authoritative state machine over encrypted positions."""

from confidential_futures.coordinator.encryption import (
    Ciphertext,
    FheEngine,
    FheEngineError,
    LocalFheEngine,
)
from confidential_futures.coordinator.events import EventBus, EventRecorder
from confidential_futures.coordinator.models import LedgerEvent, ProtocolConfig
from confidential_futures.coordinator.resolver import (
    LocalResolver,
    ResolverClient,
    ResolverError,
    ResolverUnavailableError,
)
from confidential_futures.coordinator.settlement import (
    AuthorizationError,
    CoordinatorError,
    RateLimitedError,
    SettlementCoordinator,
    ValidationError,
)

__all__ = [
    "AuthorizationError",
    "Ciphertext",
    "CoordinatorError",
    "EventBus",
    "EventRecorder",
    "FheEngine",
    "FheEngineError",
    "LedgerEvent",
    "LocalFheEngine",
    "LocalResolver",
    "ProtocolConfig",
    "RateLimitedError",
    "ResolverClient",
    "ResolverError",
    "ResolverUnavailableError",
    "SettlementCoordinator",
    "ValidationError",
]
