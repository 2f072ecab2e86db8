"""Gateway layer - Off-chain delivery of decryption results."""

from confidential_futures.gateway.chain import (
    ChainClient,
    ChainClientError,
    HealthReport,
    RPCError,
    TransactionError,
)
from confidential_futures.gateway.sources import (
    BusEventSource,
    ChainEventSource,
    GatewayEventSource,
)
from confidential_futures.gateway.state import (
    FileGatewayStateStore,
    GatewayState,
    GatewayStateError,
    RedisGatewayStateStore,
)
from confidential_futures.gateway.submitters import (
    CallbackSubmissionError,
    CallbackSubmitter,
    ChainCallbackSubmitter,
    CoordinatorCallbackSubmitter,
    GatewayError,
)
from confidential_futures.gateway.worker import GatewayWorker, WorkerState, WorkerStats

__all__ = [
    "BusEventSource",
    "CallbackSubmissionError",
    "CallbackSubmitter",
    "ChainCallbackSubmitter",
    "ChainClient",
    "ChainClientError",
    "ChainEventSource",
    "CoordinatorCallbackSubmitter",
    "FileGatewayStateStore",
    "GatewayError",
    "GatewayEventSource",
    "GatewayState",
    "GatewayStateError",
    "GatewayWorker",
    "HealthReport",
    "RPCError",
    "RedisGatewayStateStore",
    "TransactionError",
    "WorkerState",
    "WorkerStats",
]
