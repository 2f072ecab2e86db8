"""Storage layer - Ledger schema and repositories."""

from confidential_futures.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
    normalize_async_database_url,
)
from confidential_futures.storage.models import (
    Base,
    DecryptionRequestModel,
    FuturesContractModel,
    PositionStatus,
    RequestKind,
    RequestStatus,
    TraderBalanceModel,
    TraderPositionModel,
    WithdrawalRequestModel,
)
from confidential_futures.storage.repos import (
    AuditEntryDTO,
    AuditRepository,
    BalanceRepository,
    ContractRepository,
    DecryptionRequestDTO,
    DecryptionRequestRepository,
    FuturesContractDTO,
    PositionRepository,
    ProcessedRequestRepository,
    ProtocolStateRepository,
    TraderPositionDTO,
    WithdrawalRequestDTO,
    WithdrawalRequestRepository,
)

__all__ = [
    "AuditEntryDTO",
    "AuditRepository",
    "BalanceRepository",
    "Base",
    "ContractRepository",
    "DatabaseManager",
    "DecryptionRequestDTO",
    "DecryptionRequestModel",
    "DecryptionRequestRepository",
    "FuturesContractDTO",
    "FuturesContractModel",
    "PositionRepository",
    "PositionStatus",
    "ProcessedRequestRepository",
    "ProtocolStateRepository",
    "RequestKind",
    "RequestStatus",
    "TraderBalanceModel",
    "TraderPositionDTO",
    "TraderPositionModel",
    "WithdrawalRequestDTO",
    "WithdrawalRequestModel",
    "WithdrawalRequestRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
    "normalize_async_database_url",
]
