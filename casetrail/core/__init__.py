# Core workflow logic for CaseTrail
from .audit import AuditTrail
from .cases import CaseRepository, format_case_number
from .caseworkers import CaseworkerAdministration
from .documents import ContentAddressingService, DocumentReferenceStore, InMemoryContentStore
from .errors import (
    Conflict,
    DuplicateActor,
    DuplicateBadge,
    LedgerError,
    LedgerTimeout,
    NotFound,
    StoreError,
    Unauthorized,
    UploadError,
    ValidationError,
    WorkflowError,
)
from .hasher import CanonicalSerializationError, Hasher
from .identity import IdentityResolver
from .ledger_client import (
    GatewayLedgerClient,
    LedgerClient,
    LedgerConfig,
    SimulatedLedgerClient,
    classify_failure,
    create_ledger_client,
)
from .signer import Signer
from .signing_service import SigningService, get_signing_service
from .stats import AggregateStats
from .workflow import ALLOWED_TRANSITIONS, WorkflowEngine, is_transition_allowed

__all__ = [
    "AuditTrail",
    "CaseRepository",
    "format_case_number",
    "CaseworkerAdministration",
    "ContentAddressingService",
    "DocumentReferenceStore",
    "InMemoryContentStore",
    "Conflict",
    "DuplicateActor",
    "DuplicateBadge",
    "LedgerError",
    "LedgerTimeout",
    "NotFound",
    "StoreError",
    "Unauthorized",
    "UploadError",
    "ValidationError",
    "WorkflowError",
    "CanonicalSerializationError",
    "Hasher",
    "IdentityResolver",
    "GatewayLedgerClient",
    "LedgerClient",
    "LedgerConfig",
    "SimulatedLedgerClient",
    "classify_failure",
    "create_ledger_client",
    "Signer",
    "SigningService",
    "get_signing_service",
    "AggregateStats",
    "ALLOWED_TRANSITIONS",
    "WorkflowEngine",
    "is_transition_allowed",
]
