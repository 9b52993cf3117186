"""
Workflow Error Taxonomy

Every failure a caller can see is one of these.
Store and transport exceptions are translated at the repository
and ledger-client boundaries; they never leak past them.
"""

from contextlib import contextmanager
from typing import Iterator, Optional

from ..db.store import (
    ConcurrencyError,
    DocumentNotFoundError,
    DocumentStoreError,
    DuplicateKeyError,
)
from ..schemas import LedgerFailure, LedgerFailureKind


class WorkflowError(Exception):
    """Base exception for workflow errors."""
    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(WorkflowError):
    """Resource absent. Not a fault."""
    kind = "not_found"


class ValidationError(WorkflowError):
    """Malformed input or a transition the state machine does not allow."""
    kind = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class Unauthorized(WorkflowError):
    """Role or ownership check failed."""
    kind = "unauthorized"


class Conflict(WorkflowError):
    """Concurrent write race. Safe to retry after re-reading."""
    kind = "conflict"


class DuplicateActor(Conflict):
    """Wallet address already registered."""
    kind = "duplicate_actor"


class DuplicateBadge(Conflict):
    """Badge already in use by another caseworker."""
    kind = "duplicate_badge"


class StoreError(WorkflowError):
    """Underlying persistence fault, generally transient."""
    kind = "store_error"


class UploadError(WorkflowError):
    """Content-addressing service could not store the file."""
    kind = "upload_error"


class LedgerError(WorkflowError):
    """
    A classified ledger failure.

    The reason is human-readable; the kind is one of LedgerFailureKind.
    """
    kind = "ledger_error"

    def __init__(self, failure_kind: LedgerFailureKind, reason: str):
        super().__init__(reason)
        self.failure_kind = failure_kind
        self.reason = reason

    def to_failure(self) -> LedgerFailure:
        return LedgerFailure(kind=self.failure_kind, reason=self.reason)


class LedgerTimeout(LedgerError):
    """Ledger confirmation did not arrive within the configured bound."""

    def __init__(self, timeout_seconds: float):
        super().__init__(
            LedgerFailureKind.TIMEOUT,
            f"Ledger confirmation not received within {timeout_seconds:g}s",
        )
        self.timeout_seconds = timeout_seconds


_DUPLICATES = {
    ("actors", "wallet_address"): lambda e: DuplicateActor(
        f"Wallet {e.value} is already registered"
    ),
    ("caseworkers", "badge"): lambda e: DuplicateBadge(
        f"Badge {e.value} is already assigned to another caseworker"
    ),
    ("caseworkers", "actor_id"): lambda e: ValidationError(
        "Actor already has a caseworker profile", field="actor_id"
    ),
}


@contextmanager
def translate_store_errors(collection: str) -> Iterator[None]:
    """
    Translate DocumentStore exceptions into workflow errors.

    Usage:
        with translate_store_errors(CASES):
            doc = await self._store.update(CASES, case_id, changes, expected_version=v)
    """
    try:
        yield
    except DuplicateKeyError as e:
        factory = _DUPLICATES.get((e.collection, e.field))
        if factory is not None:
            raise factory(e) from e
        raise Conflict(str(e)) from e
    except ConcurrencyError as e:
        raise Conflict(
            f"{collection} record {e.doc_id} was modified concurrently; re-read and retry"
        ) from e
    except DocumentNotFoundError as e:
        raise NotFound(str(e)) from e
    except DocumentStoreError as e:
        raise StoreError(f"Document store failure on {collection}: {e}") from e
