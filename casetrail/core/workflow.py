"""
Workflow Engine - Case Lifecycle and the Two-Phase Write

Every mutation in the system goes through here. The engine:
- Authorizes the acting wallet
- Validates the transition against the state machine
- Orders the store write and the ledger call
- Records the audit entry
- Classifies the outcome

ORDERING POLICY:
    Privilege grants are chain-first. Assignment, verification approval
    and caseworker creation call the ledger before touching the store;
    a ledger failure leaves the store untouched and surfaces as
    LedgerError.

    Descriptive records are store-first. Registration, filing and status
    updates persist immediately; the ledger call is best-effort and a
    failure yields a PARTIAL outcome carrying the classified failure.

    Rejecting a verification request is store-only.

LEDGER CALLS:
    Bounded by ledger_timeout (CASETRAIL_LEDGER_TIMEOUT_SECONDS);
    expiry raises LedgerTimeout. Never retried automatically.

CANCELLATION:
    Before a chain-first ledger call returns, cancelling the caller
    leaves nothing behind. Once the ledger has confirmed, the store
    write runs under asyncio.shield and completes regardless.
    Store-first audit appends are shielded the same way.

CONFLICTS:
    After a confirmed chain-first call the ledger side effect exists, so
    a version conflict re-reads the record and re-applies the write
    (up to max_reapply_attempts). Store-first conflicts surface as
    Conflict before any ledger call.
"""

import asyncio
import time
from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar
from uuid import UUID

from ..db.store import DocumentStore
from ..observability import get_logger, get_metrics
from ..schemas import (
    Actor,
    ActorRole,
    Case,
    CaseStatus,
    CaseUpdate,
    CaseworkerWithActor,
    DocumentOwnerKind,
    IncidentCategory,
    LedgerFailure,
    LedgerFailureKind,
    LedgerMethod,
    OutcomeStatus,
    TransitionResult,
    VerificationStatus,
    utcnow,
)
from .audit import AuditTrail
from .cases import CaseRepository
from .caseworkers import CaseworkerAdministration
from .documents import ContentAddressingService, DocumentReferenceStore, InMemoryContentStore
from .errors import (
    Conflict,
    DuplicateBadge,
    LedgerError,
    LedgerTimeout,
    NotFound,
    Unauthorized,
    ValidationError,
)
from .identity import IdentityResolver
from .ledger_client import LedgerClient

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_LEDGER_TIMEOUT_SECONDS = 90.0
DEFAULT_REAPPLY_ATTEMPTS = 3


# State machine. Self-transitions on non-terminal states are permitted
# and still produce an audit entry.
ALLOWED_TRANSITIONS: dict[CaseStatus, frozenset[CaseStatus]] = {
    CaseStatus.PENDING: frozenset({
        CaseStatus.PENDING,
        CaseStatus.IN_PROGRESS,
        CaseStatus.REJECTED,
    }),
    CaseStatus.IN_PROGRESS: frozenset({
        CaseStatus.IN_PROGRESS,
        CaseStatus.CLOSED,
        CaseStatus.REJECTED,
    }),
    CaseStatus.CLOSED: frozenset(),
    CaseStatus.REJECTED: frozenset(),
}


def is_transition_allowed(current: CaseStatus, new: CaseStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


def _require_role(actor: Optional[Actor], roles: tuple[ActorRole, ...], action: str) -> Actor:
    if actor is None:
        raise Unauthorized(f"{action} requires a registered wallet")
    if not actor.is_verified or actor.role not in roles:
        allowed = " or ".join(r.value for r in roles)
        raise Unauthorized(f"{action} requires a verified {allowed}")
    return actor


def _require_text(value: Optional[str], field: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{field} must not be blank", field=field)
    return text


class WorkflowEngine:
    """
    Single entry point for every state-changing operation.

    Mutating methods return TransitionResult with outcome CONFIRMED,
    PARTIAL or UNCHANGED, or raise a WorkflowError subclass.
    """

    def __init__(
        self,
        identity: IdentityResolver,
        cases: CaseRepository,
        caseworkers: CaseworkerAdministration,
        audit: AuditTrail,
        documents: DocumentReferenceStore,
        ledger: LedgerClient,
        ledger_timeout: float = DEFAULT_LEDGER_TIMEOUT_SECONDS,
        max_reapply_attempts: int = DEFAULT_REAPPLY_ATTEMPTS,
    ):
        self.identity = identity
        self.cases = cases
        self.caseworkers = caseworkers
        self.audit = audit
        self.documents = documents
        self._ledger = ledger
        self._ledger_timeout = ledger_timeout
        self._max_reapply_attempts = max_reapply_attempts

    @classmethod
    def build(
        cls,
        store: DocumentStore,
        ledger: LedgerClient,
        content: Optional[ContentAddressingService] = None,
        content_gateway: Optional[str] = None,
        ledger_timeout: float = DEFAULT_LEDGER_TIMEOUT_SECONDS,
    ) -> "WorkflowEngine":
        """Wire every component against one store handle."""
        identity = IdentityResolver(store)
        audit = AuditTrail(store)
        cases = CaseRepository(store, identity, audit)
        return cls(
            identity=identity,
            cases=cases,
            caseworkers=CaseworkerAdministration(store, cases),
            audit=audit,
            documents=DocumentReferenceStore(
                store, content or InMemoryContentStore(), gateway_base=content_gateway
            ),
            ledger=ledger,
            ledger_timeout=ledger_timeout,
        )

    # --------------------------------------------------------
    # Ledger helpers
    # --------------------------------------------------------

    async def _confirm(self, method: LedgerMethod, args: list) -> str:
        """Invoke the ledger within the timeout; raise LedgerError on any failure."""
        start = time.perf_counter()
        try:
            tx_id = await asyncio.wait_for(
                self._ledger.invoke(method, args), timeout=self._ledger_timeout
            )
        except asyncio.TimeoutError as e:
            get_metrics().record_ledger_call(
                (time.perf_counter() - start) * 1000, LedgerFailureKind.TIMEOUT.value
            )
            raise LedgerTimeout(self._ledger_timeout) from e
        except LedgerError as e:
            get_metrics().record_ledger_call(
                (time.perf_counter() - start) * 1000, e.failure_kind.value
            )
            raise

        get_metrics().record_ledger_call((time.perf_counter() - start) * 1000)
        return tx_id

    async def _best_effort(
        self, method: LedgerMethod, args: list
    ) -> tuple[Optional[str], Optional[LedgerFailure]]:
        try:
            return await self._confirm(method, args), None
        except LedgerError as e:
            logger.warning(
                "Ledger confirmation failed; record kept without it",
                method=method.value,
                failure_kind=e.failure_kind.value,
                reason=e.reason,
            )
            return None, e.to_failure()

    async def _reapply(self, operation: str, write: Callable[[], Awaitable[T]]) -> T:
        """Run a post-ledger store write, re-reading on version conflicts."""
        attempt = 1
        while True:
            try:
                return await write()
            except Conflict:
                if attempt >= self._max_reapply_attempts:
                    logger.error(
                        "Store write kept conflicting after ledger confirmation",
                        operation=operation,
                        attempts=attempt,
                    )
                    raise
                logger.warning("Re-applying write after conflict", operation=operation, attempt=attempt)
                attempt += 1

    @staticmethod
    def _result(
        operation: str,
        resource: T,
        tx_id: Optional[str] = None,
        failure: Optional[LedgerFailure] = None,
        unchanged: bool = False,
    ) -> TransitionResult:
        if unchanged:
            outcome = OutcomeStatus.UNCHANGED
        elif failure is not None:
            outcome = OutcomeStatus.PARTIAL
        else:
            outcome = OutcomeStatus.CONFIRMED
        get_metrics().record_transition(operation, outcome.value)
        return TransitionResult(
            outcome=outcome,
            resource=resource,
            ledger_tx_id=tx_id,
            ledger_failure=failure,
        )

    # --------------------------------------------------------
    # Actors
    # --------------------------------------------------------

    async def register_actor(
        self,
        wallet_address: str,
        document_refs: Optional[list[str]] = None,
    ) -> TransitionResult[Actor]:
        """Store-first. Anyone may register; the actor starts pending with role none."""
        _require_text(wallet_address, "wallet_address")
        refs = [r.strip() for r in (document_refs or []) if r and r.strip()]

        actor = await self.identity.register(wallet_address, refs)
        if refs:
            await self.documents.record(DocumentOwnerKind.ACTOR, actor.id, refs)

        tx_id, failure = await self._best_effort(
            LedgerMethod.REGISTER_ACTOR, [actor.wallet_address, refs]
        )
        if tx_id:
            actor = await asyncio.shield(self.identity.attach_registration_tx(actor.id, tx_id))

        return self._result("register_actor", actor, tx_id, failure)

    async def set_verification(
        self,
        actor: Optional[Actor],
        target_id: UUID,
        status: VerificationStatus,
    ) -> TransitionResult[Actor]:
        """
        Approve or reject a pending actor.

        Approval: admin or caseworker, chain-first.
        Rejection: admin only, store-only.
        Verified and rejected are final.
        """
        if status == VerificationStatus.VERIFIED:
            _require_role(actor, (ActorRole.ADMIN, ActorRole.CASEWORKER), "Verifying an actor")
        elif status == VerificationStatus.REJECTED:
            _require_role(actor, (ActorRole.ADMIN,), "Rejecting an actor")
        else:
            raise ValidationError(
                f"Verification status must be verified or rejected, got {status.value}",
                field="status",
            )

        target = await self.identity.require(target_id)

        if status == VerificationStatus.VERIFIED and target.is_verified:
            return self._result("set_verification", target, unchanged=True)
        if target.verification_status != VerificationStatus.PENDING:
            raise ValidationError(
                f"Actor is already {target.verification_status.value}; verification is final",
                field="status",
            )

        if status == VerificationStatus.REJECTED:
            rejected = await self.identity.set_verification(
                target.id, status, verified_by=actor.id, expected_version=target.version
            )
            logger.info("Actor rejected", actor_id=str(target.id), by=str(actor.id))
            return self._result("set_verification", rejected)

        tx_id = await self._confirm(LedgerMethod.VERIFY_ACTOR, [target.wallet_address, True])

        async def write() -> Actor:
            current = await self.identity.require(target.id)
            if current.is_verified:
                return current
            return await self.identity.set_verification(
                current.id,
                VerificationStatus.VERIFIED,
                verified_by=actor.id,
                tx_id=tx_id,
                expected_version=current.version,
            )

        verified = await asyncio.shield(self._reapply("set_verification", write))
        logger.info(
            "Actor verified",
            actor_id=str(verified.id),
            role=verified.role.value,
            tx_id=tx_id,
        )
        return self._result("set_verification", verified, tx_id)

    # --------------------------------------------------------
    # Caseworkers
    # --------------------------------------------------------

    async def create_caseworker(
        self,
        actor: Optional[Actor],
        target_id: UUID,
        name: str,
        phone: str,
        badge: str,
        department: str,
    ) -> TransitionResult[CaseworkerWithActor]:
        """
        Admin only. Chain-first when the target still needs verification.

        The profile is created, then the actor is forced to verified with
        role caseworker, bypassing the pending-review path.
        """
        admin = _require_role(actor, (ActorRole.ADMIN,), "Creating a caseworker")
        name = _require_text(name, "name")
        phone = _require_text(phone, "phone")
        badge = _require_text(badge, "badge")
        department = _require_text(department, "department")

        target = await self.identity.require(target_id)
        if target.verification_status == VerificationStatus.REJECTED:
            raise ValidationError("Rejected actors cannot become caseworkers", field="actor_id")
        if target.role == ActorRole.ADMIN:
            raise ValidationError("Admins cannot hold a caseworker profile", field="actor_id")
        if await self.caseworkers.get_by_actor(target.id) is not None:
            raise ValidationError("Actor already has a caseworker profile", field="actor_id")
        if await self.caseworkers.badge_in_use(badge):
            raise DuplicateBadge(f"Badge {badge} is already assigned to another caseworker")

        tx_id = None
        if not target.is_verified:
            tx_id = await self._confirm(LedgerMethod.VERIFY_ACTOR, [target.wallet_address, True])

        async def write() -> CaseworkerWithActor:
            profile = await self.caseworkers.create_profile(
                target.id, name, phone, badge, department
            )

            async def promote() -> Actor:
                current = await self.identity.require(target.id)
                return await self.identity.promote_to_caseworker(
                    current.id,
                    verified_by=admin.id,
                    tx_id=tx_id,
                    expected_version=current.version,
                )

            await self._reapply("create_caseworker", promote)
            return await self.caseworkers.get(profile.id)

        created = await asyncio.shield(write())
        logger.info(
            "Caseworker created",
            caseworker_id=str(created.id),
            actor_id=str(target.id),
            badge=badge,
            tx_id=tx_id,
        )
        return self._result("create_caseworker", created, tx_id)

    async def create_caseworker_for_wallet(
        self,
        actor: Optional[Actor],
        wallet_address: str,
        name: str,
        phone: str,
        badge: str,
        department: str,
    ) -> TransitionResult[CaseworkerWithActor]:
        """Resolve (or register) the wallet, then create_caseworker."""
        _require_role(actor, (ActorRole.ADMIN,), "Creating a caseworker")
        _require_text(wallet_address, "wallet_address")

        target = await self.identity.resolve(wallet_address)
        if target is None:
            target = await self.identity.register(wallet_address)
        return await self.create_caseworker(actor, target.id, name, phone, badge, department)

    # --------------------------------------------------------
    # Cases
    # --------------------------------------------------------

    async def file_case(
        self,
        actor: Optional[Actor],
        category: IncidentCategory,
        incident_at: datetime,
        location: str,
        description: str,
        evidence_refs: Optional[list[str]] = None,
    ) -> TransitionResult[Case]:
        """Store-first. Verified submitters only. No audit entry: status does not change."""
        submitter = _require_role(actor, (ActorRole.SUBMITTER,), "Filing a case")
        location = _require_text(location, "location")
        description = _require_text(description, "description")
        refs = [r.strip() for r in (evidence_refs or []) if r and r.strip()]

        case = await self.cases.create(
            submitter_id=submitter.id,
            category=category,
            incident_at=incident_at,
            location=location,
            description=description,
            evidence_refs=refs,
        )
        if refs:
            await self.documents.record(DocumentOwnerKind.CASE, case.id, refs)
        logger.info("Case filed", case_number=case.case_number, submitter_id=str(submitter.id))

        tx_id, failure = await self._best_effort(
            LedgerMethod.FILE_CASE,
            [case.case_number, submitter.wallet_address, case.category.value, refs],
        )
        if tx_id:
            case = await asyncio.shield(
                self.cases.update(case.id, {"ledger_tx_id": tx_id}, expected_version=None)
            )

        return self._result("file_case", case, tx_id, failure)

    async def assign_caseworker(
        self,
        actor: Optional[Actor],
        case_id: UUID,
        caseworker_id: UUID,
    ) -> TransitionResult[Case]:
        """
        Admin only, chain-first.

        A pending case moves to in_progress. Every assignment appends one
        audit entry carrying the assignment transaction.
        """
        admin = _require_role(actor, (ActorRole.ADMIN,), "Assigning a caseworker")

        case = await self.cases.get_case(case_id)
        if case is None:
            raise NotFound(f"Case {case_id} not found")
        if case.status.is_terminal:
            raise ValidationError(
                f"Case {case.case_number} is {case.status.value} and cannot be reassigned",
                field="status",
            )

        caseworker = await self.caseworkers.get(caseworker_id)
        if caseworker is None:
            raise NotFound(f"Caseworker {caseworker_id} not found")
        if not caseworker.actor.is_verified:
            raise ValidationError("Caseworker is not verified", field="caseworker_id")

        if case.assigned_caseworker_id == caseworker.id:
            return self._result("assign_caseworker", case, unchanged=True)

        tx_id = await self._confirm(
            LedgerMethod.ASSIGN_CASEWORKER, [case.ledger_ref, caseworker.actor.wallet_address]
        )

        async def write() -> Case:
            current = await self.cases.get_case(case.id)
            changes: dict = {
                "assigned_caseworker_id": caseworker.id,
                "assignment_tx_id": tx_id,
            }
            new_status = current.status
            if current.status == CaseStatus.PENDING:
                new_status = CaseStatus.IN_PROGRESS
                changes["status"] = new_status
            updated = await self.cases.update(current.id, changes, expected_version=current.version)
            await self.audit.append(CaseUpdate(
                case_id=current.id,
                updated_by=admin.id,
                previous_status=current.status,
                new_status=new_status,
                comment=f"Assigned to {caseworker.name} ({caseworker.badge})",
                ledger_tx_id=tx_id,
            ))
            return updated

        updated = await asyncio.shield(self._reapply("assign_caseworker", write))
        logger.info(
            "Caseworker assigned",
            case_number=updated.case_number,
            caseworker_id=str(caseworker.id),
            tx_id=tx_id,
        )
        return self._result("assign_caseworker", updated, tx_id)

    async def update_status(
        self,
        actor: Optional[Actor],
        case_id: UUID,
        new_status: CaseStatus,
        comment: Optional[str] = None,
    ) -> TransitionResult[Case]:
        """
        Store-first. Admin or the assigned caseworker.

        Closing sets closed_at and closing_comments. The audit entry is
        appended after the best-effort ledger call and completes even if
        the caller is cancelled.
        """
        if actor is None:
            raise Unauthorized("Updating a case requires a registered wallet")

        case = await self.cases.get_case(case_id)
        if case is None:
            raise NotFound(f"Case {case_id} not found")

        await self._authorize_status_update(actor, case)

        if not is_transition_allowed(case.status, new_status):
            raise ValidationError(
                f"Cannot move case from {case.status.value} to {new_status.value}",
                field="status",
            )

        comment = (comment or "").strip() or None
        changes: dict = {"status": new_status}
        if new_status == CaseStatus.CLOSED:
            changes["closed_at"] = utcnow()
            changes["closing_comments"] = comment

        # The entry takes its place in the history from the write, not from
        # when the ledger call returns
        sequence = await self.audit.reserve_sequence()
        updated = await self.cases.update(case.id, changes, expected_version=case.version)
        entry = CaseUpdate(
            case_id=case.id,
            updated_by=actor.id,
            previous_status=case.status,
            new_status=new_status,
            comment=comment,
            created_at=updated.updated_at,
            sequence=sequence,
        )

        tx_id: Optional[str] = None
        failure: Optional[LedgerFailure] = None
        try:
            tx_id, failure = await self._best_effort(
                LedgerMethod.UPDATE_CASE_STATUS,
                [case.ledger_ref, new_status.value, comment or ""],
            )
        finally:
            await asyncio.shield(self.audit.append(
                entry.model_copy(update={"ledger_tx_id": tx_id})
            ))

        logger.info(
            "Case status updated",
            case_number=case.case_number,
            previous_status=case.status.value,
            new_status=new_status.value,
            tx_id=tx_id,
        )
        return self._result("update_status", updated, tx_id, failure)

    async def _authorize_status_update(self, actor: Actor, case: Case) -> None:
        if actor.is_verified and actor.role == ActorRole.ADMIN:
            return
        if actor.is_verified and actor.role == ActorRole.CASEWORKER:
            profile = await self.caseworkers.get_by_actor(actor.id)
            if profile is not None and case.assigned_caseworker_id == profile.id:
                return
        raise Unauthorized(
            f"Only an admin or the assigned caseworker may update {case.case_number}"
        )
