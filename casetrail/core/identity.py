"""
Identity Resolver

Maps wallet addresses to actors and persists verification state.
Authorization decisions are made by the workflow engine; this module
only reads and writes actors.
"""

from typing import Optional
from uuid import UUID

from ..db.store import ACTORS, CASEWORKERS, DocumentStore
from ..observability import get_logger
from ..schemas import (
    Actor,
    ActorRole,
    ActorWithProfile,
    CaseworkerProfile,
    VerificationStatus,
    normalize_wallet,
    utcnow,
)
from .errors import DuplicateActor, NotFound, ValidationError, translate_store_errors

logger = get_logger(__name__)


class IdentityResolver:

    def __init__(self, store: DocumentStore):
        self._store = store

    async def resolve(self, wallet_address: str) -> Optional[ActorWithProfile]:
        """Case-insensitive lookup. Unknown wallets return None."""
        wallet = normalize_wallet(wallet_address)
        if not wallet:
            return None
        with translate_store_errors(ACTORS):
            docs = await self._store.query(ACTORS, wallet_address=wallet)
        if not docs:
            return None
        actor = Actor.model_validate(docs[0])
        profile = await self._profile_for(actor.id)
        return ActorWithProfile(**actor.model_dump(), caseworker=profile)

    async def get(self, actor_id: UUID) -> Optional[Actor]:
        with translate_store_errors(ACTORS):
            doc = await self._store.get(ACTORS, actor_id)
        return Actor.model_validate(doc) if doc else None

    async def require(self, actor_id: UUID) -> Actor:
        actor = await self.get(actor_id)
        if actor is None:
            raise NotFound(f"Actor {actor_id} not found")
        return actor

    async def register(self, wallet_address: str, document_refs: Optional[list[str]] = None) -> Actor:
        """
        Create a pending actor with role none.

        Raises:
            DuplicateActor: the normalized wallet address already exists
        """
        wallet = normalize_wallet(wallet_address)
        if not wallet:
            raise ValidationError("Wallet address is required", field="wallet_address")

        actor = Actor(wallet_address=wallet, document_refs=list(document_refs or []))
        with translate_store_errors(ACTORS):
            doc = await self._store.create(ACTORS, actor.model_dump(mode="json"))
        logger.info("Actor registered", actor_id=str(actor.id), wallet=wallet)
        return Actor.model_validate(doc)

    async def set_verification(
        self,
        actor_id: UUID,
        status: VerificationStatus,
        verified_by: Optional[UUID] = None,
        tx_id: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Actor:
        """
        Persist a verification decision.

        VERIFIED sets verified_at and derives the role from profile presence.
        REJECTED leaves the role alone.
        """
        if status not in (VerificationStatus.VERIFIED, VerificationStatus.REJECTED):
            raise ValidationError(
                f"Verification status must be verified or rejected, got {status.value}",
                field="status",
            )

        actor = await self.require(actor_id)
        changes: dict = {"verification_status": status.value}

        if status == VerificationStatus.VERIFIED:
            profile = await self._profile_for(actor.id)
            if actor.role != ActorRole.ADMIN:
                role = ActorRole.CASEWORKER if profile else ActorRole.SUBMITTER
                changes["role"] = role.value
            changes["verified_at"] = utcnow().isoformat()
            changes["verified_by"] = str(verified_by) if verified_by else None
            if tx_id:
                changes["verification_tx_id"] = tx_id

        with translate_store_errors(ACTORS):
            doc = await self._store.update(
                ACTORS, actor.id, changes, expected_version=expected_version
            )
        return Actor.model_validate(doc)

    async def promote_to_caseworker(
        self,
        actor_id: UUID,
        verified_by: Optional[UUID],
        tx_id: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Actor:
        """Force an actor to verified with role caseworker (admin caseworker path)."""
        actor = await self.require(actor_id)
        changes: dict = {
            "role": ActorRole.CASEWORKER.value,
            "verification_status": VerificationStatus.VERIFIED.value,
        }
        if not actor.is_verified:
            changes["verified_at"] = utcnow().isoformat()
            changes["verified_by"] = str(verified_by) if verified_by else None
        if tx_id:
            changes["verification_tx_id"] = tx_id

        with translate_store_errors(ACTORS):
            doc = await self._store.update(
                ACTORS, actor.id, changes, expected_version=expected_version
            )
        return Actor.model_validate(doc)

    async def attach_registration_tx(self, actor_id: UUID, tx_id: str) -> Actor:
        with translate_store_errors(ACTORS):
            doc = await self._store.update(ACTORS, actor_id, {"registration_tx_id": tx_id})
        return Actor.model_validate(doc)

    async def list_pending(self) -> list[Actor]:
        with translate_store_errors(ACTORS):
            docs = await self._store.query(
                ACTORS, verification_status=VerificationStatus.PENDING.value
            )
        actors = [Actor.model_validate(d) for d in docs]
        actors.sort(key=lambda a: a.created_at)
        return actors

    async def list_all(self) -> list[Actor]:
        with translate_store_errors(ACTORS):
            docs = await self._store.list_all(ACTORS)
        return [Actor.model_validate(d) for d in docs]

    async def ensure_admin(self, wallet_address: str) -> Actor:
        """
        Bootstrap helper: create the wallet as a verified admin,
        or promote an existing actor to one.
        """
        wallet = normalize_wallet(wallet_address)
        if not wallet:
            raise ValidationError("Wallet address is required", field="wallet_address")

        existing = await self.resolve(wallet)
        if existing is None:
            admin = Actor(
                wallet_address=wallet,
                role=ActorRole.ADMIN,
                verification_status=VerificationStatus.VERIFIED,
                verified_at=utcnow(),
            )
            try:
                with translate_store_errors(ACTORS):
                    doc = await self._store.create(ACTORS, admin.model_dump(mode="json"))
            except DuplicateActor:
                # Registered between the lookup and the create
                return await self.ensure_admin(wallet)
            logger.info("Admin created", actor_id=str(admin.id), wallet=wallet)
            return Actor.model_validate(doc)

        if existing.role == ActorRole.ADMIN and existing.is_verified:
            return Actor.model_validate(existing.model_dump(exclude={"caseworker"}))

        changes = {
            "role": ActorRole.ADMIN.value,
            "verification_status": VerificationStatus.VERIFIED.value,
        }
        if existing.verified_at is None:
            changes["verified_at"] = utcnow().isoformat()
        with translate_store_errors(ACTORS):
            doc = await self._store.update(ACTORS, existing.id, changes)
        logger.info("Actor promoted to admin", actor_id=str(existing.id), wallet=wallet)
        return Actor.model_validate(doc)

    async def _profile_for(self, actor_id: UUID) -> Optional[CaseworkerProfile]:
        with translate_store_errors(CASEWORKERS):
            docs = await self._store.query(CASEWORKERS, actor_id=str(actor_id))
        return CaseworkerProfile.model_validate(docs[0]) if docs else None
