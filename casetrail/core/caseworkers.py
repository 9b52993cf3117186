"""
Caseworker Administration

Caseworker profiles and their joined read model. The admin-only
creation flow (authorization, ledger verification, role grant) is
driven by WorkflowEngine.create_caseworker; this module owns the
profile records and the derived counters.
"""

from typing import Optional
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from ..db.store import CASEWORKERS, DocumentStore
from ..schemas import CaseworkerProfile, CaseworkerWithActor
from .cases import CaseRepository
from .errors import ValidationError, translate_store_errors


class CaseworkerAdministration:

    def __init__(self, store: DocumentStore, cases: CaseRepository):
        self._store = store
        self._cases = cases

    async def get(self, caseworker_id: UUID) -> Optional[CaseworkerWithActor]:
        return await self._cases.caseworker_with_actor(caseworker_id)

    async def get_by_actor(self, actor_id: UUID) -> Optional[CaseworkerWithActor]:
        with translate_store_errors(CASEWORKERS):
            docs = await self._store.query(CASEWORKERS, actor_id=str(actor_id))
        if not docs:
            return None
        return await self._cases.join_caseworker(CaseworkerProfile.model_validate(docs[0]))

    async def badge_in_use(self, badge: str) -> bool:
        with translate_store_errors(CASEWORKERS):
            docs = await self._store.query(CASEWORKERS, badge=badge.strip())
        return bool(docs)

    async def create_profile(
        self,
        actor_id: UUID,
        name: str,
        phone: str,
        badge: str,
        department: str,
    ) -> CaseworkerProfile:
        """
        Insert a profile.

        Raises:
            DuplicateBadge: badge already taken
            ValidationError: actor already has a profile, or a field is blank
        """
        try:
            profile = CaseworkerProfile(
                actor_id=actor_id,
                name=name.strip(),
                phone=phone.strip(),
                badge=badge.strip(),
                department=department.strip(),
            )
        except PydanticValidationError as e:
            error = e.errors()[0]
            field = ".".join(str(p) for p in error.get("loc", ())) or None
            raise ValidationError(f"{field}: {error.get('msg')}", field=field) from e

        with translate_store_errors(CASEWORKERS):
            doc = await self._store.create(CASEWORKERS, profile.model_dump(mode="json"))
        return CaseworkerProfile.model_validate(doc)

    async def list_all(self) -> list[CaseworkerWithActor]:
        with translate_store_errors(CASEWORKERS):
            docs = await self._store.list_all(CASEWORKERS)
        profiles = sorted(
            (CaseworkerProfile.model_validate(d) for d in docs),
            key=lambda p: p.created_at,
            reverse=True,
        )
        joined = []
        for profile in profiles:
            row = await self._cases.join_caseworker(profile)
            if row is not None:
                joined.append(row)
        return joined
