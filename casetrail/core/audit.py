"""
Audit Trail

Append-only case updates. One entry per status transition; entries
are never mutated or deleted. Listed newest first, with the
store-issued sequence breaking timestamp ties.
"""

from uuid import UUID

from ..db.store import CASE_UPDATES, DocumentStore
from ..schemas import CaseUpdate
from .errors import translate_store_errors


class AuditTrail:

    def __init__(self, store: DocumentStore):
        self._store = store

    async def reserve_sequence(self) -> int:
        """Issue the ordering number for an entry whose write has not happened yet."""
        with translate_store_errors(CASE_UPDATES):
            return await self._store.next_sequence(CASE_UPDATES)

    async def append(self, entry: CaseUpdate) -> CaseUpdate:
        sequence = entry.sequence or await self.reserve_sequence()
        with translate_store_errors(CASE_UPDATES):
            doc = await self._store.create(
                CASE_UPDATES,
                entry.model_copy(update={"sequence": sequence}).model_dump(mode="json"),
            )
        return CaseUpdate.model_validate(doc)

    async def list_by_case(self, case_id: UUID) -> list[CaseUpdate]:
        with translate_store_errors(CASE_UPDATES):
            docs = await self._store.query(CASE_UPDATES, case_id=str(case_id))
        updates = [CaseUpdate.model_validate(d) for d in docs]
        updates.sort(key=lambda u: (u.created_at, u.sequence), reverse=True)
        return updates
