"""
Aggregate Stats

Dashboard counters, computed by full scan on every call.
"""

from collections import Counter

from ..db.store import ACTORS, CASES, CASEWORKERS, DocumentStore
from ..schemas import ActorRole, CaseStatus, DashboardStats, VerificationStatus
from .errors import translate_store_errors


class AggregateStats:

    def __init__(self, store: DocumentStore):
        self._store = store

    async def compute(self) -> DashboardStats:
        with translate_store_errors(CASES):
            cases = await self._store.list_all(CASES)
        with translate_store_errors(ACTORS):
            actors = await self._store.list_all(ACTORS)
        with translate_store_errors(CASEWORKERS):
            caseworkers = await self._store.list_all(CASEWORKERS)

        by_status = Counter({status.value: 0 for status in CaseStatus})
        by_status.update(doc["status"] for doc in cases)

        by_role = Counter({role.value: 0 for role in ActorRole})
        by_role.update(doc["role"] for doc in actors)

        pending = sum(
            1 for doc in actors
            if doc["verification_status"] == VerificationStatus.PENDING.value
        )

        return DashboardStats(
            total_cases=len(cases),
            pending_verification_count=pending,
            caseworker_count=len(caseworkers),
            closed_case_count=by_status[CaseStatus.CLOSED.value],
            cases_by_status=dict(by_status),
            actors_by_role=dict(by_role),
        )
