"""
Shared fixtures for the CaseTrail test suite.

Fixtures are synchronous and only build objects; seeding happens inside
async tests through the Seeder helper so every await runs on the test's
own event loop.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional

import pytest

from casetrail.core import (
    LedgerClient,
    SigningService,
    SimulatedLedgerClient,
    WorkflowEngine,
)
from casetrail.db import InMemoryDocumentStore
from casetrail.observability import get_metrics
from casetrail.schemas import (
    Actor,
    Case,
    CaseworkerWithActor,
    IncidentCategory,
    LedgerMethod,
    VerificationStatus,
)


class SlowLedgerClient(LedgerClient):
    """Ledger that never confirms within any reasonable timeout."""

    def __init__(self, delay_seconds: float = 5.0):
        self.delay_seconds = delay_seconds
        self.calls: list[tuple[LedgerMethod, list]] = []

    async def invoke(self, method: LedgerMethod, args: list) -> str:
        self.calls.append((method, list(args)))
        await asyncio.sleep(self.delay_seconds)
        return "0xslow"


class Seeder:
    """Builds actors, caseworkers and cases through the real engine."""

    def __init__(self, engine: WorkflowEngine):
        self.engine = engine
        self._counter = 0

    def _wallet(self, prefix: str) -> str:
        self._counter += 1
        return f"0x{prefix}{self._counter:04d}"

    async def admin(self) -> Actor:
        return await self.engine.identity.ensure_admin(self._wallet("AD"))

    async def pending(self, wallet: Optional[str] = None) -> Actor:
        result = await self.engine.register_actor(wallet or self._wallet("PE"), ["sha256-id-doc"])
        return result.resource

    async def submitter(self, admin: Optional[Actor] = None) -> Actor:
        admin = admin or await self.admin()
        actor = await self.pending(self._wallet("SU"))
        result = await self.engine.set_verification(admin, actor.id, VerificationStatus.VERIFIED)
        return result.resource

    async def caseworker(
        self,
        admin: Optional[Actor] = None,
        badge: Optional[str] = None,
    ) -> CaseworkerWithActor:
        admin = admin or await self.admin()
        actor = await self.pending(self._wallet("CW"))
        self._counter += 1
        result = await self.engine.create_caseworker(
            admin,
            actor.id,
            name=f"Officer {self._counter}",
            phone="555-0100",
            badge=badge or f"B-{self._counter:04d}",
            department="Central",
        )
        return result.resource

    async def case(self, submitter: Actor, description: str = "Bicycle stolen from rack") -> Case:
        result = await self.engine.file_case(
            submitter,
            category=IncidentCategory.THEFT,
            incident_at=datetime(2026, 3, 1, 18, 30, tzinfo=timezone.utc),
            location="Main Street station",
            description=description,
            evidence_refs=["sha256-photo"],
        )
        return result.resource

    async def caseworker_actor(self, caseworker: CaseworkerWithActor) -> Actor:
        return await self.engine.identity.get(caseworker.actor_id)


@pytest.fixture(autouse=True)
def reset_process_state():
    """Fresh signing key and metrics for every test."""
    SigningService.reset()
    get_metrics().reset()
    yield
    SigningService.reset()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def ledger():
    return SimulatedLedgerClient()


@pytest.fixture
def engine(store, ledger):
    return WorkflowEngine.build(store, ledger, ledger_timeout=90.0)


@pytest.fixture
def seed(engine):
    return Seeder(engine)


@pytest.fixture
def incident_at():
    return datetime(2026, 3, 1, 18, 30, tzinfo=timezone.utc)


@pytest.fixture
def slow_ledger():
    return SlowLedgerClient()
