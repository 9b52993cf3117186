"""
Tests for the HTTP surface.

Runs the real application (lifespan included) against an in-memory
store and the simulated ledger.
"""

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from casetrail.api.routes_admin import _read_upload
from casetrail.core import LedgerConfig, SimulatedLedgerClient, ValidationError
from casetrail.db import InMemoryDocumentStore
from casetrail.main import create_app

ADMIN_WALLET = "0xadmin0001"


@pytest.fixture
def ledger():
    return SimulatedLedgerClient()


@pytest.fixture
def client(monkeypatch, ledger):
    monkeypatch.setenv("CASETRAIL_ADMIN_WALLET", ADMIN_WALLET)
    monkeypatch.setenv("CASETRAIL_SESSION_SECRET", "test-session-secret-0123456789")
    monkeypatch.delenv("CASETRAIL_PRODUCTION", raising=False)

    app = create_app(
        store=InMemoryDocumentStore(),
        ledger=ledger,
        ledger_config=LedgerConfig(),
    )
    with TestClient(app) as test_client:
        yield test_client


def login(client: TestClient, wallet: str) -> dict:
    resp = client.post("/api/session", json={"wallet_address": wallet})
    assert resp.status_code == 200
    return resp.json()


def register(client: TestClient, wallet: str, refs=None) -> dict:
    resp = client.post(
        "/api/actors/register",
        json={"wallet_address": wallet, "document_refs": refs or []},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["resource"]


def verified_submitter(client: TestClient, wallet: str) -> dict:
    actor = register(client, wallet)
    login(client, ADMIN_WALLET)
    resp = client.patch(f"/api/actors/{actor['id']}/verification", json={"status": "verified"})
    assert resp.status_code == 200, resp.text
    return resp.json()["resource"]


def caseworker(client: TestClient, wallet: str, badge: str) -> dict:
    login(client, ADMIN_WALLET)
    resp = client.post(
        "/api/caseworkers",
        json={
            "wallet_address": wallet,
            "name": "Officer Lee",
            "phone": "555-0199",
            "badge": badge,
            "department": "Central",
        },
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["resource"]


def file_case(client: TestClient, submitter_wallet: str) -> dict:
    login(client, submitter_wallet)
    resp = client.post(
        "/api/cases",
        json={
            "category": "theft",
            "incident_at": "2026-03-01T18:30:00Z",
            "location": "Main Street station",
            "description": "Bicycle stolen from rack",
            "evidence_refs": ["sha256-photo"],
        },
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["resource"]


class TestSystemEndpoints:

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    def test_detailed_health(self, client):
        register(client, "0xhealth")
        resp = client.get("/health/detailed")
        assert resp.status_code == 200
        body = resp.json()
        assert body["checks"]["document_store"]["status"] == "healthy"
        assert body["checks"]["ledger"]["chain_valid"] is True

    def test_detailed_health_reports_broken_chain(self, client, ledger):
        register(client, "0xone")
        register(client, "0xtwo")
        first = ledger._transactions[0]
        ledger._transactions[0] = first.model_copy(update={"args": ["0xforged", []]})

        resp = client.get("/health/detailed")
        assert resp.status_code == 503
        assert resp.json()["checks"]["ledger"]["chain_valid"] is False

    def test_request_id_echoed(self, client):
        resp = client.get("/health", headers={"X-Request-ID": "abc123"})
        assert resp.headers["X-Request-ID"] == "abc123"

    def test_metrics(self, client):
        register(client, "0xmetric")
        summary = client.get("/metrics").json()
        assert summary["transitions"]["register_actor:confirmed"] == 1
        assert summary["requests_total"] >= 1


class TestSessions:

    def test_session_for_unregistered_wallet(self, client):
        body = login(client, "0xNEWCOMER")
        assert body["wallet_address"] == "0xnewcomer"
        assert body["actor"] is None

        resp = client.get("/api/actors/me")
        assert resp.status_code == 401

    def test_session_for_admin(self, client):
        body = login(client, ADMIN_WALLET.upper().replace("0X", "0x"))
        assert body["actor"]["role"] == "admin"

        me = client.get("/api/actors/me").json()
        assert me["wallet_address"] == ADMIN_WALLET

    def test_logout(self, client):
        login(client, ADMIN_WALLET)
        assert client.delete("/api/session").status_code == 204
        assert client.get("/api/actors/me").status_code == 401

    def test_tampered_cookie_rejected(self, client):
        client.cookies.set("ct_session", "forged.value")
        assert client.get("/api/actors/me").status_code == 401


class TestActorEndpoints:

    def test_register(self, client):
        resp = client.post(
            "/api/actors/register",
            json={"wallet_address": "0xABC", "document_refs": ["sha256-id"]},
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["outcome"] == "confirmed"
        assert body["ledger_tx_id"].startswith("0x")
        assert body["resource"]["role"] == "none"
        assert body["resource"]["verification_status"] == "pending"

    def test_duplicate_register_is_conflict(self, client):
        register(client, "0xdup")
        resp = client.post("/api/actors/register", json={"wallet_address": "0xDUP"})
        assert resp.status_code == 409
        assert resp.json()["error"] == "duplicate_actor"

    def test_verify_and_lookup(self, client):
        actor = verified_submitter(client, "0xsubmitter")
        assert actor["role"] == "submitter"
        assert actor["verified_at"] is not None

        found = client.get("/api/actors/by-wallet/0xSUBMITTER").json()
        assert found["id"] == actor["id"]

    def test_repeat_verification_unchanged(self, client, ledger):
        actor = verified_submitter(client, "0xtwice")
        resp = client.patch(f"/api/actors/{actor['id']}/verification", json={"status": "verified"})
        assert resp.json()["outcome"] == "unchanged"

    def test_pending_queue_requires_reviewer(self, client):
        register(client, "0xwaiting")
        verified_submitter(client, "0xplain")

        login(client, ADMIN_WALLET)
        queue = client.get("/api/actors/pending").json()
        assert [a["wallet_address"] for a in queue] == ["0xwaiting"]

        login(client, "0xplain")
        resp = client.get("/api/actors/pending")
        assert resp.status_code == 403
        assert resp.json()["error"] == "unauthorized"

    def test_unknown_wallet_is_404(self, client):
        resp = client.get("/api/actors/by-wallet/0xnobody")
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    def test_pending_status_refused(self, client):
        actor = register(client, "0xp")
        login(client, ADMIN_WALLET)
        resp = client.patch(f"/api/actors/{actor['id']}/verification", json={"status": "pending"})
        assert resp.status_code == 422
        assert resp.json()["field"] == "status"

    def test_ledger_failure_is_502(self, client, ledger):
        from casetrail.schemas import LedgerFailureKind

        actor = register(client, "0xfunds")
        login(client, ADMIN_WALLET)
        ledger.queue_failure(LedgerFailureKind.INSUFFICIENT_FUNDS, "insufficient funds")

        resp = client.patch(f"/api/actors/{actor['id']}/verification", json={"status": "verified"})
        assert resp.status_code == 502
        body = resp.json()
        assert body["error"] == "ledger_error"
        assert body["failure_kind"] == "insufficient_funds"


class TestCaseEndpoints:

    def test_full_lifecycle(self, client):
        submitter = verified_submitter(client, "0xreporter")
        cw = caseworker(client, "0xofficer", "B-42")
        case = file_case(client, "0xreporter")
        assert case["status"] == "pending"
        assert case["case_number"].startswith("CASE-")

        login(client, ADMIN_WALLET)
        resp = client.patch(f"/api/cases/{case['id']}/assign", json={"caseworker_id": cw["id"]})
        assert resp.status_code == 200, resp.text
        assert resp.json()["resource"]["status"] == "in_progress"

        login(client, "0xofficer")
        resp = client.patch(
            f"/api/cases/{case['id']}/status",
            json={"status": "closed", "comment": "resolved"},
        )
        assert resp.status_code == 200, resp.text

        details = client.get(f"/api/cases/{case['id']}").json()
        assert details["status"] == "closed"
        assert details["closing_comments"] == "resolved"
        assert details["submitter"]["id"] == submitter["id"]
        assert details["assigned_caseworker"]["badge"] == "B-42"
        assert [u["new_status"] for u in details["updates"]] == ["closed", "in_progress"]

        updates = client.get(f"/api/cases/{case['id']}/updates").json()
        assert updates[0]["comment"] == "resolved"

        by_number = client.get(f"/api/cases/by-number/{case['case_number']}").json()
        assert by_number["id"] == case["id"]

    def test_list_filters(self, client):
        submitter = verified_submitter(client, "0xlister")
        cw = caseworker(client, "0xworker", "B-7")
        first = file_case(client, "0xlister")
        second = file_case(client, "0xlister")

        login(client, ADMIN_WALLET)
        client.patch(f"/api/cases/{first['id']}/assign", json={"caseworker_id": cw["id"]})

        mine = client.get("/api/cases", params={"submitter_id": submitter["id"]}).json()
        assert [c["id"] for c in mine] == [second["id"], first["id"]]

        assigned = client.get("/api/cases", params={"caseworker_id": cw["id"]}).json()
        assert [c["id"] for c in assigned] == [first["id"]]

        both = client.get(
            "/api/cases",
            params={"submitter_id": submitter["id"], "caseworker_id": cw["id"]},
        ).json()
        assert [c["id"] for c in both] == [first["id"]]
        assert both[0]["submitter"]["id"] == submitter["id"]
        assert both[0]["assigned_caseworker"]["id"] == cw["id"]
        assert [u["new_status"] for u in both[0]["updates"]] == ["in_progress"]

        assert len(client.get("/api/cases").json()) == 2

    def test_unassigned_submitter_cannot_update(self, client):
        verified_submitter(client, "0xnosy")
        case = file_case(client, "0xnosy")

        resp = client.patch(f"/api/cases/{case['id']}/status", json={"status": "in_progress"})
        assert resp.status_code == 403
        assert client.get(f"/api/cases/{case['id']}/updates").json() == []

    def test_invalid_transition_is_422(self, client):
        verified_submitter(client, "0xfast")
        case = file_case(client, "0xfast")

        login(client, ADMIN_WALLET)
        resp = client.patch(f"/api/cases/{case['id']}/status", json={"status": "closed"})
        assert resp.status_code == 422
        assert resp.json()["error"] == "validation_error"

    def test_missing_case_is_404(self, client):
        missing = "00000000-0000-0000-0000-000000000000"
        resp = client.get(f"/api/cases/{missing}")
        assert resp.status_code == 404
        assert resp.json() == {"error": "not_found", "reason": f"Case {missing} not found"}
        assert client.get(f"/api/cases/{missing}/updates").status_code == 404

    def test_filing_requires_session(self, client):
        resp = client.post(
            "/api/cases",
            json={
                "category": "fraud",
                "incident_at": "2026-03-01T18:30:00Z",
                "location": "Online",
                "description": "Fake invoice",
            },
        )
        assert resp.status_code == 401


class TestAdministrationEndpoints:

    def test_create_caseworker_by_actor_id(self, client):
        actor = register(client, "0xrecruit")
        login(client, ADMIN_WALLET)
        resp = client.post(
            "/api/caseworkers",
            json={
                "actor_id": actor["id"],
                "name": "Ava",
                "phone": "555",
                "badge": "B-1",
                "department": "North",
            },
        )
        assert resp.status_code == 201
        assert resp.json()["resource"]["actor"]["role"] == "caseworker"

        listed = client.get("/api/caseworkers").json()
        assert [c["badge"] for c in listed] == ["B-1"]
        one = client.get(f"/api/caseworkers/{listed[0]['id']}").json()
        assert one["active_case_count"] == 0

    def test_duplicate_badge_is_conflict(self, client):
        caseworker(client, "0xfirst", "B-1")
        login(client, ADMIN_WALLET)
        resp = client.post(
            "/api/caseworkers",
            json={
                "wallet_address": "0xsecond",
                "name": "Ben",
                "phone": "555",
                "badge": "B-1",
                "department": "North",
            },
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "duplicate_badge"

    def test_exactly_one_target_required(self, client):
        login(client, ADMIN_WALLET)
        resp = client.post(
            "/api/caseworkers",
            json={"name": "Ben", "phone": "555", "badge": "B-2", "department": "North"},
        )
        assert resp.status_code == 422

    def test_stats(self, client):
        verified_submitter(client, "0xcounted")
        file_case(client, "0xcounted")
        register(client, "0xqueued")

        stats = client.get("/api/stats").json()
        assert stats["total_cases"] == 1
        assert stats["pending_verification_count"] == 1
        assert stats["cases_by_status"]["pending"] == 1
        assert stats["actors_by_role"]["admin"] == 1

    def test_upload_document(self, client):
        login(client, ADMIN_WALLET)
        resp = client.post(
            "/api/documents",
            params={"filename": "photo.jpg"},
            content=b"\x89PNG fake image bytes",
            headers={"Content-Type": "application/octet-stream"},
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["content_id"].startswith("sha256-")
        assert body["filename"] == "photo.jpg"
        assert body["gateway_url"].endswith(body["content_id"])

    def test_empty_upload_refused(self, client):
        login(client, ADMIN_WALLET)
        resp = client.post("/api/documents", content=b"")
        assert resp.status_code == 422

    def test_upload_requires_session(self, client):
        resp = client.post("/api/documents", content=b"data")
        assert resp.status_code == 401

    def test_upload_over_limit_refused(self, client, monkeypatch):
        monkeypatch.setattr("casetrail.api.routes_admin.MAX_UPLOAD_BYTES", 8)
        login(client, ADMIN_WALLET)
        resp = client.post("/api/documents", content=b"123456789")
        assert resp.status_code == 422
        assert resp.json()["field"] == "file"

    @pytest.mark.asyncio
    async def test_upload_stream_counted_without_length(self, monkeypatch):
        monkeypatch.setattr("casetrail.api.routes_admin.MAX_UPLOAD_BYTES", 8)
        parts = [b"12345", b"6789"]

        async def receive():
            body = parts.pop(0)
            return {"type": "http.request", "body": body, "more_body": bool(parts)}

        request = Request({"type": "http", "method": "POST", "path": "/", "headers": []}, receive)
        with pytest.raises(ValidationError, match="upload limit"):
            await _read_upload(request)

    def test_list_documents_for_actor(self, client):
        actor = register(client, "0xwithdocs", ["sha256-passport", "sha256-utility-bill"])
        login(client, ADMIN_WALLET)

        resp = client.get(f"/api/documents/actor/{actor['id']}")
        assert resp.status_code == 200
        assert {d["content_id"] for d in resp.json()} == {"sha256-passport", "sha256-utility-bill"}
        assert client.get(f"/api/documents/case/{actor['id']}").json() == []

    def test_list_documents_requires_session(self, client):
        actor = register(client, "0xprivate", ["sha256-id"])
        assert client.get(f"/api/documents/actor/{actor['id']}").status_code == 401
