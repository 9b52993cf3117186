"""
Tests for the ledger collaborator: canonical hashing, signatures,
the simulated hash-chained ledger, the HTTP gateway client and
failure classification.
"""

import json
from datetime import datetime, timedelta, timezone
from uuid import UUID

import httpx
import pytest

from casetrail.core import (
    CanonicalSerializationError,
    GatewayLedgerClient,
    Hasher,
    LedgerConfig,
    LedgerError,
    Signer,
    SigningService,
    SimulatedLedgerClient,
    classify_failure,
    create_ledger_client,
)
from casetrail.schemas import LedgerFailureKind, LedgerMethod


class TestHasher:
    """Canonical hashing backs every simulated transaction id."""

    def test_deterministic_hash(self):
        data = {"name": "test", "value": 42}
        assert Hasher.hash_data(data) == Hasher.hash_data(data)

    def test_recursively_sorted_keys(self):
        data1 = {"outer": {"z": 1, "a": 2}, "inner": {"b": 3, "a": 4}}
        data2 = {"inner": {"a": 4, "b": 3}, "outer": {"a": 2, "z": 1}}
        assert Hasher.hash_data(data1) == Hasher.hash_data(data2)

    def test_nulls_omitted_but_empty_values_kept(self):
        assert Hasher.canonicalize({"a": 1, "b": None}) == Hasher.canonicalize({"a": 1})
        assert Hasher.canonicalize({"a": ""}) != Hasher.canonicalize({})
        assert Hasher.canonicalize({"a": []}) != Hasher.canonicalize({})

    def test_version_marker_present(self):
        assert '"__canon_v":1' in Hasher.canonicalize({"a": 1})

    def test_datetime_requires_timezone(self):
        with pytest.raises(CanonicalSerializationError, match="timezone-naive"):
            Hasher.canonicalize({"at": datetime(2026, 1, 1, 12, 0, 0)})

    def test_datetime_normalized_to_utc(self):
        utc_time = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        other_time = datetime(2026, 1, 1, 17, 0, 0, tzinfo=timezone(timedelta(hours=5)))
        assert Hasher.hash_data({"at": utc_time}) == Hasher.hash_data({"at": other_time})

    def test_uuid_lowercase(self):
        canonical = Hasher.canonicalize({"id": UUID("550E8400-E29B-41D4-A716-446655440000")})
        assert "550e8400" in canonical
        assert "550E8400" not in canonical

    def test_enum_uses_value(self):
        canonical = Hasher.canonicalize({"method": LedgerMethod.FILE_CASE})
        assert '"file_case"' in canonical

    def test_floats_banned(self):
        with pytest.raises(CanonicalSerializationError, match="float"):
            Hasher.canonicalize({"amount": 1.5})

    def test_chain_hash_depends_on_previous(self):
        payload = {"method": "file_case"}
        assert Hasher.hash_transaction(payload, "a" * 64) != Hasher.hash_transaction(payload)

    def test_chain_hash_validates_previous_hash_format(self):
        with pytest.raises(CanonicalSerializationError, match="Invalid previous_hash"):
            Hasher.hash_transaction({"x": "y"}, "abc123")

    def test_verify_transaction(self):
        payload = {"method": "verify_actor", "args": ["0xabc", True]}
        tx_hash = Hasher.hash_transaction(payload)
        assert Hasher.verify_transaction(payload, tx_hash)
        assert not Hasher.verify_transaction({"method": "verify_actor"}, tx_hash)

    def test_hash_bytes(self):
        assert Hasher.hash_bytes(b"") == (
            "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        )


class TestSigner:

    def test_sign_and_verify(self):
        private_key, public_key = Signer.generate_keypair()
        signature = Signer.sign("tx-hash", private_key)
        assert Signer.verify("tx-hash", signature, public_key)
        assert not Signer.verify("other-hash", signature, public_key)

    def test_public_key_derivation(self):
        private_key, public_key = Signer.generate_keypair()
        assert Signer.public_key_for(private_key) == public_key

    def test_garbage_signature_is_invalid(self):
        _, public_key = Signer.generate_keypair()
        assert not Signer.verify("tx-hash", "not-base64!!", public_key)


class TestSigningService:

    def test_ephemeral_key_in_development(self, monkeypatch):
        monkeypatch.delenv("CASETRAIL_SYSTEM_PRIVATE_KEY", raising=False)
        monkeypatch.delenv("CASETRAIL_SYSTEM_PUBLIC_KEY", raising=False)
        monkeypatch.delenv("CASETRAIL_PRODUCTION", raising=False)
        service = SigningService()
        assert service.is_ephemeral
        assert service.verify("m", service.sign("m"))

    def test_configured_key_loaded(self, monkeypatch):
        private_key, public_key = Signer.generate_keypair()
        monkeypatch.setenv("CASETRAIL_SYSTEM_PRIVATE_KEY", private_key)
        monkeypatch.setenv("CASETRAIL_SYSTEM_PUBLIC_KEY", public_key)
        service = SigningService()
        assert not service.is_ephemeral
        assert service.system_public_key == public_key

    def test_mismatched_keys_refused(self, monkeypatch):
        private_key, _ = Signer.generate_keypair()
        _, other_public = Signer.generate_keypair()
        monkeypatch.setenv("CASETRAIL_SYSTEM_PRIVATE_KEY", private_key)
        monkeypatch.setenv("CASETRAIL_SYSTEM_PUBLIC_KEY", other_public)
        with pytest.raises(RuntimeError, match="validation failed"):
            SigningService()

    def test_production_requires_key(self, monkeypatch):
        monkeypatch.delenv("CASETRAIL_SYSTEM_PRIVATE_KEY", raising=False)
        monkeypatch.delenv("CASETRAIL_SYSTEM_PUBLIC_KEY", raising=False)
        monkeypatch.setenv("CASETRAIL_PRODUCTION", "true")
        with pytest.raises(RuntimeError, match="must be set in production"):
            SigningService()


class TestSimulatedLedger:

    @pytest.mark.asyncio
    async def test_transactions_are_chained(self, ledger):
        first = await ledger.invoke(LedgerMethod.REGISTER_ACTOR, ["0xabc", []])
        second = await ledger.invoke(LedgerMethod.VERIFY_ACTOR, ["0xabc", True])

        txs = ledger.transactions
        assert [tx.tx_id for tx in txs] == [first, second]
        assert first.startswith("0x") and len(first) == 66
        assert txs[0].previous_tx_hash is None
        assert txs[1].previous_tx_hash == txs[0].tx_hash
        assert ledger.verify_chain()

    @pytest.mark.asyncio
    async def test_tampered_args_detected(self, ledger):
        await ledger.invoke(LedgerMethod.FILE_CASE, ["CASE-2026-000001", "0xabc", "theft", []])
        await ledger.invoke(LedgerMethod.UPDATE_CASE_STATUS, ["CASE-2026-000001", "closed", ""])

        original = ledger._transactions[0]
        ledger._transactions[0] = original.model_copy(
            update={"args": ["CASE-2026-000001", "0xevil", "theft", []]}
        )
        assert not ledger.verify_chain()

    @pytest.mark.asyncio
    async def test_forged_signature_detected(self, ledger):
        await ledger.invoke(LedgerMethod.REGISTER_ACTOR, ["0xabc", []])
        private_key, _ = Signer.generate_keypair()
        original = ledger._transactions[0]
        ledger._transactions[0] = original.model_copy(
            update={"signature": Signer.sign(original.tx_hash, private_key)}
        )
        assert not ledger.verify_chain()

    @pytest.mark.asyncio
    async def test_queued_failure_raised_once(self, ledger):
        ledger.queue_failure(LedgerFailureKind.INSUFFICIENT_FUNDS, "insufficient funds for gas")

        with pytest.raises(LedgerError) as exc_info:
            await ledger.invoke(LedgerMethod.REGISTER_ACTOR, ["0xabc", []])
        assert exc_info.value.failure_kind == LedgerFailureKind.INSUFFICIENT_FUNDS
        assert ledger.transactions == []

        await ledger.invoke(LedgerMethod.REGISTER_ACTOR, ["0xabc", []])
        assert len(ledger.transactions) == 1

    @pytest.mark.asyncio
    async def test_transactions_for_method(self, ledger):
        await ledger.invoke(LedgerMethod.REGISTER_ACTOR, ["0xa", []])
        await ledger.invoke(LedgerMethod.REGISTER_ACTOR, ["0xb", []])
        await ledger.invoke(LedgerMethod.VERIFY_ACTOR, ["0xa", True])
        assert len(ledger.transactions_for(LedgerMethod.REGISTER_ACTOR)) == 2
        assert len(ledger.transactions_for(LedgerMethod.ASSIGN_CASEWORKER)) == 0

    def test_empty_chain_is_valid(self, ledger):
        assert ledger.verify_chain()


def gateway_with(handler) -> GatewayLedgerClient:
    config = LedgerConfig(driver="gateway", gateway_url="http://gateway.test", timeout_seconds=90.0)
    client = httpx.AsyncClient(
        base_url=config.gateway_url,
        transport=httpx.MockTransport(handler),
    )
    return GatewayLedgerClient(config, client=client)


class TestGatewayLedgerClient:

    @pytest.mark.asyncio
    async def test_success_returns_transaction_id(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"transaction_id": "0xfeed"})

        gateway = gateway_with(handler)
        tx_id = await gateway.invoke(LedgerMethod.ASSIGN_CASEWORKER, ["CASE-2026-000001", "0xcw"])

        assert tx_id == "0xfeed"
        assert seen["path"] == "/invoke"
        assert seen["body"] == {
            "method": "assign_caseworker",
            "args": ["CASE-2026-000001", "0xcw"],
        }

    @pytest.mark.asyncio
    async def test_user_rejection_code(self):
        def handler(request):
            return httpx.Response(400, json={"error": {"code": 4001, "message": "Request denied"}})

        with pytest.raises(LedgerError) as exc_info:
            await gateway_with(handler).invoke(LedgerMethod.VERIFY_ACTOR, ["0xa", True])
        assert exc_info.value.failure_kind == LedgerFailureKind.USER_REJECTED

    @pytest.mark.asyncio
    async def test_insufficient_funds(self):
        def handler(request):
            return httpx.Response(
                400, json={"error": {"message": "insufficient funds for gas * price + value"}}
            )

        with pytest.raises(LedgerError) as exc_info:
            await gateway_with(handler).invoke(LedgerMethod.FILE_CASE, [])
        assert exc_info.value.failure_kind == LedgerFailureKind.INSUFFICIENT_FUNDS

    @pytest.mark.asyncio
    async def test_revert_reason_extracted(self):
        def handler(request):
            return httpx.Response(
                422, json={"error": {"message": "execution reverted: Case already closed"}}
            )

        with pytest.raises(LedgerError) as exc_info:
            await gateway_with(handler).invoke(LedgerMethod.UPDATE_CASE_STATUS, [])
        assert exc_info.value.failure_kind == LedgerFailureKind.BUSINESS_RULE_REJECTED
        assert exc_info.value.reason == "Case already closed"

    @pytest.mark.asyncio
    async def test_gateway_timeout_status(self):
        def handler(request):
            return httpx.Response(504, text="upstream timed out")

        with pytest.raises(LedgerError) as exc_info:
            await gateway_with(handler).invoke(LedgerMethod.FILE_CASE, [])
        assert exc_info.value.failure_kind == LedgerFailureKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_network_failure_is_timeout(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(LedgerError) as exc_info:
            await gateway_with(handler).invoke(LedgerMethod.FILE_CASE, [])
        assert exc_info.value.failure_kind == LedgerFailureKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_read_timeout_is_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("no response", request=request)

        with pytest.raises(LedgerError) as exc_info:
            await gateway_with(handler).invoke(LedgerMethod.FILE_CASE, [])
        assert exc_info.value.failure_kind == LedgerFailureKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_missing_transaction_id(self):
        def handler(request):
            return httpx.Response(200, json={"status": "ok"})

        with pytest.raises(LedgerError) as exc_info:
            await gateway_with(handler).invoke(LedgerMethod.FILE_CASE, [])
        assert exc_info.value.failure_kind == LedgerFailureKind.UNKNOWN

    @pytest.mark.asyncio
    async def test_non_json_error_body(self):
        def handler(request):
            return httpx.Response(500, text="Internal Server Error")

        with pytest.raises(LedgerError) as exc_info:
            await gateway_with(handler).invoke(LedgerMethod.FILE_CASE, [])
        assert exc_info.value.failure_kind == LedgerFailureKind.UNKNOWN
        assert "Internal Server Error" in exc_info.value.reason


class TestClassifyFailure:

    @pytest.mark.parametrize("message,code,expected", [
        ("", 4001, LedgerFailureKind.USER_REJECTED),
        ("MetaMask Tx Signature: User denied transaction signature.", None,
         LedgerFailureKind.USER_REJECTED),
        ("user rejected the request", None, LedgerFailureKind.USER_REJECTED),
        ("insufficient funds for gas", None, LedgerFailureKind.INSUFFICIENT_FUNDS),
        ("execution reverted: Not authorized", None, LedgerFailureKind.BUSINESS_RULE_REJECTED),
        ("request timeout", None, LedgerFailureKind.TIMEOUT),
        ("nonce too low", None, LedgerFailureKind.UNKNOWN),
    ])
    def test_kinds(self, message, code, expected):
        assert classify_failure(message, code).kind == expected

    def test_bare_revert_has_default_reason(self):
        failure = classify_failure("execution reverted")
        assert failure.kind == LedgerFailureKind.BUSINESS_RULE_REJECTED
        assert failure.reason == "Transaction reverted"

    def test_empty_message_is_unknown(self):
        failure = classify_failure("")
        assert failure.kind == LedgerFailureKind.UNKNOWN
        assert failure.reason == "Unknown ledger error"


class TestLedgerConfig:

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for name in (
            "CASETRAIL_LEDGER_DRIVER",
            "CASETRAIL_LEDGER_GATEWAY_URL",
            "CASETRAIL_LEDGER_TOKEN",
            "CASETRAIL_LEDGER_TIMEOUT_SECONDS",
            "CASETRAIL_LEDGER_SIMULATED_DELAY_MS",
        ):
            monkeypatch.delenv(name, raising=False)

    def test_defaults(self):
        config = LedgerConfig.from_env()
        assert config.driver == "simulated"
        assert config.timeout_seconds == 90.0
        assert config.simulated_delay_ms == 0

    @pytest.mark.parametrize("value", ["59", "121", "5"])
    def test_timeout_outside_bounds(self, monkeypatch, value):
        monkeypatch.setenv("CASETRAIL_LEDGER_TIMEOUT_SECONDS", value)
        with pytest.raises(ValueError, match="between 60 and 120"):
            LedgerConfig.from_env()

    @pytest.mark.parametrize("value", ["60", "120", "75.5"])
    def test_timeout_within_bounds(self, monkeypatch, value):
        monkeypatch.setenv("CASETRAIL_LEDGER_TIMEOUT_SECONDS", value)
        assert LedgerConfig.from_env().timeout_seconds == float(value)

    def test_unknown_driver(self, monkeypatch):
        monkeypatch.setenv("CASETRAIL_LEDGER_DRIVER", "ethers")
        with pytest.raises(ValueError, match="Unknown CASETRAIL_LEDGER_DRIVER"):
            LedgerConfig.from_env()

    def test_gateway_requires_url(self, monkeypatch):
        monkeypatch.setenv("CASETRAIL_LEDGER_DRIVER", "gateway")
        with pytest.raises(ValueError, match="GATEWAY_URL"):
            LedgerConfig.from_env()

    @pytest.mark.asyncio
    async def test_factory_selects_driver(self, monkeypatch):
        assert isinstance(create_ledger_client(LedgerConfig()), SimulatedLedgerClient)

        monkeypatch.setenv("CASETRAIL_LEDGER_DRIVER", "gateway")
        monkeypatch.setenv("CASETRAIL_LEDGER_GATEWAY_URL", "http://gateway.test/")
        monkeypatch.setenv("CASETRAIL_LEDGER_TOKEN", "secret")
        config = LedgerConfig.from_env()
        assert config.gateway_url == "http://gateway.test"

        client = create_ledger_client(config)
        assert isinstance(client, GatewayLedgerClient)
        await client.aclose()
