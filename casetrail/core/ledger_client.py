"""
Ledger Collaborator Adapters

The workflow treats the ledger as an ordinary fallible remote call:
invoke(method, args) either returns a transaction id or raises a
classified LedgerError. Nothing above this module sees a transport
exception.

Implementations:
- SimulatedLedgerClient: in-process, hash-chained, Ed25519-signed log.
  Used in development and tests; its chain is checked by /health.
- GatewayLedgerClient: JSON gateway in front of the real contract,
  spoken to with httpx.

Environment Variables:
    CASETRAIL_LEDGER_DRIVER: simulated (default) or gateway
    CASETRAIL_LEDGER_GATEWAY_URL: base URL of the gateway
    CASETRAIL_LEDGER_TOKEN: bearer token for the gateway
    CASETRAIL_LEDGER_TIMEOUT_SECONDS: confirmation bound (default 90)
    CASETRAIL_LEDGER_SIMULATED_DELAY_MS: simulated confirmation delay (default 0)
"""

import asyncio
import os
import re
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from ..observability import get_logger
from ..schemas import LedgerFailure, LedgerFailureKind, LedgerMethod, LedgerTransaction
from .errors import LedgerError
from .hasher import Hasher
from .signing_service import SigningService, get_signing_service

logger = get_logger(__name__)

# EIP-1193 code for "user rejected the request"
USER_REJECTED_CODE = 4001

MIN_TIMEOUT_SECONDS = 60.0
MAX_TIMEOUT_SECONDS = 120.0

_REVERT_PATTERN = re.compile(r"execution reverted:?\s*(.*)", re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True)
class LedgerConfig:
    driver: str = "simulated"
    gateway_url: str = ""
    token: str = ""
    timeout_seconds: float = 90.0
    simulated_delay_ms: int = 0

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        driver = os.getenv("CASETRAIL_LEDGER_DRIVER", "simulated").strip().lower()
        if driver not in ("simulated", "gateway"):
            raise ValueError(
                f"Unknown CASETRAIL_LEDGER_DRIVER: {driver}. Valid values: simulated, gateway"
            )

        timeout_seconds = float(os.getenv("CASETRAIL_LEDGER_TIMEOUT_SECONDS", "90"))
        if not MIN_TIMEOUT_SECONDS <= timeout_seconds <= MAX_TIMEOUT_SECONDS:
            raise ValueError(
                f"CASETRAIL_LEDGER_TIMEOUT_SECONDS must be between "
                f"{MIN_TIMEOUT_SECONDS:g} and {MAX_TIMEOUT_SECONDS:g}, got {timeout_seconds:g}"
            )

        gateway_url = os.getenv("CASETRAIL_LEDGER_GATEWAY_URL", "").rstrip("/")
        if driver == "gateway" and not gateway_url:
            raise ValueError("CASETRAIL_LEDGER_GATEWAY_URL is required for the gateway driver")

        return cls(
            driver=driver,
            gateway_url=gateway_url,
            token=os.getenv("CASETRAIL_LEDGER_TOKEN", "").strip(),
            timeout_seconds=timeout_seconds,
            simulated_delay_ms=int(os.getenv("CASETRAIL_LEDGER_SIMULATED_DELAY_MS", "0")),
        )


def classify_failure(message: str, code: Optional[int] = None) -> LedgerFailure:
    """
    Map a ledger error message (and optional numeric code) to a failure kind.

    Wallet rejections carry code 4001; funding and revert failures are
    recognised from the node's message text.
    """
    text = (message or "").strip()
    lowered = text.lower()

    if code == USER_REJECTED_CODE or "user rejected" in lowered or "user denied" in lowered:
        return LedgerFailure(kind=LedgerFailureKind.USER_REJECTED, reason="User rejected the request")

    if "insufficient funds" in lowered:
        return LedgerFailure(kind=LedgerFailureKind.INSUFFICIENT_FUNDS, reason=text)

    match = _REVERT_PATTERN.search(text)
    if match:
        reason = match.group(1).strip() or "Transaction reverted"
        return LedgerFailure(kind=LedgerFailureKind.BUSINESS_RULE_REJECTED, reason=reason)

    if "timeout" in lowered or "timed out" in lowered:
        return LedgerFailure(kind=LedgerFailureKind.TIMEOUT, reason=text)

    return LedgerFailure(kind=LedgerFailureKind.UNKNOWN, reason=text or "Unknown ledger error")


class LedgerClient(ABC):
    """Narrow interface over the ledger collaborator."""

    @abstractmethod
    async def invoke(self, method: LedgerMethod, args: list) -> str:
        """
        Submit a contract call and wait for confirmation.

        Returns:
            The confirmed transaction id

        Raises:
            LedgerError: classified failure
        """
        pass

    async def aclose(self) -> None:
        pass


class SimulatedLedgerClient(LedgerClient):
    """
    In-process ledger.

    Every confirmed call becomes a LedgerTransaction whose hash chains to
    the previous one and is signed by the system key. The transaction id
    is the 0x-prefixed hash.

    Failures can be scripted with queue_failure(); the next invoke()
    raises it instead of confirming.
    """

    def __init__(
        self,
        delay_ms: int = 0,
        signing_service: Optional[SigningService] = None,
    ):
        self._delay_ms = delay_ms
        self._signing = signing_service or get_signing_service()
        self._transactions: list[LedgerTransaction] = []
        self._pending_failures: deque[LedgerFailure] = deque()
        self._lock = asyncio.Lock()

    @property
    def transactions(self) -> list[LedgerTransaction]:
        return list(self._transactions)

    def queue_failure(self, kind: LedgerFailureKind, reason: str = "") -> None:
        self._pending_failures.append(
            LedgerFailure(kind=kind, reason=reason or kind.value.replace("_", " "))
        )

    def transactions_for(self, method: LedgerMethod) -> list[LedgerTransaction]:
        return [tx for tx in self._transactions if tx.method == method]

    async def invoke(self, method: LedgerMethod, args: list) -> str:
        if self._delay_ms:
            await asyncio.sleep(self._delay_ms / 1000)

        if self._pending_failures:
            failure = self._pending_failures.popleft()
            logger.info(
                "Simulated ledger call failed",
                method=method.value,
                failure_kind=failure.kind.value,
            )
            raise LedgerError(failure.kind, failure.reason)

        async with self._lock:
            previous = self._transactions[-1] if self._transactions else None
            sequence_number = len(self._transactions)
            payload = {
                "sequence_number": sequence_number,
                "method": method.value,
                "args": list(args),
            }
            previous_hash = previous.tx_hash if previous else None
            tx_hash = Hasher.hash_transaction(payload, previous_hash)
            tx = LedgerTransaction(
                tx_id=f"0x{tx_hash}",
                sequence_number=sequence_number,
                method=method,
                args=list(args),
                previous_tx_hash=previous_hash,
                tx_hash=tx_hash,
                signature=self._signing.sign(tx_hash),
            )
            self._transactions.append(tx)

        logger.debug("Simulated ledger call confirmed", method=method.value, tx_id=tx.tx_id)
        return tx.tx_id

    def verify_chain(self) -> bool:
        """Recompute every hash and check every signature."""
        previous_hash = None
        for index, tx in enumerate(self._transactions):
            if tx.sequence_number != index or tx.previous_tx_hash != previous_hash:
                return False
            payload = {
                "sequence_number": tx.sequence_number,
                "method": tx.method.value,
                "args": tx.args,
            }
            if not Hasher.verify_transaction(payload, tx.tx_hash, previous_hash):
                return False
            if not self._signing.verify(tx.tx_hash, tx.signature):
                return False
            previous_hash = tx.tx_hash
        return True


class GatewayLedgerClient(LedgerClient):
    """
    Ledger access through an HTTP JSON gateway.

    POST /invoke {"method": ..., "args": [...]}
      200 -> {"transaction_id": "0x..."}
      4xx/5xx -> {"error": {"code": int?, "message": str}}

    Calls are never retried here.
    """

    def __init__(self, config: LedgerConfig, *, client: Optional[httpx.AsyncClient] = None):
        self._config = config
        self._owned_client = client is None

        if client is None:
            headers = {
                "Accept": "application/json",
                "User-Agent": "casetrail/1",
            }
            if config.token:
                headers["Authorization"] = f"Bearer {config.token}"
            client = httpx.AsyncClient(
                base_url=config.gateway_url,
                timeout=httpx.Timeout(
                    timeout=config.timeout_seconds,
                    connect=min(5.0, config.timeout_seconds),
                ),
                headers=headers,
            )

        self._client = client

    async def aclose(self) -> None:
        if self._owned_client:
            await self._client.aclose()

    async def invoke(self, method: LedgerMethod, args: list) -> str:
        body = {"method": method.value, "args": list(args)}
        try:
            resp = await self._client.post("/invoke", json=body)
        except httpx.TimeoutException as e:
            raise LedgerError(LedgerFailureKind.TIMEOUT, f"Ledger gateway timed out: {e}") from e
        except httpx.TransportError as e:
            raise LedgerError(LedgerFailureKind.TIMEOUT, f"Ledger gateway unreachable: {e}") from e

        payload = self._decode(resp)

        if resp.is_success:
            tx_id = payload.get("transaction_id") if isinstance(payload, dict) else None
            if not tx_id:
                raise LedgerError(
                    LedgerFailureKind.UNKNOWN,
                    "Ledger gateway response did not include a transaction_id",
                )
            return str(tx_id)

        if resp.status_code == 504:
            raise LedgerError(LedgerFailureKind.TIMEOUT, "Ledger gateway timed out waiting for confirmation")

        message, code = self._error_detail(payload, resp)
        failure = classify_failure(message, code)
        logger.warning(
            "Ledger gateway rejected call",
            method=method.value,
            status_code=resp.status_code,
            failure_kind=failure.kind.value,
        )
        raise LedgerError(failure.kind, failure.reason)

    @staticmethod
    def _decode(resp: httpx.Response) -> Any:
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return None

    @staticmethod
    def _error_detail(payload: Any, resp: httpx.Response) -> tuple[str, Optional[int]]:
        if isinstance(payload, dict):
            error = payload.get("error", payload)
            if isinstance(error, dict):
                code = error.get("code")
                return str(error.get("message", "")), code if isinstance(code, int) else None
            if isinstance(error, str):
                return error, None
        return resp.text or f"HTTP {resp.status_code}", None


def create_ledger_client(config: Optional[LedgerConfig] = None) -> LedgerClient:
    config = config or LedgerConfig.from_env()
    if config.driver == "gateway":
        logger.info("Using ledger gateway", gateway_url=config.gateway_url)
        return GatewayLedgerClient(config)
    logger.info("Using simulated ledger", delay_ms=config.simulated_delay_ms)
    return SimulatedLedgerClient(delay_ms=config.simulated_delay_ms)
