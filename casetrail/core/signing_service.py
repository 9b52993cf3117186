"""
System signing key for the simulated ledger.

  CASETRAIL_SYSTEM_PRIVATE_KEY / CASETRAIL_SYSTEM_PUBLIC_KEY: base64
  Ed25519 keys, generated with `python tools/manage.py generate-keypair`.

Without them an ephemeral pair is generated (and every restart starts a
new signing identity); CASETRAIL_PRODUCTION=1 makes that a startup error.
"""

import binascii
import os
from typing import Optional

from nacl.exceptions import CryptoError

from ..observability import get_logger
from .signer import Signer

logger = get_logger(__name__)

PRIVATE_KEY_VAR = "CASETRAIL_SYSTEM_PRIVATE_KEY"
PUBLIC_KEY_VAR = "CASETRAIL_SYSTEM_PUBLIC_KEY"

_shared: Optional["SigningService"] = None


def _production() -> bool:
    return os.environ.get("CASETRAIL_PRODUCTION", "").lower() in ("1", "true", "yes")


def _derived_public_key(private_key: str) -> Optional[str]:
    try:
        return Signer.public_key_for(private_key)
    except (CryptoError, binascii.Error, ValueError, TypeError) as e:
        logger.error("System private key could not be decoded", error=str(e))
        return None


class SigningService:
    """Signs and verifies transaction hashes with the system key. Never logs the private half."""

    def __init__(self):
        private_key = os.environ.get(PRIVATE_KEY_VAR, "")
        public_key = os.environ.get(PUBLIC_KEY_VAR, "")

        if private_key and public_key:
            if _derived_public_key(private_key) != public_key:
                raise RuntimeError(
                    f"System keypair validation failed: {PUBLIC_KEY_VAR} does not "
                    f"belong to {PRIVATE_KEY_VAR}"
                )
            self.is_ephemeral = False
            logger.info("System signing key loaded from environment")
        elif _production():
            raise RuntimeError(
                f"{PRIVATE_KEY_VAR} and {PUBLIC_KEY_VAR} must be set in production "
                "(python tools/manage.py generate-keypair)"
            )
        else:
            private_key, public_key = Signer.generate_keypair()
            self.is_ephemeral = True
            logger.warning("No system signing key configured; using an ephemeral key")

        self._private_key = private_key
        self.system_public_key = public_key

    @classmethod
    def reset(cls) -> None:
        """Forget the shared instance so the next lookup re-reads the environment."""
        global _shared
        _shared = None

    def sign(self, message: str) -> str:
        return Signer.sign(message, self._private_key)

    def verify(self, message: str, signature: str) -> bool:
        return Signer.verify(message, signature, self.system_public_key)


def get_signing_service() -> SigningService:
    global _shared
    if _shared is None:
        _shared = SigningService()
    return _shared
