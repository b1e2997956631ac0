"""
Export Signing Key Management

Holds the Ed25519 key that signs compliance bundles.

CONFIGURATION:
- AUDITCHAIN_EXPORT_PRIVATE_KEY: base64-encoded Ed25519 private key
- AUDITCHAIN_EXPORT_PUBLIC_KEY: base64-encoded public key (must match)
- Generate with: python tools/manage.py generate-key

DEVELOPMENT MODE:
- If the keys are not set, an ephemeral keypair is generated and a
  warning is raised. Bundles signed with it cannot be checked against a
  published key after a restart.
- With AUDITCHAIN_PRODUCTION set, missing keys are a startup error.
"""

import os
import warnings
from dataclasses import dataclass
from typing import Optional

from ..observability import get_logger, is_production
from .signer import Signer

logger = get_logger(__name__)


@dataclass(frozen=True)
class KeyPair:
    """An Ed25519 keypair, both halves base64-encoded."""
    private_key: str
    public_key: str

    def __repr__(self) -> str:
        return f"KeyPair(public_key={self.public_key!r})"


class SigningService:
    """
    Process-wide holder of the export signing key.

    Singleton; call reset() in tests to reload from the environment.
    The private key is never logged or returned.
    """

    _instance: Optional["SigningService"] = None
    _initialized: bool = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if SigningService._initialized:
            return
        self._keypair = self._load_keypair()
        SigningService._initialized = True

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton (for testing only)."""
        cls._instance = None
        cls._initialized = False

    def _load_keypair(self) -> KeyPair:
        private_key = os.environ.get("AUDITCHAIN_EXPORT_PRIVATE_KEY", "")
        public_key = os.environ.get("AUDITCHAIN_EXPORT_PUBLIC_KEY", "")

        if private_key:
            try:
                derived = Signer.derive_public_key(private_key)
            except (ValueError, TypeError) as e:
                raise RuntimeError(f"AUDITCHAIN_EXPORT_PRIVATE_KEY is not a valid Ed25519 key: {e}") from e
            if public_key and public_key != derived:
                raise RuntimeError(
                    "AUDITCHAIN_EXPORT_PUBLIC_KEY does not match AUDITCHAIN_EXPORT_PRIVATE_KEY"
                )
            self._is_ephemeral = False
            logger.info("Export signing key loaded from environment", public_key=derived)
            return KeyPair(private_key=private_key, public_key=derived)

        if is_production():
            raise RuntimeError(
                "AUDITCHAIN_EXPORT_PRIVATE_KEY must be set in production. "
                "Generate one with: python tools/manage.py generate-key"
            )

        warnings.warn(
            "Export signing key not configured. Generating an ephemeral key for development. "
            "It changes on each restart and is NOT suitable for production.",
            stacklevel=3,
        )
        private_key, public_key = Signer.generate_keypair()
        self._is_ephemeral = True
        logger.warning("Generated ephemeral export signing key", public_key=public_key)
        return KeyPair(private_key=private_key, public_key=public_key)

    @property
    def public_key(self) -> str:
        return self._keypair.public_key

    @property
    def is_ephemeral(self) -> bool:
        return self._is_ephemeral

    def sign(self, message: str) -> str:
        """Base64 Ed25519 signature of message with the export key."""
        return Signer.sign(message, self._keypair.private_key)

    def verify(self, message: str, signature: str) -> bool:
        return Signer.verify(message, signature, self._keypair.public_key)


def get_signing_service() -> SigningService:
    """Get the global SigningService instance."""
    return SigningService()
