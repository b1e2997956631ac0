"""
Bundle Signing

Ed25519 signatures over export bundle checksums.

A bundle's checksum already commits to every entry, the anchor hash and
the attestation; signing the checksum binds all of it to the exporting
deployment's key. A third party verifies with the public key alone.
"""

from typing import Tuple

from nacl.encoding import Base64Encoder
from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import SigningKey, VerifyKey

SIGNATURE_ALGORITHM = "ed25519"


class Signer:
    """Ed25519 sign/verify with base64-encoded keys and signatures."""

    @staticmethod
    def generate_keypair() -> Tuple[str, str]:
        """
        Generate a new Ed25519 keypair.

        Returns:
            Tuple of (private_key_b64, public_key_b64)
        """
        signing_key = SigningKey.generate()
        private_b64 = signing_key.encode(encoder=Base64Encoder).decode("ascii")
        public_b64 = signing_key.verify_key.encode(encoder=Base64Encoder).decode("ascii")
        return private_b64, public_b64

    @staticmethod
    def derive_public_key(private_key_b64: str) -> str:
        """Public half of a base64-encoded private key."""
        signing_key = SigningKey(private_key_b64.encode("ascii"), encoder=Base64Encoder)
        return signing_key.verify_key.encode(encoder=Base64Encoder).decode("ascii")

    @staticmethod
    def sign(message: str, private_key_b64: str) -> str:
        """
        Sign a message (typically a bundle checksum).

        Returns:
            Base64-encoded detached signature
        """
        signing_key = SigningKey(private_key_b64.encode("ascii"), encoder=Base64Encoder)
        signed = signing_key.sign(message.encode("utf-8"), encoder=Base64Encoder)
        return signed.signature.decode("ascii")

    @staticmethod
    def verify(message: str, signature_b64: str, public_key_b64: str) -> bool:
        """
        Verify a detached Ed25519 signature.

        Returns False for a bad signature and for malformed keys or
        signatures; never raises.
        """
        try:
            verify_key = VerifyKey(public_key_b64.encode("ascii"), encoder=Base64Encoder)
            verify_key.verify(
                message.encode("utf-8"),
                Base64Encoder.decode(signature_b64.encode("ascii")),
            )
            return True
        except (BadSignatureError, CryptoError, ValueError, TypeError):
            return False
