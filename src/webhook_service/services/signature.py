"""HMAC-SHA256 signing of raw webhook bodies."""
from __future__ import annotations

import hmac
import secrets
from hashlib import sha256

SIGNATURE_PREFIX = "sha256="


class SignatureService:
    """Computes and verifies ``hex(HMAC_SHA256(secret, raw_body))``.

    Verification must run against the exact bytes received, never a
    re-serialized copy of the parsed JSON.
    """

    def sign(self, secret: str, body: bytes) -> str:
        return hmac.new(secret.encode("utf-8"), body, sha256).hexdigest()

    def header_value(self, secret: str, body: bytes) -> str:
        return f"{SIGNATURE_PREFIX}{self.sign(secret, body)}"

    def verify(self, secret: str, body: bytes, signature: str | None) -> bool:
        if not signature:
            return False
        received = signature[len(SIGNATURE_PREFIX):] if signature.startswith(SIGNATURE_PREFIX) else signature
        return hmac.compare_digest(received.lower(), self.sign(secret, body))

    @staticmethod
    def generate_secret(num_bytes: int = 32) -> str:
        return secrets.token_urlsafe(num_bytes)
