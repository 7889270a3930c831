"""Standard Webhooks signature verification for provider callbacks.

Signed content is "{webhook-id}.{webhook-timestamp}.{body}", HMAC-SHA256 with
the base64-decoded secret (after the "whsec_" prefix). The signature header
holds space-separated "v1,<base64>" entries; any match is accepted.
"""

import base64
import binascii
import hashlib
import hmac
import logging
import time
from collections.abc import Awaitable, Callable, Mapping

from app.config import get_settings
from app.db import credential_store
from app.errors import AuthError, ErrorCode

logger = logging.getLogger(__name__)

TIMESTAMP_TOLERANCE_SECONDS = 300
SECRET_TTL_SECONDS = 300
SECRET_PREFIX = "whsec_"


class SecretCache:
    """Holds a loaded secret until it expires or is invalidated."""

    def __init__(
        self,
        loader: Callable[[], Awaitable[str | None]],
        ttl_seconds: float = SECRET_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._ttl = ttl_seconds
        self._clock = clock
        self._value: str | None = None
        self._expires_at = 0.0

    async def get(self) -> str | None:
        """Return the cached secret, reloading it once expired."""
        if self._value is None or self._clock() >= self._expires_at:
            self._value = await self._loader()
            self._expires_at = self._clock() + self._ttl
        return self._value

    def invalidate(self) -> None:
        """Drop the cached secret so the next get() reloads it."""
        self._value = None
        self._expires_at = 0.0


async def load_webhook_secret() -> str | None:
    """System-level stored secret, else OPENAI_WEBHOOK_SECRET."""
    stored = await credential_store.get_credential(None, "openai", "webhook_secret")
    if stored and stored.strip():
        return stored.strip()
    return get_settings().openai_webhook_secret


def _signing_keys(secret: str) -> list[bytes]:
    raw = secret[len(SECRET_PREFIX):] if secret.startswith(SECRET_PREFIX) else secret
    keys = []
    try:
        keys.append(base64.b64decode(raw, validate=True))
    except (binascii.Error, ValueError):
        pass
    # Some secrets are issued without base64 encoding
    keys.append(raw.encode("utf-8"))
    return keys


def compute_signature(key: bytes, webhook_id: str, timestamp: str, body: bytes) -> str:
    """The "v1,<base64>" signature for a payload."""
    signed = f"{webhook_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(key, signed, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode("ascii")


def verify_signature(
    secret: str,
    headers: Mapping[str, str],
    body: bytes,
    now: float | None = None,
    tolerance: int = TIMESTAMP_TOLERANCE_SECONDS,
) -> bool:
    """Check the Standard Webhooks headers against a secret."""
    webhook_id = headers.get("webhook-id")
    timestamp = headers.get("webhook-timestamp")
    signature_header = headers.get("webhook-signature")
    if not webhook_id or not timestamp or not signature_header:
        logger.warning("Webhook rejected: missing signature headers")
        return False

    try:
        sent_at = int(timestamp)
    except ValueError:
        logger.warning(f"Webhook rejected: malformed timestamp {timestamp!r}")
        return False

    now = time.time() if now is None else now
    if abs(now - sent_at) > tolerance:
        logger.warning(f"Webhook rejected: timestamp {sent_at} outside {tolerance}s tolerance")
        return False

    received = signature_header.split()
    for key in _signing_keys(secret):
        expected = compute_signature(key, webhook_id, timestamp, body)
        if any(hmac.compare_digest(expected, candidate) for candidate in received):
            return True

    logger.warning(f"Webhook rejected: signature mismatch for {webhook_id}")
    return False


class WebhookVerifier:
    """Verifies webhook requests against the cached signing secret."""

    def __init__(self, cache: SecretCache | None = None) -> None:
        self.cache = cache or SecretCache(load_webhook_secret)

    async def verify(self, headers: Mapping[str, str], body: bytes) -> None:
        """Accept or reject a webhook request.

        Without a configured secret, verification is skipped with a warning.

        Raises:
            AuthError: AUTH_INVALID when the signature does not verify
        """
        secret = await self.cache.get()
        if not secret:
            logger.warning("No webhook secret configured, skipping signature verification")
            return

        if not verify_signature(secret, headers, body):
            # The secret may have been rotated since it was cached
            self.cache.invalidate()
            raise AuthError("Invalid webhook signature", code=ErrorCode.AUTH_INVALID)


# Global verifier instance (lazy initialization)
_verifier: WebhookVerifier | None = None


def get_webhook_verifier() -> WebhookVerifier:
    """Get or create the global webhook verifier."""
    global _verifier
    if _verifier is None:
        _verifier = WebhookVerifier()
    return _verifier
