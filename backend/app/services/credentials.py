"""Credential resolver.

Looks up a decrypted provider secret for a user. Resolution order is the
user's own credential, then the system-level credential, then an environment
variable. A lookup that errors or takes longer than the timeout resolves to
None so a slow store never blocks a run.
"""

import asyncio
import logging
import os

from app.db import credential_store
from app.db.secrets import SecretsError

logger = logging.getLogger(__name__)

LOOKUP_TIMEOUT_SECONDS = 5.0

# (service, key) -> environment variable holding a system-level fallback
ENV_FALLBACKS: dict[tuple[str, str], str] = {
    ("openai", "api_key"): "OPENAI_API_KEY",
    ("anthropic", "api_key"): "ANTHROPIC_API_KEY",
}


async def _lookup(owner_id: str, service: str, key: str) -> str | None:
    value = await credential_store.get_credential(owner_id, service, key)
    if value:
        return value.strip()
    value = await credential_store.get_credential(None, service, key)
    if value:
        return value.strip()
    return None


async def get_credential(
    owner_id: str,
    service: str,
    key: str = "api_key",
    timeout: float = LOOKUP_TIMEOUT_SECONDS,
) -> str | None:
    """Resolve a credential for a user.

    Args:
        owner_id: The requesting user
        service: Provider name, e.g. "openai"
        key: Credential key within the service
        timeout: Seconds to wait for the store

    Returns:
        The secret, or None if it is not configured or could not be read
    """
    try:
        value = await asyncio.wait_for(_lookup(owner_id, service, key), timeout=timeout)
    except TimeoutError:
        logger.warning(f"Credential lookup timed out for {service}/{key}")
        value = None
    except SecretsError as e:
        logger.warning(f"Credential for {service}/{key} could not be decrypted: {e}")
        value = None

    if value:
        return value

    env_name = ENV_FALLBACKS.get((service, key))
    if env_name:
        env_value = os.getenv(env_name)
        if env_value and env_value.strip():
            return env_value.strip()
    return None
