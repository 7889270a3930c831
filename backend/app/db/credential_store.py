"""Database operations for encrypted provider credentials."""

import uuid
from datetime import datetime, timezone

from app.db.database import get_db
from app.db.secrets import decrypt_secret, encrypt_secret

# owner_id value for system-level credentials
SYSTEM_OWNER = ""


async def set_credential(owner_id: str | None, service: str, key: str, value: str) -> None:
    """Set or update a credential. A None owner stores a system-level value."""
    db = await get_db()

    now = datetime.now(timezone.utc).isoformat()
    encrypted_value = encrypt_secret(value.strip())

    await db.execute(
        """
        INSERT INTO credentials (row_id, owner_id, service, credential_key, encrypted_value, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(owner_id, service, credential_key) DO UPDATE SET
            encrypted_value = excluded.encrypted_value,
            updated_at = excluded.updated_at
        """,
        [str(uuid.uuid4()), owner_id or SYSTEM_OWNER, service, key, encrypted_value, now],
    )
    await db.commit()


async def get_credential(owner_id: str | None, service: str, key: str) -> str | None:
    """Get a decrypted credential stored for exactly this owner."""
    db = await get_db()

    cursor = await db.execute(
        """
        SELECT encrypted_value FROM credentials
        WHERE owner_id = ? AND service = ? AND credential_key = ?
        """,
        [owner_id or SYSTEM_OWNER, service, key],
    )
    row = await cursor.fetchone()

    if not row:
        return None

    return decrypt_secret(row["encrypted_value"])


async def delete_credential(owner_id: str | None, service: str, key: str) -> bool:
    """Delete a credential."""
    db = await get_db()

    cursor = await db.execute(
        "DELETE FROM credentials WHERE owner_id = ? AND service = ? AND credential_key = ?",
        [owner_id or SYSTEM_OWNER, service, key],
    )
    await db.commit()
    return cursor.rowcount > 0
