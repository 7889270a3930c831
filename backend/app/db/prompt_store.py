"""PromptStore - storage for the prompt tree and its configuration."""

import json
import uuid
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from app.db.database import get_db
from app.models import Assistant, ModelConfig, PromptCreate, PromptNode, PromptVariable, Provider


def _generate_id() -> str:
    """Generate a unique ID."""
    return str(uuid.uuid4())


def _now() -> str:
    """Get current timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


_BOOL_COLUMNS = (
    "temperature_on",
    "top_p_on",
    "max_tokens_on",
    "frequency_penalty_on",
    "presence_penalty_on",
    "seed_on",
    "reasoning_effort_on",
)


def _row_to_prompt(row: aiosqlite.Row) -> PromptNode:
    """Convert a database row to a PromptNode."""
    data = dict(row)
    data["system_variables"] = json.loads(data.pop("system_variables_json") or "{}")
    schema = data.pop("json_schema_json")
    data["json_schema"] = json.loads(schema) if schema else None
    metadata = data.pop("last_ai_call_metadata_json")
    data["last_ai_call_metadata"] = json.loads(metadata) if metadata else None
    data["is_deleted"] = bool(data["is_deleted"])
    for column in _BOOL_COLUMNS:
        data[column] = bool(data[column])
    return PromptNode(**data)


def _row_to_model(row: aiosqlite.Row) -> ModelConfig:
    """Convert a models row to a ModelConfig, applying capability defaults."""
    levels = json.loads(row["reasoning_effort_levels_json"] or "[]")
    config: dict[str, Any] = {
        "model_id": row["model_id"],
        "model_name": row["model_name"],
        "provider": Provider(row["provider"] or "openai"),
        "api_model_id": row["api_model_id"] or row["model_id"],
        "reasoning_effort_levels": levels,
        "background_mode": bool(row["background_mode"]),
    }
    if row["context_window"] is not None:
        config["context_window"] = row["context_window"]
    if row["max_output_tokens"] is not None:
        config["max_output_tokens"] = row["max_output_tokens"]
    if row["token_param"]:
        config["token_param"] = row["token_param"]
    if row["supports_temperature"] is not None:
        config["supports_temperature"] = bool(row["supports_temperature"])
    if row["supports_reasoning_effort"] is not None:
        config["supports_reasoning_effort"] = bool(row["supports_reasoning_effort"])
    return ModelConfig(**config)


class PromptStore:
    """Storage for prompts, assistants, variables, settings and models."""

    # ==================== Prompts ====================

    async def create_prompt(self, owner_id: str, data: PromptCreate) -> PromptNode:
        """Create a prompt node, linking it under its parent's root.

        Adding a child changes the tree structure, so the root's family_version
        is bumped.
        """
        db = await get_db()
        now = _now()
        row_id = _generate_id()

        root_id: str | None = None
        if data.parent_row_id:
            parent = await self.get_prompt(data.parent_row_id, owner_id)
            if parent is None:
                raise ValueError(f"Parent prompt {data.parent_row_id} not found")
            root_id = parent.effective_root_id

        await db.execute(
            """
            INSERT INTO prompts (
                row_id, parent_row_id, root_prompt_row_id, owner_id, prompt_name, node_type,
                input_admin_prompt, input_user_prompt, system_variables_json, model,
                temperature, temperature_on, top_p, top_p_on, max_tokens, max_tokens_on,
                frequency_penalty, frequency_penalty_on, presence_penalty, presence_penalty_on,
                seed, seed_on, reasoning_effort, reasoning_effort_on, json_schema_json,
                created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                row_id,
                data.parent_row_id,
                root_id,
                owner_id,
                data.prompt_name,
                data.node_type.value,
                data.input_admin_prompt,
                data.input_user_prompt,
                json.dumps(data.system_variables),
                data.model,
                data.temperature,
                int(data.temperature_on),
                data.top_p,
                int(data.top_p_on),
                data.max_tokens,
                int(data.max_tokens_on),
                data.frequency_penalty,
                int(data.frequency_penalty_on),
                data.presence_penalty,
                int(data.presence_penalty_on),
                data.seed,
                int(data.seed_on),
                data.reasoning_effort,
                int(data.reasoning_effort_on),
                json.dumps(data.json_schema) if data.json_schema is not None else None,
                now,
                now,
            ),
        )
        if root_id:
            await self._bump_family_version(db, root_id)
        await db.commit()

        prompt = await self.get_prompt(row_id, owner_id)
        if prompt is None:
            raise RuntimeError(f"Prompt {row_id} missing after insert")
        return prompt

    async def get_prompt(
        self, row_id: str, owner_id: str | None = None, include_deleted: bool = False
    ) -> PromptNode | None:
        """Get a prompt by id, optionally scoped to an owner."""
        db = await get_db()

        query = "SELECT * FROM prompts WHERE row_id = ?"
        params: list[Any] = [row_id]
        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)
        if not include_deleted:
            query += " AND is_deleted = 0"

        cursor = await db.execute(query, params)
        row = await cursor.fetchone()
        return _row_to_prompt(row) if row else None

    async def soft_delete_prompt(self, row_id: str, owner_id: str) -> bool:
        """Mark a prompt deleted. Returns False if it was not found."""
        db = await get_db()
        prompt = await self.get_prompt(row_id, owner_id)
        if prompt is None:
            return False

        await db.execute(
            "UPDATE prompts SET is_deleted = 1, updated_at = ? WHERE row_id = ?",
            (_now(), row_id),
        )
        await self._bump_family_version(db, prompt.effective_root_id)
        await db.commit()
        return True

    async def list_family_prompts(self, root_prompt_row_id: str) -> list[PromptNode]:
        """List the live prompts of a tree, root included."""
        db = await get_db()
        cursor = await db.execute(
            """
            SELECT * FROM prompts
            WHERE (root_prompt_row_id = ? OR row_id = ?) AND is_deleted = 0
            ORDER BY created_at
            """,
            (root_prompt_row_id, root_prompt_row_id),
        )
        rows = await cursor.fetchall()
        return [_row_to_prompt(row) for row in rows]

    async def get_family_version(self, row_id: str) -> int:
        """Get a prompt's family_version, defaulting to 1."""
        db = await get_db()
        cursor = await db.execute("SELECT family_version FROM prompts WHERE row_id = ?", (row_id,))
        row = await cursor.fetchone()
        return row["family_version"] if row and row["family_version"] else 1

    async def update_prompt_output(
        self,
        row_id: str,
        output_response: str,
        last_ai_call_metadata: dict[str, Any] | None = None,
        set_user_prompt_result: bool = False,
    ) -> bool:
        """Store an execution result on a prompt."""
        db = await get_db()

        assignments = ["output_response = ?", "updated_at = ?"]
        params: list[Any] = [output_response, _now()]
        if set_user_prompt_result:
            assignments.append("user_prompt_result = ?")
            params.append(output_response)
        if last_ai_call_metadata is not None:
            assignments.append("last_ai_call_metadata_json = ?")
            params.append(json.dumps(last_ai_call_metadata))
        params.append(row_id)

        cursor = await db.execute(
            f"UPDATE prompts SET {', '.join(assignments)} WHERE row_id = ?",
            params,
        )
        await db.commit()
        return cursor.rowcount > 0

    async def _bump_family_version(self, db: aiosqlite.Connection, root_id: str) -> None:
        await db.execute(
            "UPDATE prompts SET family_version = family_version + 1 WHERE row_id = ?",
            (root_id,),
        )

    # ==================== Assistants ====================

    async def get_assistant(self, prompt_row_id: str) -> Assistant | None:
        """Get the assistant attached to a prompt."""
        db = await get_db()
        cursor = await db.execute(
            "SELECT * FROM assistants WHERE prompt_row_id = ?", (prompt_row_id,)
        )
        row = await cursor.fetchone()
        return Assistant(**dict(row)) if row else None

    async def create_assistant(
        self,
        prompt_row_id: str,
        owner_id: str,
        name: str,
        instructions: str | None = None,
        model_override: str | None = None,
    ) -> Assistant:
        """Attach an assistant to a prompt, returning the existing one on a race."""
        db = await get_db()
        now = _now()

        await db.execute(
            """
            INSERT INTO assistants (row_id, prompt_row_id, owner_id, name, instructions,
                                    model_override, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(prompt_row_id) DO NOTHING
            """,
            (_generate_id(), prompt_row_id, owner_id, name, instructions, model_override, now, now),
        )
        await db.commit()

        assistant = await self.get_assistant(prompt_row_id)
        if assistant is None:
            raise RuntimeError(f"Assistant for prompt {prompt_row_id} missing after insert")
        return assistant

    # ==================== Variables ====================

    async def list_variables(self, prompt_row_id: str) -> list[PromptVariable]:
        """List user-defined variables of a prompt."""
        db = await get_db()
        cursor = await db.execute(
            "SELECT * FROM prompt_variables WHERE prompt_row_id = ? ORDER BY variable_name",
            (prompt_row_id,),
        )
        rows = await cursor.fetchall()
        return [PromptVariable(**dict(row)) for row in rows]

    async def set_variable(
        self,
        prompt_row_id: str,
        name: str,
        value: str | None = None,
        default_value: str | None = None,
    ) -> None:
        """Create or update a user-defined variable."""
        db = await get_db()
        await db.execute(
            """
            INSERT INTO prompt_variables (row_id, prompt_row_id, variable_name, variable_value, default_value)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(prompt_row_id, variable_name) DO UPDATE SET
                variable_value = excluded.variable_value,
                default_value = excluded.default_value
            """,
            (_generate_id(), prompt_row_id, name, value, default_value),
        )
        await db.commit()

    # ==================== Settings & Models ====================

    async def get_setting(self, key: str) -> str | None:
        """Get a setting value."""
        db = await get_db()
        cursor = await db.execute(
            "SELECT setting_value FROM settings WHERE setting_key = ?", (key,)
        )
        row = await cursor.fetchone()
        return row["setting_value"] if row else None

    async def set_setting(self, key: str, value: str | None) -> None:
        """Create or update a setting."""
        db = await get_db()
        await db.execute(
            """
            INSERT INTO settings (setting_key, setting_value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(setting_key) DO UPDATE SET
                setting_value = excluded.setting_value,
                updated_at = excluded.updated_at
            """,
            (key, value, _now()),
        )
        await db.commit()

    async def get_model(self, model_id: str) -> ModelConfig | None:
        """Get an active model by its id or its provider API id."""
        db = await get_db()
        cursor = await db.execute(
            """
            SELECT * FROM models
            WHERE (model_id = ? OR api_model_id = ?) AND is_active = 1
            ORDER BY model_id = ? DESC
            LIMIT 1
            """,
            (model_id, model_id, model_id),
        )
        row = await cursor.fetchone()
        return _row_to_model(row) if row else None

    async def upsert_model(self, config: ModelConfig) -> None:
        """Create or replace a model catalogue entry."""
        db = await get_db()
        await db.execute(
            """
            INSERT OR REPLACE INTO models (
                model_id, model_name, provider, api_model_id, context_window, max_output_tokens,
                token_param, supports_temperature, supports_reasoning_effort,
                reasoning_effort_levels_json, background_mode, is_active
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
            """,
            (
                config.model_id,
                config.model_name,
                config.provider.value,
                config.api_model_id,
                config.context_window,
                config.max_output_tokens,
                config.token_param,
                int(config.supports_temperature),
                int(config.supports_reasoning_effort),
                json.dumps(config.reasoning_effort_levels),
                int(config.background_mode),
            ),
        )
        await db.commit()


# Global store instance
prompt_store = PromptStore()
