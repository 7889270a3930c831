"""SQLite database connection and schema initialization."""

from pathlib import Path

import aiosqlite

# Global connection holder
_db_connection: aiosqlite.Connection | None = None


async def init_database(db_path: str) -> None:
    """Initialize the database connection and create schema."""
    global _db_connection

    # Ensure the data directory exists
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    _db_connection = await aiosqlite.connect(db_path)
    _db_connection.row_factory = aiosqlite.Row

    # Enable foreign keys
    await _db_connection.execute("PRAGMA foreign_keys = ON")

    # Create schema
    await _create_schema(_db_connection)


async def close_database() -> None:
    """Close the database connection."""
    global _db_connection
    if _db_connection:
        await _db_connection.close()
        _db_connection = None


async def get_db() -> aiosqlite.Connection:
    """Get the database connection."""
    if _db_connection is None:
        raise RuntimeError("Database not initialized. Call init_database first.")
    return _db_connection


async def _create_schema(db: aiosqlite.Connection) -> None:
    """Create database tables and indexes."""
    # Prompt tree
    await db.execute("""
        CREATE TABLE IF NOT EXISTS prompts (
            row_id TEXT PRIMARY KEY,
            parent_row_id TEXT,
            root_prompt_row_id TEXT,
            owner_id TEXT NOT NULL,
            prompt_name TEXT NOT NULL,
            node_type TEXT NOT NULL DEFAULT 'standard',
            input_admin_prompt TEXT,
            input_user_prompt TEXT,
            admin_prompt_result TEXT,
            user_prompt_result TEXT,
            output_response TEXT,
            system_variables_json TEXT NOT NULL DEFAULT '{}',
            model TEXT,
            temperature REAL,
            temperature_on INTEGER NOT NULL DEFAULT 0,
            top_p REAL,
            top_p_on INTEGER NOT NULL DEFAULT 0,
            max_tokens INTEGER,
            max_tokens_on INTEGER NOT NULL DEFAULT 0,
            frequency_penalty REAL,
            frequency_penalty_on INTEGER NOT NULL DEFAULT 0,
            presence_penalty REAL,
            presence_penalty_on INTEGER NOT NULL DEFAULT 0,
            seed INTEGER,
            seed_on INTEGER NOT NULL DEFAULT 0,
            reasoning_effort TEXT,
            reasoning_effort_on INTEGER NOT NULL DEFAULT 0,
            json_schema_json TEXT,
            last_ai_call_metadata_json TEXT,
            family_version INTEGER NOT NULL DEFAULT 1,
            is_deleted INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT (datetime('now')),
            updated_at TEXT NOT NULL DEFAULT (datetime('now')),
            FOREIGN KEY (parent_row_id) REFERENCES prompts(row_id) ON DELETE SET NULL
        )
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_prompts_root
        ON prompts(root_prompt_row_id, is_deleted)
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_prompts_parent
        ON prompts(parent_row_id)
    """)

    # Assistant configuration, at most one per prompt
    await db.execute("""
        CREATE TABLE IF NOT EXISTS assistants (
            row_id TEXT PRIMARY KEY,
            prompt_row_id TEXT NOT NULL UNIQUE,
            owner_id TEXT NOT NULL,
            name TEXT NOT NULL,
            instructions TEXT,
            model_override TEXT,
            temperature_override REAL,
            top_p_override REAL,
            max_tokens_override INTEGER,
            created_at TEXT NOT NULL DEFAULT (datetime('now')),
            updated_at TEXT NOT NULL DEFAULT (datetime('now')),
            FOREIGN KEY (prompt_row_id) REFERENCES prompts(row_id) ON DELETE CASCADE
        )
    """)

    # User-defined template variables
    await db.execute("""
        CREATE TABLE IF NOT EXISTS prompt_variables (
            row_id TEXT PRIMARY KEY,
            prompt_row_id TEXT NOT NULL,
            variable_name TEXT NOT NULL,
            variable_value TEXT,
            default_value TEXT,
            FOREIGN KEY (prompt_row_id) REFERENCES prompts(row_id) ON DELETE CASCADE,
            UNIQUE(prompt_row_id, variable_name)
        )
    """)

    # Key/value settings
    await db.execute("""
        CREATE TABLE IF NOT EXISTS settings (
            setting_key TEXT PRIMARY KEY,
            setting_value TEXT,
            updated_at TEXT NOT NULL DEFAULT (datetime('now'))
        )
    """)

    # Model catalogue
    await db.execute("""
        CREATE TABLE IF NOT EXISTS models (
            model_id TEXT PRIMARY KEY,
            model_name TEXT,
            provider TEXT NOT NULL DEFAULT 'openai',
            api_model_id TEXT,
            context_window INTEGER,
            max_output_tokens INTEGER,
            token_param TEXT,
            supports_temperature INTEGER,
            supports_reasoning_effort INTEGER,
            reasoning_effort_levels_json TEXT,
            background_mode INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1
        )
    """)

    # Encrypted credentials; empty owner_id means system-level
    await db.execute("""
        CREATE TABLE IF NOT EXISTS credentials (
            row_id TEXT PRIMARY KEY,
            owner_id TEXT NOT NULL DEFAULT '',
            service TEXT NOT NULL,
            credential_key TEXT NOT NULL,
            encrypted_value TEXT NOT NULL,
            updated_at TEXT NOT NULL DEFAULT (datetime('now')),
            UNIQUE(owner_id, service, credential_key)
        )
    """)

    # Family threads, one active per root prompt per owner
    await db.execute("""
        CREATE TABLE IF NOT EXISTS threads (
            row_id TEXT PRIMARY KEY,
            root_prompt_row_id TEXT NOT NULL,
            owner_id TEXT NOT NULL,
            name TEXT,
            provider TEXT NOT NULL DEFAULT 'openai',
            is_active INTEGER NOT NULL DEFAULT 1,
            openai_conversation_id TEXT,
            external_session_id TEXT,
            last_response_id TEXT,
            last_message_at TEXT,
            created_at TEXT NOT NULL DEFAULT (datetime('now')),
            FOREIGN KEY (root_prompt_row_id) REFERENCES prompts(row_id) ON DELETE CASCADE
        )
    """)

    await db.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_threads_one_active
        ON threads(root_prompt_row_id, owner_id)
        WHERE is_active = 1
    """)

    # Stored turns for providers without server-side chaining
    await db.execute("""
        CREATE TABLE IF NOT EXISTS thread_messages (
            row_id TEXT PRIMARY KEY,
            thread_row_id TEXT NOT NULL,
            role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
            content TEXT NOT NULL,
            response_id TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY (thread_row_id) REFERENCES threads(row_id) ON DELETE CASCADE
        )
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_thread_messages_thread
        ON thread_messages(thread_row_id, created_at)
    """)

    # Execution traces
    await db.execute("""
        CREATE TABLE IF NOT EXISTS execution_traces (
            trace_id TEXT PRIMARY KEY,
            root_prompt_row_id TEXT NOT NULL,
            entry_prompt_row_id TEXT NOT NULL,
            execution_type TEXT NOT NULL
                CHECK (execution_type IN ('single', 'cascade_top', 'cascade_child')),
            owner_id TEXT NOT NULL,
            thread_row_id TEXT,
            family_version_at_start INTEGER NOT NULL DEFAULT 1,
            prompt_ids_at_start_json TEXT NOT NULL DEFAULT '[]',
            context_snapshot_json TEXT NOT NULL DEFAULT '{}',
            status TEXT NOT NULL DEFAULT 'running'
                CHECK (status IN ('running', 'completed', 'failed', 'replaced', 'cancelled')),
            started_at TEXT NOT NULL,
            completed_at TEXT,
            error_summary TEXT,
            FOREIGN KEY (root_prompt_row_id) REFERENCES prompts(row_id) ON DELETE CASCADE,
            FOREIGN KEY (entry_prompt_row_id) REFERENCES prompts(row_id) ON DELETE CASCADE,
            FOREIGN KEY (thread_row_id) REFERENCES threads(row_id) ON DELETE SET NULL
        )
    """)

    # Mutex: one running trace per entry prompt per owner
    await db.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_traces_one_running
        ON execution_traces(entry_prompt_row_id, owner_id)
        WHERE status = 'running'
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_traces_lookup
        ON execution_traces(entry_prompt_row_id, execution_type, owner_id, status)
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_traces_owner_status
        ON execution_traces(owner_id, status, started_at)
    """)

    # Execution spans
    await db.execute("""
        CREATE TABLE IF NOT EXISTS execution_spans (
            span_id TEXT PRIMARY KEY,
            trace_id TEXT NOT NULL,
            prompt_row_id TEXT,
            span_type TEXT NOT NULL
                CHECK (span_type IN ('generation', 'retry', 'tool_call', 'action', 'error')),
            sequence_order INTEGER NOT NULL,
            attempt_number INTEGER NOT NULL DEFAULT 1,
            previous_attempt_span_id TEXT,
            status TEXT NOT NULL DEFAULT 'running'
                CHECK (status IN ('pending', 'running', 'success', 'failed', 'skipped')),
            openai_response_id TEXT,
            output_preview TEXT,
            output_artefact_id TEXT,
            error_evidence_json TEXT,
            usage_tokens_json TEXT,
            latency_ms INTEGER,
            created_at TEXT NOT NULL,
            completed_at TEXT,
            FOREIGN KEY (trace_id) REFERENCES execution_traces(trace_id) ON DELETE CASCADE,
            FOREIGN KEY (previous_attempt_span_id) REFERENCES execution_spans(span_id)
                ON DELETE SET NULL,
            UNIQUE(trace_id, sequence_order)
        )
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_spans_previous_attempt
        ON execution_spans(previous_attempt_span_id)
    """)

    # Large span outputs
    await db.execute("""
        CREATE TABLE IF NOT EXISTS execution_artefacts (
            artefact_id TEXT PRIMARY KEY,
            span_id TEXT NOT NULL,
            trace_id TEXT NOT NULL,
            artefact_type TEXT NOT NULL
                CHECK (artefact_type IN ('output', 'error_trace', 'tool_result', 'context')),
            content_hash TEXT NOT NULL,
            content TEXT NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (span_id) REFERENCES execution_spans(span_id) ON DELETE CASCADE
        )
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_artefacts_hash
        ON execution_artefacts(content_hash)
    """)

    # Outstanding asynchronous provider calls
    await db.execute("""
        CREATE TABLE IF NOT EXISTS pending_responses (
            row_id TEXT PRIMARY KEY,
            response_id TEXT NOT NULL UNIQUE,
            owner_id TEXT NOT NULL,
            prompt_row_id TEXT,
            thread_row_id TEXT,
            trace_id TEXT,
            source_function TEXT NOT NULL DEFAULT 'conversation-run',
            status TEXT NOT NULL DEFAULT 'pending',
            output_text TEXT,
            error TEXT,
            error_code TEXT,
            model TEXT,
            reasoning_effort TEXT,
            request_metadata_json TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL,
            completed_at TEXT,
            webhook_event_id TEXT
        )
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_pending_responses_owner_status
        ON pending_responses(owner_id, status)
    """)

    await db.execute("""
        CREATE INDEX IF NOT EXISTS idx_pending_responses_created_at
        ON pending_responses(created_at)
    """)

    # Fixed-window rate limit counters
    await db.execute("""
        CREATE TABLE IF NOT EXISTS rate_limits (
            user_id TEXT NOT NULL,
            endpoint TEXT NOT NULL,
            window_start TEXT NOT NULL,
            request_count INTEGER NOT NULL DEFAULT 1,
            PRIMARY KEY (user_id, endpoint, window_start)
        )
    """)

    await db.commit()
