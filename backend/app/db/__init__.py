"""Database module."""

from app.db.database import close_database, get_db, init_database
from app.db.pending_store import PendingResponseStore, pending_store
from app.db.prompt_store import PromptStore, prompt_store
from app.db.thread_store import ThreadStore, thread_store
from app.db.trace_store import TraceStore, trace_store

__all__ = [
    "get_db",
    "init_database",
    "close_database",
    "prompt_store",
    "PromptStore",
    "thread_store",
    "ThreadStore",
    "trace_store",
    "TraceStore",
    "pending_store",
    "PendingResponseStore",
]
