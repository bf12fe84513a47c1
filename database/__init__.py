"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  items = await store.fetch_due_queue_items(now, limit=20)
"""
from database.models import (
    Base, ChannelRow, TemplateRow, SendBatchRow, QueueItemRow,
    SendOutcomeRow, ConversationRow, AgentProfileRow, MessageRow, RunLeaseRow,
)
from database.session import get_engine, session_scope, init_db, close_db
from database.store_base import DataStore, RunLease
from database.store import SqlDataStore
from database.store_memory import InMemoryDataStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "ChannelRow", "TemplateRow", "SendBatchRow", "QueueItemRow",
    "SendOutcomeRow", "ConversationRow", "AgentProfileRow", "MessageRow", "RunLeaseRow",
    # Session management
    "get_engine", "session_scope", "init_db", "close_db",
    # Store interface
    "DataStore", "RunLease",
    # Store backends
    "SqlDataStore", "InMemoryDataStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
