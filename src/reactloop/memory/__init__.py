from reactloop.memory.session_store import (
    InMemorySessionStore,
    SessionStore,
    SqliteSessionStore,
    create_session_store,
    truncate_history,
)

__all__ = [
    "SessionStore",
    "InMemorySessionStore",
    "SqliteSessionStore",
    "create_session_store",
    "truncate_history",
]
