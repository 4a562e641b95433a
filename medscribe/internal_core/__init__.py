from .config import ScribeConfig, load_config
from .session_store import InMemorySessionStore, JsonFileSessionStore, SessionStore

__all__ = [
    "ScribeConfig",
    "load_config",
    "SessionStore",
    "InMemorySessionStore",
    "JsonFileSessionStore",
]
