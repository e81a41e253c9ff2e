from .kv import KeyValueStore
from .sessions import SessionRepository, dump_sessions, parse_sessions

__all__ = ["KeyValueStore", "SessionRepository", "dump_sessions", "parse_sessions"]
