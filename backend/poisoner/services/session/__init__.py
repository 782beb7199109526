"""Client-side session core: projection, rejoin, phases and roster.

Everything here talks to the shared records through ``RecordStore`` and to
the change feed through ``ChangeFeed``, so the same code runs against the
database in-process or against a remote server.
"""

from .client import GameClient, Screen
from .engine import EngineState, Notice, NoticeKind, Projection, ReconciliationEngine
from .errors import (
    AttachCancelled,
    CapacityExceeded,
    Conflict,
    NotFound,
    PreconditionFailed,
    SelfNotFound,
    SessionEnded,
    SessionFull,
    SessionGone,
    SyncError,
    Transient,
)
from .feed import ChangeFeed, ChangeHub, InProcessChangeFeed, SocketIOChangeFeed, Topic
from .local_store import JsonSessionStore, MemorySessionStore, SessionEntry, SessionStore
from .phases import PhaseController
from .rejoin import RejoinResult, rejoin
from .store import HttpRecordStore, RecordStore, SqlRecordStore

__all__ = [
    "GameClient", "Screen",
    "EngineState", "Notice", "NoticeKind", "Projection", "ReconciliationEngine",
    "AttachCancelled", "CapacityExceeded", "Conflict", "NotFound", "PreconditionFailed",
    "SelfNotFound", "SessionEnded", "SessionFull", "SessionGone", "SyncError", "Transient",
    "ChangeFeed", "ChangeHub", "InProcessChangeFeed", "SocketIOChangeFeed", "Topic",
    "JsonSessionStore", "MemorySessionStore", "SessionEntry", "SessionStore",
    "PhaseController", "RejoinResult", "rejoin",
    "HttpRecordStore", "RecordStore", "SqlRecordStore",
]
