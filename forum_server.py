#!/usr/bin/env python3
"""
Forum Server - Single File Implementation

A single-file, in-memory, framework-free forum backend: users, categories, posts, comments, votes and bookmarks.
Every route answers with either a small HTML page or a JSON envelope, depending on the Accept header.

## Key Design Decisions
- **Cookie sessions**: the `sessionId` cookie binds a client to a server-side key/value session
  - Sessions are owned by an explicitly constructed `SessionStore`, handed to the `Router` at startup
  - A background sweeper removes sessions idle for longer than SESSION_TTL, it is started and stopped by `run_server`
- **One error type**: `ForumError` carries an `ErrorKind`, the `Router` is the only place turning it into a status code
- **Votes and bookmarks**: per (user, entity) transitions run under a lock keyed by that pair, so duplicate
  submissions cannot both observe "no vote yet" and both insert
- **Vote counters**: always counted from the vote table when a response is built, never cached on the entity
- **In-memory storage**: data persists only during server runtime
- **Single file**: entire server implementation and its tests in one module

## Deploy
- You should set LOG_LEVEL / LOG_FILE / LOG_MAX_SIZE / LOG_BACKUP_COUNT to enable rotating logs
- You should set CLIENT_IP_HEADER when running behind a reverse proxy (e.g., "X-Forwarded-For" or "X-Real-IP")
- SESSION_TTL / SESSION_SWEEP_INTERVAL are in seconds, MAX_SESSIONS caps the session table
- SERVER_THREADS sets the waitress worker count
- `POPULATE_DEMO_DATA=True` seeds a few users, categories, posts and comments on startup

## Tests
- `python -m unittest forum_server` (or `pytest`, configured in pyproject.toml)
"""

import hashlib
import html
import json
import logging
import logging.handlers
import secrets
import sys
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from http import HTTPStatus
from http.cookies import CookieError, SimpleCookie
from os import getenv
from time import sleep, time_ns
from traceback import format_tb
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, NamedTuple, Optional, Tuple
from unittest import TestCase
from unittest.mock import patch
from urllib.parse import parse_qs

from waitress import serve

#### CONFIGURATION #####################################################################################################


# logging
LOG_LEVEL = getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = getenv("LOG_FILE")  # Optional file logging
LOG_MAX_SIZE = int(getenv("LOG_MAX_SIZE", 10 * 1024 * 1024))  # 10MB default
LOG_BACKUP_COUNT = int(getenv("LOG_BACKUP_COUNT", 5))
# client ip detection
CLIENT_IP_HEADER = getenv("CLIENT_IP_HEADER")  # Optional header name for client IP detection
# sessions
SESSION_COOKIE_NAME = getenv("SESSION_COOKIE_NAME", "sessionId")
SESSION_TTL = int(getenv("SESSION_TTL") or 30 * 60)
SESSION_SWEEP_INTERVAL = float(getenv("SESSION_SWEEP_INTERVAL") or 60)
MAX_SESSIONS = int(getenv("MAX_SESSIONS") or 3000)
SESSION_USER_KEY = "user_id"
# server
SERVER_THREADS = int(getenv("SERVER_THREADS") or 1)
# max lengths for ids and for fields in models
MAX_ID_LEN = int(getenv("MAX_ID_LEN", 64))
MAX_LEN_USER_USERNAME = int(getenv("MAX_LEN_USER_USERNAME", 60))
MAX_LEN_USER_EMAIL = int(getenv("MAX_LEN_USER_EMAIL", 100))
MAX_LEN_USER_PASSWORD = int(getenv("MAX_LEN_USER_PASSWORD", 60))
MAX_LEN_CATEGORY_TITLE = int(getenv("MAX_LEN_CATEGORY_TITLE", 100))
MAX_LEN_CATEGORY_DESCRIPTION = int(getenv("MAX_LEN_CATEGORY_DESCRIPTION", 500))
MAX_LEN_POST_TITLE = int(getenv("MAX_LEN_POST_TITLE", 100))
MAX_LEN_POST_CONTENT = int(getenv("MAX_LEN_POST_CONTENT", 10000))
MAX_LEN_COMMENT_CONTENT = int(getenv("MAX_LEN_COMMENT_CONTENT", 3000))
POST_TYPES = ("Text", "URL")
# populate demo data
POPULATE_DEMO_DATA = getenv("POPULATE_DEMO_DATA", "FALSE").lower() == "true"


#### LOGGING ###########################################################################################################


class JSONFormatter(logging.Formatter):
    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created).strftime("%Y-%m-%dT%H:%M:%S.%f"),
            "logger": record.name,
            "level": record.levelname,
            "category": (lambda v: f"{record.name}.{v}" if v is not None else record.name)(
                getattr(record, "category", None)
            ),
            "message": record.getMessage(),
            "data": getattr(record, "data", {}),
        }
        return json.dumps(log_entry, default=str)


def setup_logging():
    """Set up logging configuration with console and optional file output"""
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    logger.handlers.clear()
    formatter = JSONFormatter()
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    if LOG_FILE:
        file_handler = logging.handlers.RotatingFileHandler(
            LOG_FILE, maxBytes=LOG_MAX_SIZE, backupCount=LOG_BACKUP_COUNT
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    return logger


# Set up logging
main_logger = setup_logging()
# Create category-specific loggers
auth_logger = logging.getLogger("auth")
http_logger = logging.getLogger("http")
errors_logger = logging.getLogger("errors")
storage_logger = logging.getLogger("storage")
session_management_logger = logging.getLogger("storage.session_management")
security_logger = logging.getLogger("security")
config_logger = logging.getLogger("config")
lifecycle_logger = logging.getLogger("lifecycle")


def log_structured(logger, level, message, category=None, **extra_data_fields):
    """Helper function to log structured data as JSON"""
    logger.log(level, message, extra={"category": category or "general", "data": extra_data_fields})


#### HELPERS ###########################################################################################################


def format_datetime(dt: datetime) -> str:
    """Format datetime to ISO 8601"""
    return dt.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def get_current_time() -> str:
    """Get current time in ISO format"""
    return format_datetime(datetime.now(timezone.utc))


def hash_password(password: str) -> str:
    """Simple password hashing"""
    return hashlib.sha256(password.encode()).hexdigest()


def normalize_id(value):
    if type(value) is int:
        value = str(value)
    if type(value) is str:
        if len(value) > MAX_ID_LEN:
            raise ValueError("id is too long")
        return value
    raise ValueError("id must be an int or an str")


#### ERRORS ############################################################################################################


class ErrorKind(Enum):
    UNAUTHENTICATED = HTTPStatus.UNAUTHORIZED
    FORBIDDEN = HTTPStatus.FORBIDDEN
    BAD_REQUEST = HTTPStatus.BAD_REQUEST
    NOT_FOUND = HTTPStatus.NOT_FOUND
    METHOD_NOT_ALLOWED = HTTPStatus.METHOD_NOT_ALLOWED

    @property
    def status_code(self) -> int:
        return int(self.value)


class ForumError(Exception):
    """
    Raised where a problem is detected, travels unmodified through the controllers
    The Router matches on `kind` to pick the status code, `message` is shown to the client as is
    """

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    @property
    def status_code(self) -> int:
        return self.kind.status_code

    @classmethod
    def unauthenticated(cls, message: str) -> "ForumError":
        return cls(ErrorKind.UNAUTHENTICATED, message)

    @classmethod
    def forbidden(cls, message: str) -> "ForumError":
        return cls(ErrorKind.FORBIDDEN, message)

    @classmethod
    def bad_request(cls, message: str) -> "ForumError":
        return cls(ErrorKind.BAD_REQUEST, message)

    @classmethod
    def not_found(cls, message: str) -> "ForumError":
        return cls(ErrorKind.NOT_FOUND, message)

    @classmethod
    def method_not_allowed(cls, message: str) -> "ForumError":
        return cls(ErrorKind.METHOD_NOT_ALLOWED, message)


#### DEMO_DATA #########################################################################################################


def populate_demo_data(storage: "ForumStorage"):
    """Populate ForumStorage with demo data for testing/demo purposes"""
    current_time = get_current_time()
    user_ids = []
    for username in ("johndoe", "janesmith", "mikewilson"):
        user = storage.users.add(
            {
                "username": username,
                "email": f"{username}@example.com",
                "password": hash_password("password123"),
                "avatar": None,
                "created_at": current_time,
                "edited_at": None,
                "deleted_at": None,
            }
        )
        user_ids.append(user["id"])
    categories_data = [
        ("Python", "Everything about the language, its tooling and its ecosystem", user_ids[0]),
        ("Off-topic", "Anything that doesn't fit elsewhere", user_ids[1]),
    ]
    category_ids = []
    for title, description, user_id in categories_data:
        category = storage.categories.add(
            {
                "user_id": user_id,
                "title": title,
                "description": description,
                "created_at": current_time,
                "edited_at": None,
                "deleted_at": None,
            }
        )
        category_ids.append(category["id"])
    posts_data = [
        (user_ids[0], category_ids[0], "Context managers everywhere", "Text", "Do you use contextlib in prod code?"),
        (user_ids[1], category_ids[0], "PEP 3333 explained", "URL", "https://peps.python.org/pep-3333/"),
        (user_ids[2], category_ids[1], "Favourite keyboard?", "Text", "Mine has way too many keys."),
    ]
    post_ids = []
    for user_id, category_id, title, post_type, content in posts_data:
        post = storage.posts.add(
            {
                "user_id": user_id,
                "category_id": category_id,
                "title": title,
                "type": post_type,
                "content": content,
                "created_at": current_time,
                "edited_at": None,
                "deleted_at": None,
            }
        )
        post_ids.append(post["id"])
    first_comment = storage.comments.add(
        {
            "user_id": user_ids[1],
            "post_id": post_ids[0],
            "reply_id": None,
            "content": "All the time, mostly for locks and temporary files.",
            "created_at": current_time,
            "edited_at": None,
            "deleted_at": None,
        }
    )
    storage.comments.add(
        {
            "user_id": user_ids[0],
            "post_id": post_ids[0],
            "reply_id": first_comment["id"],
            "content": "Same here!",
            "created_at": current_time,
            "edited_at": None,
            "deleted_at": None,
        }
    )
    # Jane and Mike like John's post, Mike doesn't like Jane's comment
    storage.votes[EntityKind.POST].put(user_ids[1], post_ids[0], VoteDirection.UP)
    storage.votes[EntityKind.POST].put(user_ids[2], post_ids[0], VoteDirection.UP)
    storage.votes[EntityKind.COMMENT].put(user_ids[2], first_comment["id"], VoteDirection.DOWN)
    storage.bookmarks[EntityKind.POST].add(user_ids[0], post_ids[1])


#### STORAGE ###########################################################################################################


class EntityKind(Enum):
    POST = "post"
    COMMENT = "comment"

    @property
    def label(self) -> str:
        return self.value.capitalize()


class VoteDirection(Enum):
    UP = "Up"
    DOWN = "Down"


class InMemoryModel:
    """
    Table with auto-incremented ids, handed out as strings and never reused
    Rows are plain dicts, entities are soft-deleted through their `deleted_at` field so ids stay valid for links
    Id allocation and every walk over the rows happen under the table lock, readers get list snapshots
    """

    def __init__(self, name):
        self.name = name
        self.objects: Dict[str, dict] = {}
        self.current_id_counter = 1
        self._lock = threading.Lock()

    def add(self, obj):
        with self._lock:
            if len(str(self.current_id_counter)) > MAX_ID_LEN:
                raise ValueError("cannot allocate id: we reached MAX_ID_LEN limit")
            obj["id"] = str(self.current_id_counter)
            self.objects[obj["id"]] = obj
            self.current_id_counter += 1
            total_objects = len(self.objects)
        log_structured(
            storage_logger,
            logging.DEBUG,
            "object added",
            operation="add",
            model=self.name,
            object_id=obj["id"],
            total_objects=total_objects,
        )
        return obj

    def get(self, _id):
        _id = normalize_id(_id)
        obj = self.objects.get(_id)
        log_structured(
            storage_logger,
            logging.DEBUG,
            "get - object retrieved" if obj is not None else "get - object not found",
            operation="get",
            model=self.name,
            object_id=_id,
            found=obj is not None,
        )
        return obj

    def find(self, **fields):
        return next((obj for obj in self.filter(**fields)), None)

    def filter(self, **fields):
        return [obj for obj in self.values() if all(obj.get(k) == v for k, v in fields.items())]

    def values(self):
        with self._lock:
            return list(self.objects.values())

    def __len__(self):
        return len(self.objects)


class InMemoryLinks:
    """Existence-only (source, target) pairs, kept in insertion order"""

    def __init__(self):
        self.links: List[Tuple[str, str]] = []
        self._lock = threading.Lock()

    def add(self, source, target):
        source, target = normalize_id(source), normalize_id(target)
        with self._lock:
            if (source, target) not in self.links:
                self.links = [*self.links, (source, target)]

    def remove(self, source, target):
        source, target = normalize_id(source), normalize_id(target)
        with self._lock:
            self.links = [link for link in self.links if link != (source, target)]

    def is_linked(self, source, target):
        source, target = normalize_id(source), normalize_id(target)
        return (source, target) in self.links

    def targets_for_source(self, wanted_source):
        return [target for source, target in self.links if source == normalize_id(wanted_source)]


class InMemoryVotes:
    """
    (user_id, entity_id) -> VoteDirection, keying by the pair is what keeps a single vote row per user and entity
    Writes and the snapshots taken by the aggregate reads share the table lock
    """

    def __init__(self):
        self.rows: Dict[Tuple[str, str], VoteDirection] = {}
        self._lock = threading.Lock()

    def get(self, user_id, entity_id) -> Optional[VoteDirection]:
        return self.rows.get((normalize_id(user_id), normalize_id(entity_id)))

    def put(self, user_id, entity_id, direction: VoteDirection):
        key = (normalize_id(user_id), normalize_id(entity_id))
        with self._lock:
            self.rows[key] = direction

    def delete(self, user_id, entity_id):
        key = (normalize_id(user_id), normalize_id(entity_id))
        with self._lock:
            self.rows.pop(key, None)

    def snapshot(self) -> List[Tuple[Tuple[str, str], VoteDirection]]:
        with self._lock:
            return list(self.rows.items())

    def count(self, entity_id, direction: VoteDirection) -> int:
        entity_id = normalize_id(entity_id)
        return sum(1 for (_, target), value in self.snapshot() if target == entity_id and value is direction)

    def entities_for_user(self, user_id) -> List[str]:
        user_id = normalize_id(user_id)
        return [target for (source, target), _ in self.snapshot() if source == user_id]


class KeyedLocks:
    """
    One lock per key, created on first use and dropped once nobody holds or waits on it
    The registry lock only guards the dict, never the work done under a key
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[tuple, list] = {}  # key -> [lock, holders_and_waiters]

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if not entry[1]:
                    del self._locks[key]

    def __len__(self):
        return len(self._locks)


class ForumStorage:
    """In-memory storage for all data"""

    def __init__(self, populate_demo=POPULATE_DEMO_DATA):
        self.users = InMemoryModel("user")
        self.categories = InMemoryModel("category")
        self.posts = InMemoryModel("post")
        self.comments = InMemoryModel("comment")
        self.votes = {kind: InMemoryVotes() for kind in EntityKind}
        self.bookmarks = {kind: InMemoryLinks() for kind in EntityKind}  # user_id -> bookmarked entity ids
        self.locks = KeyedLocks()
        if populate_demo:
            populate_demo_data(self)


#### VOTES AND BOOKMARKS ###############################################################################################


class VoteAction(Enum):
    UPVOTE = "upvote"
    DOWNVOTE = "downvote"
    UNVOTE = "unvote"

    @property
    def label(self) -> str:
        return VOTE_ACTION_LABELS[self]


VOTE_ACTION_LABELS = {VoteAction.UPVOTE: "up vote", VoteAction.DOWNVOTE: "down vote", VoteAction.UNVOTE: "unvote"}
VOTE_ACTION_TARGETS = {VoteAction.UPVOTE: VoteDirection.UP, VoteAction.DOWNVOTE: VoteDirection.DOWN}


def next_vote_direction(current: Optional[VoteDirection], action: VoteAction, label: str) -> Optional[VoteDirection]:
    """
    Vote state machine, None standing for "no vote"
    None -> Up, None -> Down, Up <-> Down, Up -> None, Down -> None
    Voting the same direction twice and unvoting without a vote are rejected
    """
    if action is VoteAction.UNVOTE:
        if current is None:
            raise ForumError.bad_request(f"Cannot unvote {label}: {label} must first be up or down voted.")
        return None
    target = VOTE_ACTION_TARGETS[action]
    if current is target:
        raise ForumError.bad_request(f"Cannot {action.label} {label}: {label} has already been {action.label}d.")
    return target


def apply_vote(storage: ForumStorage, kind: EntityKind, entity_id: str, user_id: str, action: VoteAction):
    """Lookup and write of a vote transition, serialized per (kind, user, entity)"""
    votes = storage.votes[kind]
    with storage.locks.hold(("vote", kind, user_id, entity_id)):
        current = votes.get(user_id, entity_id)
        target = next_vote_direction(current, action, kind.label)
        if target is None:
            votes.delete(user_id, entity_id)
        else:
            votes.put(user_id, entity_id, target)
    log_structured(
        storage_logger,
        logging.DEBUG,
        "vote transition applied",
        kind=kind.value,
        user_id=user_id,
        entity_id=entity_id,
        from_direction=current.value if current else None,
        to_direction=target.value if target else None,
    )
    return target


def apply_bookmark(storage: ForumStorage, kind: EntityKind, entity_id: str, user_id: str, bookmarked: bool):
    """Binary toggle, setting the current state again is rejected"""
    links = storage.bookmarks[kind]
    label = kind.label
    with storage.locks.hold(("bookmark", kind, user_id, entity_id)):
        already_bookmarked = links.is_linked(user_id, entity_id)
        if bookmarked and already_bookmarked:
            raise ForumError.bad_request(f"Cannot bookmark {label}: {label} has already been bookmarked.")
        if not bookmarked and not already_bookmarked:
            raise ForumError.bad_request(f"Cannot unbookmark {label}: {label} has not been bookmarked.")
        if bookmarked:
            links.add(user_id, entity_id)
        else:
            links.remove(user_id, entity_id)
    log_structured(
        storage_logger,
        logging.DEBUG,
        "bookmark toggled",
        kind=kind.value,
        user_id=user_id,
        entity_id=entity_id,
        bookmarked=bookmarked,
    )


def vote_counts(storage: ForumStorage, kind: EntityKind, entity_id: str) -> Tuple[int, int]:
    votes = storage.votes[kind]
    return votes.count(entity_id, VoteDirection.UP), votes.count(entity_id, VoteDirection.DOWN)


#### SESSIONS ##########################################################################################################


class Session:
    """Server-side key/value state bound to a client through the session cookie"""

    def __init__(self, session_id: str, now: int):
        self.id = session_id
        self.data: Dict[str, object] = {}
        self.created_at = now
        self.last_touched_at = now

    def get(self, key, default=None):
        return self.data.get(key, default)

    def set(self, key, value):
        self.data[key] = value

    def exists(self, key) -> bool:
        return key in self.data

    def unset(self, key):
        self.data.pop(key, None)

    def clear(self):
        self.data.clear()

    def touch(self, now: int):
        self.last_touched_at = now


class SessionStore:
    """
    Owns every Session: creation, lookup, destruction and expiration
    Lifecycle: construct, start_sweeper() at startup; stop_sweeper() then clear() at shutdown
    Structural changes and the touch done by resolve take the store lock, plain lookups never do
    """

    def __init__(
        self,
        ttl=SESSION_TTL,
        sweep_interval=SESSION_SWEEP_INTERVAL,
        max_sessions=MAX_SESSIONS,
        clock: Callable[[], int] = time_ns,
    ):
        if ttl <= 0 or sweep_interval <= 0:
            raise ValueError("ttl and sweep_interval must be positive")
        if max_sessions < 1:
            raise ValueError(f"max_sessions is set to {max_sessions}, you need at least one")
        self.ttl_ns = int(ttl * 1_000_000_000)
        self.sweep_interval = sweep_interval
        self.max_sessions = max_sessions
        self.clock = clock
        self.sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[threading.Thread] = None
        self._sweeper_stop = threading.Event()

    def create_session(self) -> Session:
        now = self.clock()
        evicted_session_id = None
        with self._lock:
            session_id = secrets.token_hex(16)
            while session_id in self.sessions:
                session_id = secrets.token_hex(16)
            if len(self.sessions) >= self.max_sessions:
                evicted_session_id = min(self.sessions.values(), key=lambda s: s.last_touched_at).id
                del self.sessions[evicted_session_id]
            session = self.sessions[session_id] = Session(session_id, now)
        if evicted_session_id is not None:
            log_structured(
                security_logger,
                logging.INFO,
                "Rate limit reached - Session storage full, evicting session",
                rate_limit_type="session_storage",
                max_sessions=self.max_sessions,
                evicted_session_id=evicted_session_id,
                new_session_id=session_id,
            )
        log_structured(
            session_management_logger,
            logging.INFO,
            "New session created",
            session_event="created",
            session_id=session_id,
            total_sessions=len(self.sessions),
        )
        return session

    def get(self, session_id) -> Optional[Session]:
        return self.sessions.get(session_id) if session_id else None

    def resolve(self, session_id) -> Session:
        """Session for an inbound cookie value, a fresh one when unknown or already expired"""
        session = self.get(session_id)
        now = self.clock()
        if session is not None:
            with self._lock:
                # the sweep re-checks expiry under the same lock, a touched session is never popped
                alive = self.sessions.get(session.id) is session and not self.is_expired(session, now)
                if alive:
                    session.touch(now)
        if session is None or not alive:
            return self.create_session()
        log_structured(
            session_management_logger,
            logging.DEBUG,
            "Session accessed",
            session_event="accessed",
            session_id=session.id,
        )
        return session

    def destroy(self, session_id):
        with self._lock:
            removed = self.sessions.pop(session_id, None)
        log_structured(
            session_management_logger,
            logging.INFO if removed else logging.DEBUG,
            "Session destroyed" if removed else "Session destroy skipped - unknown session",
            session_event="destroyed",
            session_id=session_id,
        )

    def is_expired(self, session: Session, now: Optional[int] = None) -> bool:
        now = self.clock() if now is None else now
        return now - session.last_touched_at > self.ttl_ns

    def sweep(self) -> int:
        """Snapshot the table, then pop expired sessions one by one, re-checking each under the lock"""
        now = self.clock()
        expired_ids = [session_id for session_id, s in list(self.sessions.items()) if self.is_expired(s, now)]
        removed = 0
        for session_id in expired_ids:
            with self._lock:
                session = self.sessions.get(session_id)
                if session is None or not self.is_expired(session, now):
                    continue
                del self.sessions[session_id]
            removed += 1
        if removed:
            log_structured(
                session_management_logger,
                logging.INFO,
                "Expired sessions swept",
                session_event="swept",
                removed=removed,
                total_sessions=len(self.sessions),
            )
        return removed

    def start_sweeper(self):
        if self.sweeper_running:
            return
        self._sweeper_stop.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="session-sweeper", daemon=True)
        self._sweeper.start()
        log_structured(lifecycle_logger, logging.INFO, "Session sweeper started", interval=self.sweep_interval)

    def stop_sweeper(self, timeout=None):
        self._sweeper_stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout)
            self._sweeper = None
            log_structured(lifecycle_logger, logging.INFO, "Session sweeper stopped")

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def _sweep_loop(self):
        while not self._sweeper_stop.wait(self.sweep_interval):
            try:
                self.sweep()
            except Exception as exc:
                log_structured(
                    session_management_logger,
                    logging.ERROR,
                    "Session sweep failed",
                    exception_type=str(exc),
                    exception_traceback=format_tb(exc.__traceback__),
                )

    def clear(self):
        with self._lock:
            self.sessions.clear()

    def __len__(self):
        return len(self.sessions)


#### REQUEST / RESPONSE ################################################################################################


class Request(NamedTuple):
    """Immutable view of one inbound call: /<resource>/<segments...>"""

    method: str
    resource: str
    segments: Tuple[str, ...]
    body: Mapping[str, object]
    cookies: Mapping[str, str]

    @classmethod
    def from_path(cls, method: str, path: str, body=None, cookies=None) -> "Request":
        parts = path.split("?", 1)[0].strip("/").split("/")
        return cls(
            method=method.upper(),
            resource=parts[0],
            segments=tuple(parts[1:]),
            body=MappingProxyType(dict(body or {})),
            cookies=MappingProxyType(dict(cookies or {})),
        )

    @property
    def resource_id(self) -> Optional[str]:
        return self.segments[0] if self.segments else None

    @property
    def sub_action(self) -> Optional[str]:
        return self.segments[1] if len(self.segments) > 1 else None


class Response:
    """
    Sink filled by the controllers, status code is 200 until explicitly set
    Rendered either as the JSON envelope {statusCode, message, payload} or as an HTML page
    """

    def __init__(self, json_mode: bool = True):
        self.json_mode = json_mode
        self.status_code = int(HTTPStatus.OK)
        self.headers: Dict[str, str] = {}
        self.cookies: List[str] = []
        self.message = ""
        self.payload = {}
        self.title: Optional[str] = None
        self.redirect_to: Optional[str] = None

    def set_response(self, message=None, payload=None, status_code=None, title=None, redirect=None) -> "Response":
        if message is not None:
            self.message = message
        if payload is not None:
            self.payload = payload
        if status_code is not None:
            self.status_code = int(status_code)
        if title is not None:
            self.title = title
        if redirect is not None:
            self.redirect_to = redirect
        return self

    def fail(self, status_code: int, message: str) -> "Response":
        """Terminal error state: no redirect, empty payload"""
        self.status_code = int(status_code)
        self.message = message
        self.payload = {}
        self.title = "Error"
        self.redirect_to = None
        return self

    def add_cookie(self, name: str, value: str, max_age: Optional[int] = None):
        cookie = SimpleCookie()
        cookie[name] = value
        morsel = cookie[name]
        morsel["path"] = "/"
        morsel["httponly"] = True
        morsel["samesite"] = "Lax"
        if max_age is not None:
            morsel["max-age"] = max_age
        self.cookies = [c for c in self.cookies if not c.startswith(f"{name}=")] + [morsel.OutputString()]

    def to_json(self) -> str:
        return json.dumps({"statusCode": self.status_code, "message": self.message, "payload": self.payload})

    def to_html(self) -> str:
        title = html.escape(self.title or ("Error" if self.status_code >= 400 else "Forum"))
        payload = html.escape(json.dumps(self.payload, indent=2))
        return (
            "<!DOCTYPE html>\n"
            f'<html>\n<head><meta charset="utf-8"><title>{title}</title></head>\n<body>\n'
            f"<h1>{title}</h1>\n"
            f'<p class="message">{html.escape(self.message)}</p>\n'
            f'<pre class="payload">{payload}</pre>\n'
            "</body>\n</html>\n"
        )

    def render(self) -> Tuple[int, List[Tuple[str, str]], bytes]:
        """status code, WSGI header list and body bytes; HTML successes with a redirect become 303 See Other"""
        status_code = self.status_code
        headers = dict(self.headers)
        if self.json_mode:
            headers["Content-Type"] = "application/json"
            body = self.to_json()
        else:
            if self.redirect_to is not None and status_code == HTTPStatus.OK:
                status_code = int(HTTPStatus.SEE_OTHER)
                headers["Location"] = "/" + self.redirect_to.lstrip("/")
            headers["Content-Type"] = "text/html; charset=utf-8"
            body = self.to_html()
        header_list = [*headers.items(), *(("Set-Cookie", cookie) for cookie in self.cookies)]
        return status_code, header_list, body.encode("utf-8")


#### PARAMETERS ########################################################################################################


def read_text_field(body: Mapping, name: str, context: str, max_len: int, required: bool = True) -> Optional[str]:
    value = body.get(name)
    if value is None or value == "":
        if required:
            raise ForumError.bad_request(f"{context}: Missing {name}.")
        return None
    if type(value) is not str or len(value) > max_len:
        raise ForumError.bad_request(f"{context}: {name} is expected as a string of length <= {max_len}.")
    return value


def read_id_field(body: Mapping, name: str, context: str, required: bool = True) -> Optional[str]:
    value = body.get(name)
    if value is None or value == "":
        if required:
            raise ForumError.bad_request(f"{context}: Missing {name}.")
        return None
    try:
        return normalize_id(value)
    except ValueError:
        raise ForumError.bad_request(f"{context}: {name} is not a valid id.")


def require_any(context: str, *values):
    if all(value is None for value in values):
        raise ForumError.bad_request(f"{context}: No update parameters were provided.")


class LoginParams(NamedTuple):
    email: str
    password: str

    @classmethod
    def from_body(cls, body: Mapping) -> "LoginParams":
        context = "Cannot log in"
        return cls(
            email=read_text_field(body, "email", context, MAX_LEN_USER_EMAIL),
            password=read_text_field(body, "password", context, MAX_LEN_USER_PASSWORD),
        )


class NewUserParams(NamedTuple):
    username: str
    email: str
    password: str

    @classmethod
    def from_body(cls, body: Mapping) -> "NewUserParams":
        context = "Cannot create User"
        return cls(
            username=read_text_field(body, "username", context, MAX_LEN_USER_USERNAME),
            email=read_text_field(body, "email", context, MAX_LEN_USER_EMAIL),
            password=read_text_field(body, "password", context, MAX_LEN_USER_PASSWORD),
        )


class UserUpdateParams(NamedTuple):
    username: Optional[str]
    email: Optional[str]
    password: Optional[str]

    @classmethod
    def from_body(cls, body: Mapping) -> "UserUpdateParams":
        context = "Cannot update User"
        params = cls(
            username=read_text_field(body, "username", context, MAX_LEN_USER_USERNAME, required=False),
            email=read_text_field(body, "email", context, MAX_LEN_USER_EMAIL, required=False),
            password=read_text_field(body, "password", context, MAX_LEN_USER_PASSWORD, required=False),
        )
        require_any(context, *params)
        return params


class NewCategoryParams(NamedTuple):
    title: str
    description: str

    @classmethod
    def from_body(cls, body: Mapping) -> "NewCategoryParams":
        context = "Cannot create Category"
        return cls(
            title=read_text_field(body, "title", context, MAX_LEN_CATEGORY_TITLE),
            description=read_text_field(body, "description", context, MAX_LEN_CATEGORY_DESCRIPTION),
        )


class CategoryUpdateParams(NamedTuple):
    title: Optional[str]
    description: Optional[str]

    @classmethod
    def from_body(cls, body: Mapping) -> "CategoryUpdateParams":
        context = "Cannot update Category"
        params = cls(
            title=read_text_field(body, "title", context, MAX_LEN_CATEGORY_TITLE, required=False),
            description=read_text_field(body, "description", context, MAX_LEN_CATEGORY_DESCRIPTION, required=False),
        )
        require_any(context, *params)
        return params


class NewPostParams(NamedTuple):
    category_id: str
    title: str
    post_type: str
    content: str

    @classmethod
    def from_body(cls, body: Mapping) -> "NewPostParams":
        context = "Cannot create Post"
        params = cls(
            category_id=read_id_field(body, "categoryId", context),
            title=read_text_field(body, "title", context, MAX_LEN_POST_TITLE),
            post_type=read_text_field(body, "type", context, max(len(t) for t in POST_TYPES)),
            content=read_text_field(body, "content", context, MAX_LEN_POST_CONTENT),
        )
        if params.post_type not in POST_TYPES:
            raise ForumError.bad_request(f"{context}: type must be one of {', '.join(POST_TYPES)}.")
        return params


class ContentUpdateParams(NamedTuple):
    content: str

    @classmethod
    def from_body(cls, body: Mapping, entity_label: str, max_len: int) -> "ContentUpdateParams":
        context = f"Cannot update {entity_label}"
        content = read_text_field(body, "content", context, max_len, required=False)
        require_any(context, content)
        return cls(content=content)


class NewCommentParams(NamedTuple):
    post_id: str
    content: str
    reply_id: Optional[str]

    @classmethod
    def from_body(cls, body: Mapping) -> "NewCommentParams":
        context = "Cannot create Comment"
        return cls(
            post_id=read_id_field(body, "postId", context),
            content=read_text_field(body, "content", context, MAX_LEN_COMMENT_CONTENT),
            reply_id=read_id_field(body, "replyId", context, required=False),
        )


#### DOMAIN ############################################################################################################


def get_user_by_email(email: str, storage: ForumStorage) -> Optional[Dict]:
    """Find user by email"""
    return storage.users.find(email=email)


def get_user_by_username(username: str, storage: ForumStorage) -> Optional[Dict]:
    """Find user by username"""
    return storage.users.find(username=username)


def check_user_uniqueness(context: str, storage: ForumStorage, username=None, email=None, exclude_id=None):
    for field, value, lookup in (("username", username, get_user_by_username), ("email", email, get_user_by_email)):
        if value is None:
            continue
        existing = lookup(value, storage)
        if existing is not None and existing["id"] != exclude_id:
            raise ForumError.bad_request(f"{context}: Duplicate {field}.")


def create_user(params: NewUserParams, storage: ForumStorage) -> Dict:
    check_user_uniqueness("Cannot create User", storage, params.username, params.email)
    return storage.users.add(
        {
            "username": params.username,
            "email": params.email,
            "password": hash_password(params.password),
            "avatar": None,
            "created_at": get_current_time(),
            "edited_at": None,
            "deleted_at": None,
        }
    )


def log_in(params: LoginParams, storage: ForumStorage) -> Dict:
    user = get_user_by_email(params.email, storage)
    if user is None or user["password"] != hash_password(params.password):
        raise ForumError.bad_request("Cannot log in: Invalid credentials.")
    if user["deleted_at"]:
        raise ForumError.bad_request("Cannot log in: User has been deleted.")
    return user


def create_category(params: NewCategoryParams, user_id: str, storage: ForumStorage) -> Dict:
    if storage.categories.find(title=params.title) is not None:
        raise ForumError.bad_request("Cannot create Category: Duplicate title.")
    return storage.categories.add(
        {
            "user_id": user_id,
            "title": params.title,
            "description": params.description,
            "created_at": get_current_time(),
            "edited_at": None,
            "deleted_at": None,
        }
    )


def create_post(params: NewPostParams, user_id: str, storage: ForumStorage) -> Dict:
    context = "Cannot create Post"
    category = storage.categories.get(params.category_id)
    if category is None:
        raise ForumError.bad_request(f"{context}: Category does not exist with ID {params.category_id}.")
    if category["deleted_at"]:
        raise ForumError.bad_request(f"{context}: You cannot post in a category that has been deleted.")
    return storage.posts.add(
        {
            "user_id": user_id,
            "category_id": category["id"],
            "title": params.title,
            "type": params.post_type,
            "content": params.content,
            "created_at": get_current_time(),
            "edited_at": None,
            "deleted_at": None,
        }
    )


def create_comment(params: NewCommentParams, user_id: str, storage: ForumStorage) -> Dict:
    context = "Cannot create Comment"
    post = storage.posts.get(params.post_id)
    if post is None:
        raise ForumError.bad_request(f"{context}: Post does not exist with ID {params.post_id}.")
    if post["deleted_at"]:
        raise ForumError.bad_request(f"{context}: You cannot comment on a post that has been deleted.")
    if params.reply_id is not None:
        parent = storage.comments.get(params.reply_id)
        if parent is None or parent["post_id"] != post["id"]:
            raise ForumError.bad_request(f"{context}: Comment does not exist with ID {params.reply_id}.")
    return storage.comments.add(
        {
            "user_id": user_id,
            "post_id": post["id"],
            "reply_id": params.reply_id,
            "content": params.content,
            "created_at": get_current_time(),
            "edited_at": None,
            "deleted_at": None,
        }
    )


def collect_replies(comment: Dict, storage: ForumStorage) -> List[Dict]:
    """Every comment below `comment` in the reply tree, depth first"""
    replies, seen, stack = [], {comment["id"]}, [comment["id"]]
    while stack:
        current_id = stack.pop()
        for reply in storage.comments.filter(reply_id=current_id):
            if reply["id"] not in seen:
                seen.add(reply["id"])
                replies.append(reply)
                stack.append(reply["id"])
    return replies


def mark_edited(entity: Dict):
    entity["edited_at"] = get_current_time()


def soft_delete(entity: Dict):
    entity["deleted_at"] = get_current_time()


def username_for(user_id: str, storage: ForumStorage) -> Optional[str]:
    user = storage.users.get(user_id)
    return user["username"] if user else None


def create_user_response(user: Dict) -> Dict:
    """Create user response format"""
    return {
        "id": user["id"],
        "username": user["username"],
        "email": user["email"],
        "avatar": user.get("avatar"),
        "createdAt": user["created_at"],
        "editedAt": user["edited_at"],
        "deletedAt": user["deleted_at"],
    }


def create_category_response(category: Dict, storage: ForumStorage) -> Dict:
    """Create category response format"""
    return {
        "id": category["id"],
        "title": category["title"],
        "description": category["description"],
        "userId": category["user_id"],
        "username": username_for(category["user_id"], storage),
        "createdAt": category["created_at"],
        "editedAt": category["edited_at"],
        "deletedAt": category["deleted_at"],
    }


def create_votable_response(
    kind: EntityKind, entity: Dict, storage: ForumStorage, current_user_id: Optional[str] = None
) -> Dict:
    """Vote counters and the viewer's own state, counted from the vote and bookmark tables on every call"""
    upvotes, downvotes = vote_counts(storage, kind, entity["id"])
    state, is_bookmarked = None, False
    if current_user_id:
        direction = storage.votes[kind].get(current_user_id, entity["id"])
        state = direction.value if direction else None
        is_bookmarked = storage.bookmarks[kind].is_linked(current_user_id, entity["id"])
    return {
        "upvotes": upvotes,
        "downvotes": downvotes,
        "votes": upvotes - downvotes,
        "state": state,
        "isBookmarked": is_bookmarked,
    }


def create_post_response(post: Dict, storage: ForumStorage, current_user_id: Optional[str] = None) -> Dict:
    """Create post response format"""
    return {
        "id": post["id"],
        "title": post["title"],
        "type": post["type"],
        "content": post["content"],
        "categoryId": post["category_id"],
        "userId": post["user_id"],
        "username": username_for(post["user_id"], storage),
        "createdAt": post["created_at"],
        "editedAt": post["edited_at"],
        "deletedAt": post["deleted_at"],
        **create_votable_response(EntityKind.POST, post, storage, current_user_id),
    }


def create_comment_response(comment: Dict, storage: ForumStorage, current_user_id: Optional[str] = None) -> Dict:
    """Create comment response format"""
    return {
        "id": comment["id"],
        "postId": comment["post_id"],
        "replyId": comment["reply_id"],
        "content": comment["content"],
        "userId": comment["user_id"],
        "username": username_for(comment["user_id"], storage),
        "createdAt": comment["created_at"],
        "editedAt": comment["edited_at"],
        "deletedAt": comment["deleted_at"],
        **create_votable_response(EntityKind.COMMENT, comment, storage, current_user_id),
    }


#### CONTROLLERS #######################################################################################################


CRUD_ACTIONS = {
    ("POST", False, None): "create",
    ("GET", False, None): "list",
    ("GET", True, None): "show",
    ("PUT", True, None): "update",
    ("DELETE", True, None): "destroy",
}
EDIT_FORM_ACTIONS = {("GET", True, "edit"): "edit_form"}
TRANSITION_ACTIONS = {
    ("GET", True, "upvote"): "upvote",
    ("GET", True, "downvote"): "downvote",
    ("GET", True, "unvote"): "unvote",
    ("GET", True, "bookmark"): "bookmark",
    ("GET", True, "unbookmark"): "unbookmark",
}


class Controller:
    """
    One instance per request, built by the Router with (request, response, session, storage)
    `do_action` resolves the action from ACTIONS, keyed by (method, id present, sub-action), then runs it
    Authorization helpers fail fast in a fixed order: logged in (401), owner (403), entity state (400)
    ForumError is never caught here, the Router translates it
    """

    ENTITY = ""
    TABLE = ""
    OWNER_FIELD = "user_id"
    ACTIONS: Dict[tuple, str] = {}

    def __init__(self, request: Request, response: Response, session: Session, storage: ForumStorage):
        self.request = request
        self.response = response
        self.session = session
        self.storage = storage

    @property
    def table(self) -> InMemoryModel:
        return getattr(self.storage, self.TABLE)

    @property
    def current_user_id(self) -> Optional[str]:
        return self.session.get(SESSION_USER_KEY)

    def action_key(self):
        return self.request.method, self.request.resource_id is not None, self.request.sub_action

    def resolve_action(self):
        action_name = self.ACTIONS.get(self.action_key()) if len(self.request.segments) <= 2 else None
        if action_name is None:
            raise ForumError.method_not_allowed("Invalid request method!")
        return getattr(self, action_name)

    def do_action(self) -> Response:
        return self.resolve_action()()

    # authorization helpers

    def context(self, action: str) -> str:
        return f"Cannot {action} {self.ENTITY}"

    def require_login(self, context: str) -> str:
        user_id = self.current_user_id
        if user_id is None:
            log_structured(
                security_logger,
                logging.WARNING,
                "Authentication required but not provided",
                session_id=self.session.id,
                method=self.request.method,
                resource=self.request.resource,
            )
            raise ForumError.unauthenticated(f"{context}: You must be logged in.")
        return user_id

    def find_entity(self, context: str) -> Dict:
        entity_id = self.request.resource_id
        try:
            entity = self.table.get(entity_id)
        except ValueError:
            entity = None
        if entity is None:
            raise ForumError.bad_request(f"{context}: {self.ENTITY} does not exist with ID {entity_id}.")
        return entity

    def ownership_message(self, action: str) -> str:
        return f"You cannot {action} a {self.ENTITY.lower()} created by someone other than yourself."

    def require_owner(self, entity: Dict, context: str, action: str, user_id: str):
        if entity[self.OWNER_FIELD] != user_id:
            log_structured(
                security_logger,
                logging.WARNING,
                "Ownership check failed",
                session_id=self.session.id,
                user_id=user_id,
                entity=self.ENTITY,
                entity_id=entity["id"],
            )
            raise ForumError.forbidden(f"{context}: {self.ownership_message(action)}")

    def require_not_deleted(self, entity: Dict, context: str, action: str):
        if entity.get("deleted_at"):
            raise ForumError.bad_request(
                f"{context}: You cannot {action} a {self.ENTITY.lower()} that has been deleted."
            )

    def find_owned_entity(self, action: str) -> Tuple[str, str, Dict]:
        """login, lookup, ownership then state, in that order"""
        context = self.context(action)
        user_id = self.require_login(context)
        entity = self.find_entity(context)
        self.require_owner(entity, context, action, user_id)
        self.require_not_deleted(entity, context, action)
        return context, user_id, entity

    def log_operation(self, message: str, operation: str, **fields):
        log_structured(
            http_logger, logging.INFO, message, "CRUD", operation=operation, session_id=self.session.id, **fields
        )

    # shared actions

    def present(self, entity: Dict):
        raise NotImplementedError

    def list(self) -> Response:
        return self.response.set_response(
            message=f"{self.TABLE.capitalize()} retrieved successfully!",
            payload=[self.present(entity) for entity in self.table.values()],
            title=self.TABLE.capitalize(),
        )

    def edit_form(self) -> Response:
        _, _, entity = self.find_owned_entity("update")
        return self.response.set_response(
            message=f"{self.ENTITY} edit form retrieved successfully!",
            payload=self.present(entity),
            title=f"Edit {self.ENTITY}",
        )

    def destroy_redirect(self, entity: Dict) -> str:
        return f"{self.ENTITY.lower()}/{entity['id']}"

    def destroy(self) -> Response:
        _, user_id, entity = self.find_owned_entity("delete")
        soft_delete(entity)
        self.log_operation(
            f"{self.ENTITY} deleted", f"delete_{self.ENTITY.lower()}", entity_id=entity["id"], user_id=user_id
        )
        return self.response.set_response(
            message=f"{self.ENTITY} deleted successfully!",
            payload=self.present(entity),
            redirect=self.destroy_redirect(entity),
        )


class AuthController(Controller):
    ENTITY = "Auth"
    ACTIONS = {
        ("GET", "login"): "login_form",
        ("GET", "register"): "register_form",
        ("POST", "login"): "login",
        ("GET", "logout"): "logout",
    }

    def action_key(self):
        return self.request.method, self.request.resource_id

    def resolve_action(self):
        if len(self.request.segments) != 1:
            raise ForumError.method_not_allowed("Invalid request method!")
        return super().resolve_action()

    def login_form(self) -> Response:
        return self.response.set_response(
            message="", payload={"email": self.request.cookies.get("email")}, title="Login"
        )

    def register_form(self) -> Response:
        return self.response.set_response(message="", payload={}, title="New User")

    def login(self) -> Response:
        params = LoginParams.from_body(self.request.body)
        try:
            user = log_in(params, self.storage)
        except ForumError:
            log_structured(auth_logger, logging.WARNING, "Login failed", session_id=self.session.id, email=params.email)
            raise
        self.session.set(SESSION_USER_KEY, user["id"])
        if self.request.body.get("remember") == "on":
            self.response.add_cookie("email", params.email)
        log_structured(
            auth_logger,
            logging.INFO,
            "User logged in successfully",
            session_id=self.session.id,
            user_id=user["id"],
            username=user["username"],
        )
        return self.response.set_response(
            message="Logged in successfully!", payload=create_user_response(user), redirect=f"user/{user['id']}"
        )

    def logout(self) -> Response:
        user_id = self.current_user_id
        self.session.clear()
        log_structured(auth_logger, logging.INFO, "User logged out", session_id=self.session.id, user_id=user_id)
        return self.response.set_response(message="Logged out successfully!", payload={}, redirect="/")


class UserController(Controller):
    ENTITY = "User"
    TABLE = "users"
    OWNER_FIELD = "id"
    ACTIONS = {
        **CRUD_ACTIONS,
        ("GET", True, "postvotes"): "post_votes",
        ("GET", True, "commentvotes"): "comment_votes",
        ("GET", True, "postbookmarks"): "post_bookmarks",
        ("GET", True, "commentbookmarks"): "comment_bookmarks",
        ("GET", True, "posts"): "posts",
        ("GET", True, "comments"): "comments",
    }

    def present(self, entity: Dict):
        return create_user_response(entity)

    def ownership_message(self, action: str) -> str:
        return f"You cannot {action} a user other than yourself."

    def destroy_redirect(self, entity: Dict) -> str:
        return "/"

    def create(self) -> Response:
        params = NewUserParams.from_body(self.request.body)
        user = create_user(params, self.storage)
        log_structured(
            auth_logger, logging.INFO, "User registered successfully", user_id=user["id"], username=user["username"]
        )
        return self.response.set_response(
            message="User created successfully!", payload=create_user_response(user), redirect="auth/login"
        )

    def show(self) -> Response:
        user = self.find_entity(self.context("retrieve"))
        if user["deleted_at"]:
            return self.response.set_response(
                message=f"User was deleted on {user['deleted_at']}", payload=create_user_response(user)
            )
        return self.response.set_response(
            message="User retrieved successfully!",
            payload={**create_user_response(user), "isCurrentUser": user["id"] == self.current_user_id},
            title=user["username"],
        )

    def update(self) -> Response:
        context, user_id, user = self.find_owned_entity("update")
        params = UserUpdateParams.from_body(self.request.body)
        check_user_uniqueness(context, self.storage, params.username, params.email, exclude_id=user["id"])
        if params.username is not None:
            user["username"] = params.username
        if params.email is not None:
            user["email"] = params.email
        if params.password is not None:
            user["password"] = hash_password(params.password)
        mark_edited(user)
        self.log_operation("User updated", "update_user", user_id=user_id)
        return self.response.set_response(
            message="User updated successfully!", payload=create_user_response(user), redirect=f"user/{user['id']}"
        )

    def destroy(self) -> Response:
        response = super().destroy()
        self.session.unset(SESSION_USER_KEY)
        return response

    # per-user listings, only for the logged in user themselves

    def _user_listing(self, what: str, build: Callable[[str], list]) -> Response:
        context = f"Cannot get {what}"
        user_id = self.require_login(context)
        user = self.find_entity(context)
        if user["id"] != user_id:
            raise ForumError.forbidden(f"{context}: You cannot view the {what} of a user other than yourself.")
        return self.response.set_response(
            message=f"User's {what} were retrieved successfully!", payload=build(user_id), title=f"Your {what}"
        )

    def _posts_by_id(self, post_ids, user_id):
        posts = (self.storage.posts.get(post_id) for post_id in post_ids)
        return [create_post_response(post, self.storage, user_id) for post in posts if post is not None]

    def _comments_by_id(self, comment_ids, user_id):
        comments = (self.storage.comments.get(comment_id) for comment_id in comment_ids)
        return [create_comment_response(comment, self.storage, user_id) for comment in comments if comment is not None]

    def post_votes(self) -> Response:
        votes = self.storage.votes[EntityKind.POST]
        return self._user_listing("post votes", lambda uid: self._posts_by_id(votes.entities_for_user(uid), uid))

    def comment_votes(self) -> Response:
        votes = self.storage.votes[EntityKind.COMMENT]
        return self._user_listing("comment votes", lambda uid: self._comments_by_id(votes.entities_for_user(uid), uid))

    def post_bookmarks(self) -> Response:
        links = self.storage.bookmarks[EntityKind.POST]
        return self._user_listing("post bookmarks", lambda uid: self._posts_by_id(links.targets_for_source(uid), uid))

    def comment_bookmarks(self) -> Response:
        links = self.storage.bookmarks[EntityKind.COMMENT]
        return self._user_listing(
            "comment bookmarks", lambda uid: self._comments_by_id(links.targets_for_source(uid), uid)
        )

    def posts(self) -> Response:
        return self._user_listing(
            "posts",
            lambda uid: [create_post_response(p, self.storage, uid) for p in self.storage.posts.filter(user_id=uid)],
        )

    def comments(self) -> Response:
        return self._user_listing(
            "comments",
            lambda uid: [
                create_comment_response(c, self.storage, uid) for c in self.storage.comments.filter(user_id=uid)
            ],
        )


class CategoryController(Controller):
    ENTITY = "Category"
    TABLE = "categories"
    ACTIONS = {**CRUD_ACTIONS, **EDIT_FORM_ACTIONS}

    def present(self, entity: Dict):
        return create_category_response(entity, self.storage)

    def destroy_redirect(self, entity: Dict) -> str:
        return "/"

    def create(self) -> Response:
        user_id = self.require_login(self.context("create"))
        params = NewCategoryParams.from_body(self.request.body)
        category = create_category(params, user_id, self.storage)
        self.log_operation("Category created", "create_category", category_id=category["id"], user_id=user_id)
        return self.response.set_response(
            message="Category created successfully!", payload=self.present(category), redirect="/"
        )

    def show(self) -> Response:
        category = self.find_entity(self.context("retrieve"))
        user_id = self.current_user_id
        posts = self.storage.posts.filter(category_id=category["id"])
        return self.response.set_response(
            message="Category retrieved successfully!",
            payload={
                **self.present(category),
                "posts": [create_post_response(post, self.storage, user_id) for post in posts],
                "isLoggedIn": user_id is not None,
            },
            title=category["title"],
        )

    def update(self) -> Response:
        context, user_id, category = self.find_owned_entity("update")
        params = CategoryUpdateParams.from_body(self.request.body)
        if params.title is not None:
            existing = self.storage.categories.find(title=params.title)
            if existing is not None and existing["id"] != category["id"]:
                raise ForumError.bad_request(f"{context}: Duplicate title.")
            category["title"] = params.title
        if params.description is not None:
            category["description"] = params.description
        mark_edited(category)
        self.log_operation("Category updated", "update_category", category_id=category["id"], user_id=user_id)
        return self.response.set_response(
            message="Category updated successfully!",
            payload=self.present(category),
            redirect=f"category/{category['id']}",
        )


class VotableController(Controller):
    """Posts and comments: CRUD, edit form, vote and bookmark transitions"""

    KIND: EntityKind
    ACTIONS = {**CRUD_ACTIONS, **EDIT_FORM_ACTIONS, **TRANSITION_ACTIONS}

    def _transition_context(self, action: str) -> Tuple[str, Dict]:
        context = self.context(action)
        user_id = self.require_login(context)
        entity = self.find_entity(context)
        return user_id, entity

    def _vote(self, action: VoteAction) -> Response:
        user_id, entity = self._transition_context(action.label)
        direction = apply_vote(self.storage, self.KIND, entity["id"], user_id, action)
        upvotes, downvotes = vote_counts(self.storage, self.KIND, entity["id"])
        self.log_operation(
            f"{self.ENTITY} {action.label}d",
            f"{action.value}_{self.KIND.value}",
            entity_id=entity["id"],
            user_id=user_id,
        )
        return self.response.set_response(
            message=f"{self.ENTITY} was {action.label}d successfully!",
            payload={"state": direction.value if direction else None, "upvotes": upvotes, "downvotes": downvotes},
        )

    def _bookmark(self, bookmarked: bool) -> Response:
        action = "bookmark" if bookmarked else "unbookmark"
        user_id, entity = self._transition_context(action)
        apply_bookmark(self.storage, self.KIND, entity["id"], user_id, bookmarked)
        self.log_operation(
            f"{self.ENTITY} {action}ed", f"{action}_{self.KIND.value}", entity_id=entity["id"], user_id=user_id
        )
        return self.response.set_response(
            message=f"{self.ENTITY} was {action}ed successfully!", payload={"isBookmarked": bookmarked}
        )

    def upvote(self) -> Response:
        return self._vote(VoteAction.UPVOTE)

    def downvote(self) -> Response:
        return self._vote(VoteAction.DOWNVOTE)

    def unvote(self) -> Response:
        return self._vote(VoteAction.UNVOTE)

    def bookmark(self) -> Response:
        return self._bookmark(True)

    def unbookmark(self) -> Response:
        return self._bookmark(False)


class PostController(VotableController):
    ENTITY = "Post"
    TABLE = "posts"
    KIND = EntityKind.POST

    def present(self, entity: Dict):
        return create_post_response(entity, self.storage, self.current_user_id)

    def create(self) -> Response:
        user_id = self.require_login(self.context("create"))
        params = NewPostParams.from_body(self.request.body)
        post = create_post(params, user_id, self.storage)
        self.log_operation("Post created", "create_post", post_id=post["id"], user_id=user_id)
        return self.response.set_response(
            message="Post created successfully!", payload=self.present(post), redirect=f"category/{post['category_id']}"
        )

    def show(self) -> Response:
        post = self.find_entity(self.context("retrieve"))
        user_id = self.current_user_id
        comments = self.storage.comments.filter(post_id=post["id"])
        return self.response.set_response(
            message="Post retrieved successfully!",
            payload={
                **self.present(post),
                "canEdit": post["type"] == "Text",
                "isUsersPost": post["user_id"] == user_id,
                "comments": [create_comment_response(comment, self.storage, user_id) for comment in comments],
            },
            title=post["title"],
        )

    def update(self) -> Response:
        context, user_id, post = self.find_owned_entity("update")
        if post["type"] != "Text":
            raise ForumError.bad_request(f"{context}: Only text posts are editable.")
        params = ContentUpdateParams.from_body(self.request.body, self.ENTITY, MAX_LEN_POST_CONTENT)
        post["content"] = params.content
        mark_edited(post)
        self.log_operation("Post updated", "update_post", post_id=post["id"], user_id=user_id)
        return self.response.set_response(
            message="Post updated successfully!", payload=self.present(post), redirect=f"post/{post['id']}"
        )


class CommentController(VotableController):
    ENTITY = "Comment"
    TABLE = "comments"
    KIND = EntityKind.COMMENT

    def present(self, entity: Dict):
        return create_comment_response(entity, self.storage, self.current_user_id)

    def destroy_redirect(self, entity: Dict) -> str:
        return f"post/{entity['post_id']}"

    def create(self) -> Response:
        user_id = self.require_login(self.context("create"))
        params = NewCommentParams.from_body(self.request.body)
        comment = create_comment(params, user_id, self.storage)
        self.log_operation(
            "Comment created", "create_comment", comment_id=comment["id"], post_id=comment["post_id"], user_id=user_id
        )
        return self.response.set_response(
            message="Comment created successfully!",
            payload=self.present(comment),
            redirect=f"post/{comment['post_id']}",
        )

    def show(self) -> Response:
        comment = self.find_entity(self.context("retrieve"))
        return self.response.set_response(
            message="Comment retrieved successfully!",
            payload={
                **self.present(comment),
                "replies": [self.present(reply) for reply in collect_replies(comment, self.storage)],
            },
            title=f"Comment {comment['id']}",
        )

    def update(self) -> Response:
        _, user_id, comment = self.find_owned_entity("update")
        params = ContentUpdateParams.from_body(self.request.body, self.ENTITY, MAX_LEN_COMMENT_CONTENT)
        comment["content"] = params.content
        mark_edited(comment)
        self.log_operation("Comment updated", "update_comment", comment_id=comment["id"], user_id=user_id)
        return self.response.set_response(
            message="Comment updated successfully!",
            payload=self.present(comment),
            redirect=f"post/{comment['post_id']}",
        )


#### ROUTER ############################################################################################################


class Router:
    """
    (method, path) -> controller action, and the single place where errors become responses
    The first path segment picks the controller, the remaining ones are positional parameters
    """

    CONTROLLERS = {
        "auth": AuthController,
        "user": UserController,
        "category": CategoryController,
        "post": PostController,
        "comment": CommentController,
    }

    def __init__(self, session_store: SessionStore, storage: ForumStorage):
        self.session_store = session_store
        self.storage = storage

    def resolve_session(self, cookies: Mapping[str, str]) -> Session:
        return self.session_store.resolve(cookies.get(SESSION_COOKIE_NAME))

    def dispatch(self, request: Request, response: Response, session: Session) -> Response:
        start_time = time_ns()
        try:
            if request.resource == "":
                self._homepage(request, response)
            else:
                controller_class = self.CONTROLLERS.get(request.resource)
                if controller_class is None:
                    raise ForumError.not_found("Invalid request path!")
                controller_class(request, response, session, self.storage).do_action()
        except ForumError as exc:
            log_structured(
                errors_logger,
                logging.WARNING,
                exc.message,
                kind=exc.kind.name,
                status_code=exc.status_code,
                method=request.method,
                resource=request.resource,
                segments=request.segments,
                session_id=session.id,
            )
            response.fail(exc.status_code, exc.message)
        except Exception as exc:
            log_structured(
                errors_logger,
                logging.ERROR,
                "Internal Server Error",
                method=request.method,
                resource=request.resource,
                segments=request.segments,
                exception_type=str(exc),
                exception_traceback=format_tb(exc.__traceback__),
            )
            response.fail(HTTPStatus.INTERNAL_SERVER_ERROR, "Internal Server Error")
        log_structured(
            http_logger,
            logging.INFO,
            "Request dispatched",
            method=request.method,
            resource=request.resource,
            segments=request.segments,
            status_code=response.status_code,
            duration_ms=(time_ns() - start_time) / 1_000_000,
            user_id=session.get(SESSION_USER_KEY),
        )
        return response

    @staticmethod
    def _homepage(request: Request, response: Response):
        if request.method != "GET" or request.segments:
            raise ForumError.method_not_allowed("Invalid request method!")
        response.set_response(message="Homepage!", payload={}, title="Welcome")


#### TRANSPORT #########################################################################################################


class ForumHandler:
    """WSGI application: environ -> Request, Router resolves the session and dispatches, Response -> bytes"""

    TUNNELED_METHODS = ("PUT", "DELETE")

    def __init__(self, router: Router):
        self.router = router

    def __call__(self, environ, start_response):
        """WSGI application entry point"""
        start_time = time_ns()
        method = environ["REQUEST_METHOD"]
        path = environ.get("PATH_INFO", "/")
        client_ip = self._get_client_ip(environ)
        log_structured(http_logger, logging.INFO, "Request received", method=method, path=path, ip=client_ip)
        try:
            response = Response(json_mode=self._wants_json(environ))
            try:
                body = self._get_request_body(environ)
            except ValueError as exc:
                log_structured(errors_logger, logging.WARNING, "Invalid request body", method=method, error=str(exc))
                status_code, headers, payload = response.fail(HTTPStatus.BAD_REQUEST, "Invalid request body!").render()
            else:
                method = self._tunnel_method(method, body)
                cookies = self._get_cookies(environ)
                request = Request.from_path(method, path, body, cookies)
                session = self.router.resolve_session(request.cookies)
                self.router.dispatch(request, response, session)
                response.add_cookie(SESSION_COOKIE_NAME, session.id, max_age=self.router.session_store.ttl_ns // 10**9)
                status_code, headers, payload = response.render()
        except Exception as exc:
            log_structured(
                http_logger,
                logging.ERROR,
                "Internal Server Error",
                method=method,
                path=path,
                exception_type=str(exc),
                exception_traceback=format_tb(exc.__traceback__),
            )
            response = Response().fail(HTTPStatus.INTERNAL_SERVER_ERROR, "Internal Server Error")
            status_code, headers, payload = response.render()
        log_structured(
            http_logger,
            logging.INFO,
            "Request completed",
            method=method,
            path=path,
            status_code=status_code,
            duration_ms=(time_ns() - start_time) / 1_000_000,
            response_size=len(payload),
            ip=client_ip,
        )
        start_response(f"{status_code} {HTTPStatus(status_code).phrase}", headers)
        return [payload]

    @staticmethod
    def _get_client_ip(environ):
        """Get client IP address from header (if configured) or environ"""
        if CLIENT_IP_HEADER:
            header_key = f"HTTP_{CLIENT_IP_HEADER.upper().replace('-', '_')}"
            header_value = environ.get(header_key)
            if header_value:
                return header_value.split(",")[0].strip()
        return environ.get("REMOTE_ADDR", "127.0.0.1")

    @staticmethod
    def _wants_json(environ) -> bool:
        return "application/json" in environ.get("HTTP_ACCEPT", "")

    @staticmethod
    def _get_request_body(environ) -> Dict:
        """Parse a JSON or form-urlencoded body, raises ValueError when it can't be read as an object"""
        content_length = int(environ.get("CONTENT_LENGTH") or 0)
        if content_length == 0:
            return {}
        raw_body = environ["wsgi.input"].read(content_length).decode("utf-8")
        content_type = environ.get("CONTENT_TYPE", "").split(";")[0].strip()
        log_structured(
            http_logger,
            logging.DEBUG,
            "Request body received",
            payload_size=content_length,
            content_type=content_type,
            body_preview=raw_body[:200],
            body_truncated=len(raw_body) > 200,
        )
        if content_type == "application/x-www-form-urlencoded":
            return {key: values[-1] for key, values in parse_qs(raw_body).items()}
        if content_type == "application/json":
            parsed_body = json.loads(raw_body) if raw_body else {}
            if not isinstance(parsed_body, dict):
                raise ValueError("JSON body must be an object")
            return parsed_body
        return {}

    def _tunnel_method(self, method: str, body: Dict) -> str:
        """HTML forms can only POST, they send PUT and DELETE through a `method` field"""
        tunneled = body.get("method")
        if method == "POST" and type(tunneled) is str and tunneled.upper() in self.TUNNELED_METHODS:
            return tunneled.upper()
        return method

    @staticmethod
    def _get_cookies(environ) -> Dict[str, str]:
        cookie = SimpleCookie()
        try:
            cookie.load(environ.get("HTTP_COOKIE", ""))
        except CookieError:
            log_structured(security_logger, logging.WARNING, "Malformed cookie header ignored")
            return {}
        return {name: morsel.value for name, morsel in cookie.items()}


def run_server(port: int = 8000):
    """Run the forum server"""
    session_store = SessionStore()
    storage = ForumStorage()
    app = ForumHandler(Router(session_store, storage))
    log_structured(lifecycle_logger, logging.INFO, "Forum Server starting", port=port)
    log_structured(
        config_logger,
        logging.INFO,
        "Session config",
        cookie_name=SESSION_COOKIE_NAME,
        ttl=SESSION_TTL,
        sweep_interval=SESSION_SWEEP_INTERVAL,
        max_sessions=MAX_SESSIONS,
    )
    log_structured(config_logger, logging.INFO, "Server config", threads=SERVER_THREADS, demo_data=POPULATE_DEMO_DATA)
    log_structured(
        config_logger,
        logging.INFO,
        "Logging config",
        log_level=LOG_LEVEL,
        log_file=bool(LOG_FILE),
        log_file_path=LOG_FILE,
    )
    # Document routes - using print here
    print(f"Forum Server running on http://localhost:{port}")
    print("Routes available (send `Accept: application/json` for the JSON envelope):")
    print("  GET    /  ------------------------------------------------- Homepage")
    print("  POST   /auth/login  --------------------------------------- Log in")
    print("  GET    /auth/logout  -------------------------------------- Log out")
    print("  POST   /user  --------------------------------------------- Create user")
    print("  GET    /user[/{id}]  -------------------------------------- List / retrieve users")
    print("  PUT    /user/{id}  ---------------------------------------- Update yourself")
    print("  DELETE /user/{id}  ---------------------------------------- Delete yourself")
    print("  GET    /user/{id}/{post|comment}{votes|bookmarks}  -------- Your votes and bookmarks")
    print("  GET    /user/{id}/{posts|comments}  ----------------------- Your posts and comments")
    print("  *      /{category|post|comment}[/{id}[/edit]]  ------------ CRUD and edit forms")
    print("  GET    /{post|comment}/{id}/{upvote|downvote|unvote}  ----- Votes")
    print("  GET    /{post|comment}/{id}/{bookmark|unbookmark}  -------- Bookmarks")
    print("\nPress Ctrl+C to stop the server")
    session_store.start_sweeper()
    try:
        serve(app, host="0.0.0.0", port=port, threads=SERVER_THREADS)
    except KeyboardInterrupt:
        log_structured(lifecycle_logger, logging.INFO, "shutting down server")
    finally:
        session_store.stop_sweeper()
        session_store.clear()
        log_structured(lifecycle_logger, logging.INFO, "process terminating now")


if __name__ == "__main__":
    port = int(sys.argv[1]) if len(sys.argv) > 1 else 8000
    run_server(port)


#### TESTS #############################################################################################################


class TestInMemoryModel(TestCase):
    def setUp(self):
        self.model = InMemoryModel("thing")

    # add

    def test_add_assigns_incremental_string_ids(self):
        first = self.model.add({"name": "first"})
        second = self.model.add({"name": "second"})
        self.assertEqual(first["id"], "1")
        self.assertEqual(second["id"], "2")
        self.assertEqual(self.model.current_id_counter, 3)
        self.assertEqual(len(self.model), 2)

    @patch("forum_server.MAX_ID_LEN", 1)
    def test_add_refuses_ids_longer_than_max_id_len(self):
        self.model.current_id_counter = 10
        with self.assertRaises(ValueError) as exc:
            self.model.add({"name": "too far"})
        self.assertEqual(str(exc.exception), "cannot allocate id: we reached MAX_ID_LEN limit")

    # get

    def test_get_accepts_int_and_str(self):
        obj = self.model.add({"name": "test"})
        self.assertIs(self.model.get(1), obj)
        self.assertIs(self.model.get("1"), obj)
        self.assertIsNone(self.model.get("2"))

    def test_get_invalid_id_type(self):
        with self.assertRaises(ValueError) as exc:
            self.model.get(1.5)
        self.assertEqual(str(exc.exception), "id must be an int or an str")

    # find / filter

    def test_find_and_filter(self):
        a = self.model.add({"color": "red", "size": 1})
        b = self.model.add({"color": "red", "size": 2})
        self.model.add({"color": "blue", "size": 1})
        self.assertEqual(self.model.filter(color="red"), [a, b])
        self.assertIs(self.model.find(color="red", size=2), b)
        self.assertIsNone(self.model.find(color="green"))


class TestInMemoryLinks(TestCase):
    def setUp(self):
        self.links = InMemoryLinks()

    def test_add_is_idempotent_and_keeps_order(self):
        self.links.add("1", "2")
        self.links.add(1, 3)
        self.links.add("1", "2")
        self.assertEqual(self.links.links, [("1", "2"), ("1", "3")])

    def test_remove_and_is_linked(self):
        self.links.add("1", "2")
        self.assertTrue(self.links.is_linked(1, 2))
        self.links.remove("1", "2")
        self.assertFalse(self.links.is_linked("1", "2"))
        self.links.remove("1", "2")  # Removing twice is a no-op
        self.assertEqual(self.links.links, [])

    def test_targets_for_source(self):
        self.links.add("1", "10")
        self.links.add("1", "11")
        self.links.add("2", "10")
        self.assertEqual(self.links.targets_for_source("1"), ["10", "11"])


class TestInMemoryVotes(TestCase):
    def setUp(self):
        self.votes = InMemoryVotes()

    def test_one_row_per_user_and_entity(self):
        self.votes.put("1", "5", VoteDirection.UP)
        self.votes.put(1, 5, VoteDirection.DOWN)
        self.assertEqual(len(self.votes.rows), 1)
        self.assertIs(self.votes.get("1", "5"), VoteDirection.DOWN)

    def test_count_per_direction(self):
        self.votes.put("1", "5", VoteDirection.UP)
        self.votes.put("2", "5", VoteDirection.UP)
        self.votes.put("3", "5", VoteDirection.DOWN)
        self.votes.put("3", "6", VoteDirection.UP)
        self.assertEqual(self.votes.count("5", VoteDirection.UP), 2)
        self.assertEqual(self.votes.count("5", VoteDirection.DOWN), 1)
        self.assertEqual(self.votes.count("7", VoteDirection.UP), 0)

    def test_delete_and_entities_for_user(self):
        self.votes.put("3", "5", VoteDirection.DOWN)
        self.votes.put("3", "6", VoteDirection.UP)
        self.votes.delete("3", "5")
        self.votes.delete("3", "5")
        self.assertIsNone(self.votes.get("3", "5"))
        self.assertEqual(self.votes.entities_for_user("3"), ["6"])


class TestKeyedLocks(TestCase):
    def test_registry_is_emptied_after_release(self):
        locks = KeyedLocks()
        with locks.hold(("vote", "1", "2")):
            self.assertEqual(len(locks), 1)
            with locks.hold(("vote", "1", "3")):
                self.assertEqual(len(locks), 2)
        self.assertEqual(len(locks), 0)

    def test_registry_is_emptied_when_the_body_raises(self):
        locks = KeyedLocks()
        with self.assertRaises(RuntimeError):
            with locks.hold("key"):
                raise RuntimeError("boom")
        self.assertEqual(len(locks), 0)

    def test_same_key_is_mutually_exclusive(self):
        locks = KeyedLocks()
        inside, overlaps = [0], []
        barrier = threading.Barrier(4)

        def worker():
            barrier.wait()
            for _ in range(50):
                with locks.hold("shared"):
                    inside[0] += 1
                    overlaps.append(inside[0])
                    sleep(0)
                    inside[0] -= 1

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(set(overlaps), {1})
        self.assertEqual(len(locks), 0)


class TestVoteStateMachine(TestCase):
    def test_allowed_transitions(self):
        up, down = VoteDirection.UP, VoteDirection.DOWN
        self.assertIs(next_vote_direction(None, VoteAction.UPVOTE, "Post"), up)
        self.assertIs(next_vote_direction(None, VoteAction.DOWNVOTE, "Post"), down)
        self.assertIs(next_vote_direction(up, VoteAction.DOWNVOTE, "Post"), down)
        self.assertIs(next_vote_direction(down, VoteAction.UPVOTE, "Post"), up)
        self.assertIsNone(next_vote_direction(up, VoteAction.UNVOTE, "Post"))
        self.assertIsNone(next_vote_direction(down, VoteAction.UNVOTE, "Post"))

    def test_rejected_transitions(self):
        cases = [
            (VoteDirection.UP, VoteAction.UPVOTE, "Cannot up vote Post: Post has already been up voted."),
            (VoteDirection.DOWN, VoteAction.DOWNVOTE, "Cannot down vote Post: Post has already been down voted."),
            (None, VoteAction.UNVOTE, "Cannot unvote Post: Post must first be up or down voted."),
        ]
        for current, action, message in cases:
            with self.subTest(action=action):
                with self.assertRaises(ForumError) as exc:
                    next_vote_direction(current, action, "Post")
                self.assertIs(exc.exception.kind, ErrorKind.BAD_REQUEST)
                self.assertEqual(exc.exception.message, message)

    def test_entity_label_is_used_in_messages(self):
        with self.assertRaises(ForumError) as exc:
            next_vote_direction(VoteDirection.DOWN, VoteAction.DOWNVOTE, "Comment")
        self.assertEqual(exc.exception.message, "Cannot down vote Comment: Comment has already been down voted.")


@patch("forum_server.log_structured")
class TestApplyVoteAndBookmark(TestCase):
    def setUp(self):
        self.storage = ForumStorage(populate_demo=False)

    def test_flip_changes_both_counters(self, log_structured_mock):
        apply_vote(self.storage, EntityKind.POST, "1", "7", VoteAction.UPVOTE)
        self.assertEqual(vote_counts(self.storage, EntityKind.POST, "1"), (1, 0))
        apply_vote(self.storage, EntityKind.POST, "1", "7", VoteAction.DOWNVOTE)
        self.assertEqual(vote_counts(self.storage, EntityKind.POST, "1"), (0, 1))

    def test_unvote_returns_counters_to_zero(self, log_structured_mock):
        apply_vote(self.storage, EntityKind.COMMENT, "1", "7", VoteAction.DOWNVOTE)
        self.assertIsNone(apply_vote(self.storage, EntityKind.COMMENT, "1", "7", VoteAction.UNVOTE))
        self.assertEqual(vote_counts(self.storage, EntityKind.COMMENT, "1"), (0, 0))

    def test_post_and_comment_votes_are_separate(self, log_structured_mock):
        apply_vote(self.storage, EntityKind.POST, "1", "7", VoteAction.UPVOTE)
        apply_vote(self.storage, EntityKind.COMMENT, "1", "7", VoteAction.UPVOTE)
        self.assertEqual(vote_counts(self.storage, EntityKind.POST, "1"), (1, 0))
        self.assertEqual(vote_counts(self.storage, EntityKind.COMMENT, "1"), (1, 0))

    def test_concurrent_duplicate_upvotes_insert_a_single_row(self, log_structured_mock):
        barrier = threading.Barrier(8)
        outcomes = []

        def worker():
            barrier.wait()
            try:
                apply_vote(self.storage, EntityKind.POST, "1", "7", VoteAction.UPVOTE)
                outcomes.append("ok")
            except ForumError as exc:
                outcomes.append(exc.kind)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(outcomes.count("ok"), 1)
        self.assertEqual(outcomes.count(ErrorKind.BAD_REQUEST), 7)
        self.assertEqual(vote_counts(self.storage, EntityKind.POST, "1"), (1, 0))

    def test_counting_while_other_pairs_are_written(self, log_structured_mock):
        previous_interval = sys.getswitchinterval()
        sys.setswitchinterval(1e-6)
        self.addCleanup(sys.setswitchinterval, previous_interval)
        barrier = threading.Barrier(8)
        errors = []

        def writer(user_id):
            barrier.wait()
            try:
                for _ in range(10):
                    for entity_id in map(str, range(2, 30)):
                        apply_vote(self.storage, EntityKind.POST, entity_id, user_id, VoteAction.UPVOTE)
                        apply_bookmark(self.storage, EntityKind.POST, entity_id, user_id, True)
                        apply_vote(self.storage, EntityKind.POST, entity_id, user_id, VoteAction.UNVOTE)
                        apply_bookmark(self.storage, EntityKind.POST, entity_id, user_id, False)
            except Exception as exc:
                errors.append(exc)

        def reader():
            barrier.wait()
            try:
                for _ in range(2000):
                    vote_counts(self.storage, EntityKind.POST, "1")
                    self.storage.votes[EntityKind.POST].entities_for_user("1")
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=writer, args=(str(user_id),)) for user_id in range(2, 9)]
        threads.append(threading.Thread(target=reader))
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(errors, [])
        self.assertEqual(self.storage.votes[EntityKind.POST].rows, {})
        self.assertEqual(self.storage.bookmarks[EntityKind.POST].links, [])

    def test_concurrent_adds_get_distinct_ids(self, log_structured_mock):
        model = InMemoryModel("thing")
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            for _ in range(200):
                model.add({})

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(len(model), 1600)
        self.assertEqual(model.current_id_counter, 1601)

    def test_bookmark_toggle(self, log_structured_mock):
        apply_bookmark(self.storage, EntityKind.POST, "1", "7", True)
        self.assertTrue(self.storage.bookmarks[EntityKind.POST].is_linked("7", "1"))
        with self.assertRaises(ForumError) as exc:
            apply_bookmark(self.storage, EntityKind.POST, "1", "7", True)
        self.assertEqual(exc.exception.message, "Cannot bookmark Post: Post has already been bookmarked.")
        apply_bookmark(self.storage, EntityKind.POST, "1", "7", False)
        with self.assertRaises(ForumError) as exc:
            apply_bookmark(self.storage, EntityKind.POST, "1", "7", False)
        self.assertEqual(exc.exception.message, "Cannot unbookmark Post: Post has not been bookmarked.")
        self.assertEqual(self.storage.bookmarks[EntityKind.POST].links, [])


class TestSession(TestCase):
    def test_key_value_operations(self):
        session = Session("abc", now=0)
        self.assertFalse(session.exists("user_id"))
        session.set("user_id", "1")
        self.assertTrue(session.exists("user_id"))
        self.assertEqual(session.get("user_id"), "1")
        session.unset("user_id")
        session.unset("user_id")
        self.assertIsNone(session.get("user_id"))
        session.set("a", 1)
        session.clear()
        self.assertEqual(session.data, {})

    def test_key_set_to_none_exists(self):
        session = Session("abc", now=0)
        session.set("flag", None)
        self.assertTrue(session.exists("flag"))
        self.assertIsNone(session.get("flag"))
        session.unset("flag")
        self.assertFalse(session.exists("flag"))

    def test_touch(self):
        session = Session("abc", now=5)
        session.touch(12)
        self.assertEqual(session.created_at, 5)
        self.assertEqual(session.last_touched_at, 12)


@patch("forum_server.log_structured")
class TestSessionStore(TestCase):
    def setUp(self):
        self.now = [0]
        self.store = SessionStore(ttl=10, sweep_interval=60, max_sessions=3, clock=lambda: self.now[0])

    def advance(self, seconds):
        self.now[0] += seconds * 1_000_000_000

    # init

    def test_invalid_parameters(self, log_structured_mock):
        with self.assertRaises(ValueError):
            SessionStore(ttl=0)
        with self.assertRaises(ValueError):
            SessionStore(max_sessions=0)

    # create / get / destroy

    def test_create_then_get_returns_same_session(self, log_structured_mock):
        session = self.store.create_session()
        self.assertIs(self.store.get(session.id), session)
        self.assertEqual(session.data, {})
        self.assertEqual(len(session.id), 32)

    def test_get_has_no_creation_side_effect(self, log_structured_mock):
        self.assertIsNone(self.store.get("unknown"))
        self.assertIsNone(self.store.get(None))
        self.assertEqual(len(self.store), 0)

    def test_ids_are_unique(self, log_structured_mock):
        store = SessionStore(max_sessions=100)
        ids = {store.create_session().id for _ in range(50)}
        self.assertEqual(len(ids), 50)

    def test_destroy_is_idempotent(self, log_structured_mock):
        session = self.store.create_session()
        self.store.destroy(session.id)
        self.assertIsNone(self.store.get(session.id))
        self.store.destroy(session.id)
        self.assertEqual(len(self.store), 0)

    # resolve

    def test_resolve_touches_known_session(self, log_structured_mock):
        session = self.store.create_session()
        self.advance(5)
        self.assertIs(self.store.resolve(session.id), session)
        self.assertEqual(session.last_touched_at, 5_000_000_000)

    def test_resolve_creates_session_for_unknown_or_missing_cookie(self, log_structured_mock):
        first = self.store.resolve(None)
        second = self.store.resolve("not-a-session")
        self.assertNotEqual(first.id, second.id)
        self.assertEqual(len(self.store), 2)

    def test_resolve_does_not_revive_expired_session(self, log_structured_mock):
        session = self.store.create_session()
        session.set("user_id", "1")
        self.advance(11)
        resolved = self.store.resolve(session.id)
        self.assertNotEqual(resolved.id, session.id)
        self.assertIsNone(resolved.get("user_id"))

    # sweep

    def test_sweep_removes_only_idle_sessions(self, log_structured_mock):
        idle = self.store.create_session()
        self.advance(6)
        active = self.store.create_session()
        self.advance(5)
        self.assertEqual(self.store.sweep(), 1)
        self.assertIsNone(self.store.get(idle.id))
        self.assertIs(self.store.get(active.id), active)

    def test_touched_session_survives_sweep(self, log_structured_mock):
        session = self.store.create_session()
        self.advance(8)
        self.store.resolve(session.id)
        self.advance(8)
        self.assertEqual(self.store.sweep(), 0)
        self.assertIs(self.store.get(session.id), session)

    def test_session_touched_after_sweep_snapshot_is_kept(self, log_structured_mock):
        session = self.store.create_session()
        self.advance(11)
        store_lock, now = self.store._lock, self.now

        class TouchingLock:
            # a request touches the session right before the sweep takes the lock
            def __enter__(self):
                session.touch(now[0])
                return store_lock.__enter__()

            def __exit__(self, *exc_info):
                return store_lock.__exit__(*exc_info)

        self.store._lock = TouchingLock()
        self.assertEqual(self.store.sweep(), 0)
        self.assertIs(self.store.get(session.id), session)

    def test_resolve_after_destroy_creates_new_session(self, log_structured_mock):
        session = self.store.create_session()
        session.set("user_id", "1")
        self.store.destroy(session.id)
        resolved = self.store.resolve(session.id)
        self.assertNotEqual(resolved.id, session.id)
        self.assertFalse(resolved.exists("user_id"))

    # capacity

    def test_eviction_of_least_recently_touched(self, log_structured_mock):
        sessions = []
        for _ in range(3):
            sessions.append(self.store.create_session())
            self.advance(1)
        self.store.resolve(sessions[0].id)
        newest = self.store.create_session()
        self.assertEqual(len(self.store), 3)
        self.assertIsNone(self.store.get(sessions[1].id))
        self.assertIs(self.store.get(sessions[0].id), sessions[0])
        self.assertIs(self.store.get(newest.id), newest)

    # sweeper lifecycle

    def test_sweeper_thread_start_and_stop(self, log_structured_mock):
        store = SessionStore(ttl=10, sweep_interval=0.01, clock=lambda: self.now[0])
        session = store.create_session()
        store.start_sweeper()
        store.start_sweeper()  # Second start is a no-op
        self.assertTrue(store.sweeper_running)
        self.advance(11)
        for _ in range(200):
            if store.get(session.id) is None:
                break
            sleep(0.01)
        self.assertIsNone(store.get(session.id))
        store.stop_sweeper(timeout=2)
        self.assertFalse(store.sweeper_running)
        store.stop_sweeper()  # Stopping twice is fine

    def test_clear(self, log_structured_mock):
        self.store.create_session()
        self.store.create_session()
        self.store.clear()
        self.assertEqual(len(self.store), 0)


class TestRequest(TestCase):
    def test_from_path(self):
        request = Request.from_path("get", "/post/12/upvote", {"a": "b"}, {"sessionId": "x"})
        self.assertEqual(request.method, "GET")
        self.assertEqual(request.resource, "post")
        self.assertEqual(request.segments, ("12", "upvote"))
        self.assertEqual(request.resource_id, "12")
        self.assertEqual(request.sub_action, "upvote")
        self.assertEqual(request.cookies["sessionId"], "x")

    def test_root_and_trailing_slash(self):
        root = Request.from_path("GET", "/")
        self.assertEqual(root.resource, "")
        self.assertEqual(root.segments, ())
        self.assertIsNone(root.resource_id)
        users = Request.from_path("GET", "/user/?page=2")
        self.assertEqual(users.resource, "user")
        self.assertEqual(users.segments, ())

    def test_is_immutable(self):
        request = Request.from_path("POST", "/user", {"username": "alice"})
        with self.assertRaises(AttributeError):
            request.method = "GET"
        with self.assertRaises(TypeError):
            request.body["username"] = "mallory"


class TestResponse(TestCase):
    def test_defaults_to_200(self):
        response = Response()
        self.assertEqual(response.status_code, 200)
        self.assertEqual(json.loads(response.to_json()), {"statusCode": 200, "message": "", "payload": {}})

    def test_fail_resets_payload_and_redirect(self):
        response = Response().set_response(message="ok", payload={"id": "1"}, redirect="/")
        response.fail(400, "nope")
        self.assertEqual((response.status_code, response.message, response.payload), (400, "nope", {}))
        self.assertIsNone(response.redirect_to)

    def test_json_render_ignores_redirect(self):
        response = Response(json_mode=True).set_response(message="done", payload={"id": "1"}, redirect="post/1")
        status_code, headers, body = response.render()
        self.assertEqual(status_code, 200)
        self.assertIn(("Content-Type", "application/json"), headers)
        self.assertEqual(json.loads(body), {"statusCode": 200, "message": "done", "payload": {"id": "1"}})

    def test_html_render_redirects_with_see_other(self):
        response = Response(json_mode=False).set_response(message="done", redirect="post/1")
        status_code, headers, _ = response.render()
        self.assertEqual(status_code, 303)
        self.assertIn(("Location", "/post/1"), headers)

    def test_html_escapes_content(self):
        response = Response(json_mode=False).set_response(message="<script>", payload={"x": "<b>"}, title="a&b")
        _, _, body = response.render()
        self.assertIn(b"&lt;script&gt;", body)
        self.assertIn(b"a&amp;b", body)
        self.assertNotIn(b"<b>", body)

    def test_cookie_is_replaced_not_duplicated(self):
        response = Response()
        response.add_cookie("sessionId", "one")
        response.add_cookie("sessionId", "two", max_age=60)
        self.assertEqual(len(response.cookies), 1)
        self.assertIn("sessionId=two", response.cookies[0])
        self.assertIn("HttpOnly", response.cookies[0])
        self.assertIn("SameSite=Lax", response.cookies[0])


class TestParams(TestCase):
    def test_missing_field(self):
        with self.assertRaises(ForumError) as exc:
            NewPostParams.from_body({"categoryId": 1, "type": "Text", "content": "hi"})
        self.assertEqual(exc.exception.message, "Cannot create Post: Missing title.")

    def test_invalid_post_type(self):
        with self.assertRaises(ForumError) as exc:
            NewPostParams.from_body({"categoryId": 1, "title": "t", "type": "Img", "content": "c"})
        self.assertEqual(exc.exception.message, "Cannot create Post: type must be one of Text, URL.")

    def test_ids_are_normalized(self):
        params = NewCommentParams.from_body({"postId": 3, "content": "hi", "replyId": ""})
        self.assertEqual(params, NewCommentParams(post_id="3", content="hi", reply_id=None))

    def test_update_requires_at_least_one_field(self):
        with self.assertRaises(ForumError) as exc:
            UserUpdateParams.from_body({})
        self.assertEqual(exc.exception.message, "Cannot update User: No update parameters were provided.")

    def test_field_too_long(self):
        with self.assertRaises(ForumError) as exc:
            LoginParams.from_body({"email": "a" * (MAX_LEN_USER_EMAIL + 1), "password": "x"})
        self.assertIs(exc.exception.kind, ErrorKind.BAD_REQUEST)


class ForumTestCase(TestCase):
    """Drives the Router directly with a fresh storage and session store"""

    def setUp(self):
        self.storage = ForumStorage(populate_demo=False)
        self.session_store = SessionStore(ttl=60, sweep_interval=60, max_sessions=100)
        self.router = Router(self.session_store, self.storage)
        log_patcher = patch("forum_server.log_structured")
        log_patcher.start()
        self.addCleanup(log_patcher.stop)

    # helpers

    def call(self, method, path, body=None, session=None):
        session = session or self.session_store.create_session()
        return self.router.dispatch(Request.from_path(method, path, body), Response(), session)

    def create_user(self, username):
        response = self.call(
            "POST", "/user", {"username": username, "email": f"{username}@example.com", "password": "password123"}
        )
        self.assertEqual(response.status_code, 200, response.message)
        return response.payload

    def logged_in(self, username):
        user = self.create_user(username)
        session = self.session_store.create_session()
        response = self.call(
            "POST", "/auth/login", {"email": f"{username}@example.com", "password": "password123"}, session
        )
        self.assertEqual(response.message, "Logged in successfully!")
        return user, session

    def create_category(self, session, title="General"):
        response = self.call("POST", "/category", {"title": title, "description": "Talk about anything"}, session)
        self.assertEqual(response.status_code, 200, response.message)
        return response.payload

    def create_post(self, session, category_id, post_type="Text", content="Hello world"):
        body = {"categoryId": category_id, "title": "First post", "type": post_type, "content": content}
        response = self.call("POST", "/post", body, session)
        self.assertEqual(response.status_code, 200, response.message)
        return response.payload

    def create_comment(self, session, post_id, content="Nice post", reply_id=None):
        body = {"postId": post_id, "content": content, "replyId": reply_id}
        response = self.call("POST", "/comment", body, session)
        self.assertEqual(response.status_code, 200, response.message)
        return response.payload

    def assertFails(self, response, status_code, message):
        self.assertEqual((response.status_code, response.message, response.payload), (status_code, message, {}))


class TestRouter(ForumTestCase):
    def test_homepage(self):
        response = self.call("GET", "/")
        self.assertEqual((response.status_code, response.message, response.payload), (200, "Homepage!", {}))

    def test_homepage_other_methods(self):
        self.assertFails(self.call("POST", "/"), 405, "Invalid request method!")

    def test_unknown_resource(self):
        self.assertFails(self.call("GET", "/nonexistent"), 404, "Invalid request path!")

    def test_unsupported_method(self):
        self.assertFails(self.call("PATCH", "/user"), 405, "Invalid request method!")

    def test_unsupported_sub_action(self):
        self.assertFails(self.call("GET", "/post/1/retweet"), 405, "Invalid request method!")
        self.assertFails(self.call("GET", "/post/1/upvote/extra"), 405, "Invalid request method!")
        self.assertFails(self.call("GET", "/category/1/upvote"), 405, "Invalid request method!")
        self.assertFails(self.call("POST", "/auth/register"), 405, "Invalid request method!")
        self.assertFails(self.call("GET", "/auth/login/extra"), 405, "Invalid request method!")

    def test_unexpected_exception_becomes_500(self):
        with patch.object(CategoryController, "list", side_effect=RuntimeError("boom")):
            self.assertFails(self.call("GET", "/category"), 500, "Internal Server Error")

    def test_resolve_session_from_cookie(self):
        session = self.session_store.create_session()
        self.assertIs(self.router.resolve_session({SESSION_COOKIE_NAME: session.id}), session)
        self.assertIsNot(self.router.resolve_session({}), session)


class TestAuthController(ForumTestCase):
    def test_login_sets_user_in_session(self):
        user, session = self.logged_in("alice")
        self.assertEqual(session.get(SESSION_USER_KEY), user["id"])

    def test_login_redirects_to_profile(self):
        user = self.create_user("alice")
        response = self.call("POST", "/auth/login", {"email": "alice@example.com", "password": "password123"})
        self.assertEqual(response.redirect_to, f"user/{user['id']}")
        self.assertNotIn("password", response.payload)

    def test_login_missing_fields(self):
        self.assertFails(self.call("POST", "/auth/login", {"password": "x"}), 400, "Cannot log in: Missing email.")
        self.assertFails(
            self.call("POST", "/auth/login", {"email": "a@b.c"}), 400, "Cannot log in: Missing password."
        )

    def test_login_invalid_credentials(self):
        self.create_user("alice")
        bad_password = {"email": "alice@example.com", "password": "wrong"}
        unknown_email = {"email": "bob@example.com", "password": "password123"}
        for body in (bad_password, unknown_email):
            self.assertFails(self.call("POST", "/auth/login", body), 400, "Cannot log in: Invalid credentials.")

    def test_login_deleted_user(self):
        user, session = self.logged_in("alice")
        self.call("DELETE", f"/user/{user['id']}", session=session)
        response = self.call("POST", "/auth/login", {"email": "alice@example.com", "password": "password123"})
        self.assertFails(response, 400, "Cannot log in: User has been deleted.")

    def test_logout_clears_session(self):
        _, session = self.logged_in("alice")
        response = self.call("GET", "/auth/logout", session=session)
        self.assertEqual(response.message, "Logged out successfully!")
        self.assertFalse(session.exists(SESSION_USER_KEY))

    def test_login_remember_sets_email_cookie(self):
        self.create_user("alice")
        body = {"email": "alice@example.com", "password": "password123", "remember": "on"}
        response = self.call("POST", "/auth/login", body)
        self.assertTrue(any(cookie.startswith("email=") for cookie in response.cookies))
        response = self.call("POST", "/auth/login", {"email": "alice@example.com", "password": "password123"})
        self.assertEqual(response.cookies, [])

    # forms

    def test_login_form_prefills_remembered_email(self):
        request = Request.from_path("GET", "/auth/login", cookies={"email": "alice@example.com"})
        response = self.router.dispatch(request, Response(), self.session_store.create_session())
        self.assertEqual(
            (response.status_code, response.message, response.payload, response.title),
            (200, "", {"email": "alice@example.com"}, "Login"),
        )
        self.assertEqual(self.call("GET", "/auth/login").payload, {"email": None})

    def test_register_form(self):
        response = self.call("GET", "/auth/register")
        self.assertEqual(
            (response.status_code, response.message, response.payload, response.title), (200, "", {}, "New User")
        )


class TestUserController(ForumTestCase):
    def test_create_user(self):
        response = self.call("POST", "/user", {"username": "alice", "email": "alice@example.com", "password": "pw"})
        self.assertEqual(response.message, "User created successfully!")
        self.assertEqual(response.redirect_to, "auth/login")
        self.assertEqual(response.payload["username"], "alice")
        self.assertNotEqual(self.storage.users.get(response.payload["id"])["password"], "pw")

    def test_create_user_missing_and_duplicate_fields(self):
        self.assertFails(
            self.call("POST", "/user", {"email": "a@b.c", "password": "pw"}),
            400,
            "Cannot create User: Missing username.",
        )
        self.create_user("alice")
        duplicate_username = {"username": "alice", "email": "other@example.com", "password": "pw"}
        duplicate_email = {"username": "other", "email": "alice@example.com", "password": "pw"}
        self.assertFails(self.call("POST", "/user", duplicate_username), 400, "Cannot create User: Duplicate username.")
        self.assertFails(self.call("POST", "/user", duplicate_email), 400, "Cannot create User: Duplicate email.")

    def test_list_and_show(self):
        alice = self.create_user("alice")
        self.create_user("bob")
        response = self.call("GET", "/user")
        self.assertEqual(response.message, "Users retrieved successfully!")
        self.assertEqual([u["username"] for u in response.payload], ["alice", "bob"])
        response = self.call("GET", f"/user/{alice['id']}")
        self.assertEqual(response.message, "User retrieved successfully!")
        self.assertFalse(response.payload["isCurrentUser"])
        self.assertFails(self.call("GET", "/user/99"), 400, "Cannot retrieve User: User does not exist with ID 99.")

    def test_update_self(self):
        alice, session = self.logged_in("alice")
        response = self.call("PUT", f"/user/{alice['id']}", {"username": "alicia"}, session)
        self.assertEqual(response.message, "User updated successfully!")
        self.assertEqual(response.payload["username"], "alicia")
        self.assertIsNotNone(response.payload["editedAt"])

    def test_update_requires_login_then_self(self):
        alice = self.create_user("alice")
        _, bob_session = self.logged_in("bob")
        self.assertFails(
            self.call("PUT", f"/user/{alice['id']}", {"username": "x"}),
            401,
            "Cannot update User: You must be logged in.",
        )
        self.assertFails(
            self.call("PUT", f"/user/{alice['id']}", {"username": "x"}, bob_session),
            403,
            "Cannot update User: You cannot update a user other than yourself.",
        )

    def test_update_duplicate_username(self):
        self.create_user("bob")
        alice, session = self.logged_in("alice")
        self.assertFails(
            self.call("PUT", f"/user/{alice['id']}", {"username": "bob"}, session),
            400,
            "Cannot update User: Duplicate username.",
        )

    def test_delete_self(self):
        alice, session = self.logged_in("alice")
        response = self.call("DELETE", f"/user/{alice['id']}", session=session)
        self.assertEqual(response.message, "User deleted successfully!")
        self.assertFalse(session.exists(SESSION_USER_KEY))
        response = self.call("GET", f"/user/{alice['id']}")
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.message.startswith("User was deleted on "))

    def test_listings_are_private(self):
        alice, alice_session = self.logged_in("alice")
        _, bob_session = self.logged_in("bob")
        self.assertFails(
            self.call("GET", f"/user/{alice['id']}/postvotes"), 401, "Cannot get post votes: You must be logged in."
        )
        self.assertFails(
            self.call("GET", f"/user/{alice['id']}/postvotes", session=bob_session),
            403,
            "Cannot get post votes: You cannot view the post votes of a user other than yourself.",
        )
        response = self.call("GET", f"/user/{alice['id']}/postvotes", session=alice_session)
        self.assertEqual(response.message, "User's post votes were retrieved successfully!")
        self.assertEqual(response.payload, [])

    def test_listings_content(self):
        alice, session = self.logged_in("alice")
        category = self.create_category(session)
        post = self.create_post(session, category["id"])
        comment = self.create_comment(session, post["id"])
        self.call("GET", f"/post/{post['id']}/downvote", session=session)
        self.call("GET", f"/comment/{comment['id']}/upvote", session=session)
        self.call("GET", f"/comment/{comment['id']}/bookmark", session=session)
        expectations = {
            "postvotes": ("User's post votes were retrieved successfully!", post["id"]),
            "commentvotes": ("User's comment votes were retrieved successfully!", comment["id"]),
            "commentbookmarks": ("User's comment bookmarks were retrieved successfully!", comment["id"]),
            "posts": ("User's posts were retrieved successfully!", post["id"]),
            "comments": ("User's comments were retrieved successfully!", comment["id"]),
        }
        for sub_action, (message, entity_id) in expectations.items():
            with self.subTest(sub_action=sub_action):
                response = self.call("GET", f"/user/{alice['id']}/{sub_action}", session=session)
                self.assertEqual(response.message, message)
                self.assertEqual([entity["id"] for entity in response.payload], [entity_id])
        response = self.call("GET", f"/user/{alice['id']}/postvotes", session=session)
        self.assertEqual(response.payload[0]["state"], "Down")
        response = self.call("GET", f"/user/{alice['id']}/postbookmarks", session=session)
        self.assertEqual(response.payload, [])


class TestCategoryController(ForumTestCase):
    def test_create_requires_login(self):
        response = self.call("POST", "/category", {"title": "t", "description": "d"})
        self.assertFails(response, 401, "Cannot create Category: You must be logged in.")

    def test_create_list_show(self):
        _, session = self.logged_in("alice")
        category = self.create_category(session)
        post = self.create_post(session, category["id"])
        self.assertEqual(self.call("GET", "/category").message, "Categories retrieved successfully!")
        response = self.call("GET", f"/category/{category['id']}", session=session)
        self.assertEqual(response.message, "Category retrieved successfully!")
        self.assertEqual([p["id"] for p in response.payload["posts"]], [post["id"]])
        self.assertEqual(response.payload["posts"][0]["upvotes"], 0)

    def test_create_validation(self):
        _, session = self.logged_in("alice")
        self.assertFails(
            self.call("POST", "/category", {"description": "d"}, session), 400, "Cannot create Category: Missing title."
        )
        self.create_category(session, title="General")
        self.assertFails(
            self.call("POST", "/category", {"title": "General", "description": "d"}, session),
            400,
            "Cannot create Category: Duplicate title.",
        )

    def test_update_and_delete(self):
        _, session = self.logged_in("alice")
        category = self.create_category(session)
        response = self.call("PUT", f"/category/{category['id']}", {"description": "New"}, session)
        self.assertEqual(response.message, "Category updated successfully!")
        self.assertEqual(response.redirect_to, f"category/{category['id']}")
        response = self.call("DELETE", f"/category/{category['id']}", session=session)
        self.assertEqual(response.message, "Category deleted successfully!")
        self.assertFails(
            self.call("PUT", f"/category/{category['id']}", {"description": "Again"}, session),
            400,
            "Cannot update Category: You cannot update a category that has been deleted.",
        )

    def test_non_owner_is_forbidden_before_state_check(self):
        _, alice_session = self.logged_in("alice")
        _, bob_session = self.logged_in("bob")
        category = self.create_category(alice_session)
        self.call("DELETE", f"/category/{category['id']}", session=alice_session)
        self.assertFails(
            self.call("DELETE", f"/category/{category['id']}", session=bob_session),
            403,
            "Cannot delete Category: You cannot delete a category created by someone other than yourself.",
        )

    def test_edit_form(self):
        _, session = self.logged_in("alice")
        category = self.create_category(session)
        response = self.call("GET", f"/category/{category['id']}/edit", session=session)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.payload["title"], "General")

    def test_post_in_deleted_category(self):
        _, session = self.logged_in("alice")
        category = self.create_category(session)
        self.call("DELETE", f"/category/{category['id']}", session=session)
        body = {"categoryId": category["id"], "title": "t", "type": "Text", "content": "c"}
        self.assertFails(
            self.call("POST", "/post", body, session),
            400,
            "Cannot create Post: You cannot post in a category that has been deleted.",
        )


class TestPostController(ForumTestCase):
    def setUp(self):
        super().setUp()
        self.alice, self.alice_session = self.logged_in("alice")
        self.bob, self.bob_session = self.logged_in("bob")
        self.category = self.create_category(self.alice_session)
        self.post = self.create_post(self.alice_session, self.category["id"])

    def test_create(self):
        self.assertEqual(self.post["userId"], self.alice["id"])
        self.assertEqual(self.post["username"], "alice")
        self.assertEqual((self.post["upvotes"], self.post["downvotes"]), (0, 0))

    def test_create_unknown_category(self):
        body = {"categoryId": "42", "title": "t", "type": "Text", "content": "c"}
        self.assertFails(
            self.call("POST", "/post", body, self.alice_session),
            400,
            "Cannot create Post: Category does not exist with ID 42.",
        )

    def test_update_by_owner(self):
        response = self.call("PUT", f"/post/{self.post['id']}", {"content": "Edited"}, self.alice_session)
        self.assertEqual(response.message, "Post updated successfully!")
        self.assertEqual(response.payload["content"], "Edited")
        self.assertEqual(response.redirect_to, f"post/{self.post['id']}")

    def test_update_and_delete_by_non_owner(self):
        self.assertFails(
            self.call("PUT", f"/post/{self.post['id']}", {"content": "x"}, self.bob_session),
            403,
            "Cannot update Post: You cannot update a post created by someone other than yourself.",
        )
        self.assertFails(
            self.call("DELETE", f"/post/{self.post['id']}", session=self.bob_session),
            403,
            "Cannot delete Post: You cannot delete a post created by someone other than yourself.",
        )

    def test_update_rules(self):
        self.assertFails(
            self.call("PUT", f"/post/{self.post['id']}", {}, self.alice_session),
            400,
            "Cannot update Post: No update parameters were provided.",
        )
        url_post = self.create_post(self.alice_session, self.category["id"], "URL", "https://example.com")
        self.assertFails(
            self.call("PUT", f"/post/{url_post['id']}", {"content": "x"}, self.alice_session),
            400,
            "Cannot update Post: Only text posts are editable.",
        )
        self.assertFails(
            self.call("PUT", "/post/99", {"content": "x"}, self.alice_session),
            400,
            "Cannot update Post: Post does not exist with ID 99.",
        )

    def test_delete_then_update(self):
        response = self.call("DELETE", f"/post/{self.post['id']}", session=self.alice_session)
        self.assertEqual(response.message, "Post deleted successfully!")
        self.assertIsNotNone(response.payload["deletedAt"])
        self.assertFails(
            self.call("PUT", f"/post/{self.post['id']}", {"content": "x"}, self.alice_session),
            400,
            "Cannot update Post: You cannot update a post that has been deleted.",
        )

    def test_upvote_scenario(self):
        response = self.call("GET", f"/post/{self.post['id']}/upvote", session=self.bob_session)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.message, "Post was up voted successfully!")
        post = self.call("GET", f"/post/{self.post['id']}").payload
        self.assertEqual((post["upvotes"], post["downvotes"]), (1, 0))
        response = self.call("GET", f"/post/{self.post['id']}/upvote", session=self.bob_session)
        self.assertFails(response, 400, "Cannot up vote Post: Post has already been up voted.")

    def test_vote_flip_and_unvote(self):
        path = f"/post/{self.post['id']}"
        self.call("GET", f"{path}/upvote", session=self.bob_session)
        response = self.call("GET", f"{path}/downvote", session=self.bob_session)
        self.assertEqual(response.message, "Post was down voted successfully!")
        self.assertEqual(response.payload, {"state": "Down", "upvotes": 0, "downvotes": 1})
        response = self.call("GET", f"{path}/unvote", session=self.bob_session)
        self.assertEqual(response.message, "Post was unvoted successfully!")
        self.assertEqual(response.payload, {"state": None, "upvotes": 0, "downvotes": 0})
        self.assertFails(
            self.call("GET", f"{path}/unvote", session=self.bob_session),
            400,
            "Cannot unvote Post: Post must first be up or down voted.",
        )

    def test_vote_on_unknown_post(self):
        self.assertFails(
            self.call("GET", "/post/99/upvote", session=self.bob_session),
            400,
            "Cannot up vote Post: Post does not exist with ID 99.",
        )

    def test_bookmarks(self):
        path = f"/post/{self.post['id']}"
        response = self.call("GET", f"{path}/bookmark", session=self.bob_session)
        self.assertEqual(response.message, "Post was bookmarked successfully!")
        self.assertFails(
            self.call("GET", f"{path}/bookmark", session=self.bob_session),
            400,
            "Cannot bookmark Post: Post has already been bookmarked.",
        )
        self.assertTrue(self.call("GET", path, session=self.bob_session).payload["isBookmarked"])
        self.assertFalse(self.call("GET", path, session=self.alice_session).payload["isBookmarked"])
        response = self.call("GET", f"{path}/unbookmark", session=self.bob_session)
        self.assertEqual(response.message, "Post was unbookmarked successfully!")
        self.assertFails(
            self.call("GET", f"{path}/unbookmark", session=self.bob_session),
            400,
            "Cannot unbookmark Post: Post has not been bookmarked.",
        )

    def test_show_embeds_viewer_state_and_comments(self):
        self.call("GET", f"/post/{self.post['id']}/downvote", session=self.bob_session)
        comment = self.create_comment(self.bob_session, self.post["id"])
        response = self.call("GET", f"/post/{self.post['id']}", session=self.bob_session)
        self.assertEqual(response.message, "Post retrieved successfully!")
        self.assertEqual(response.payload["state"], "Down")
        self.assertEqual(response.payload["votes"], -1)
        self.assertFalse(response.payload["isUsersPost"])
        self.assertTrue(response.payload["canEdit"])
        self.assertEqual([c["id"] for c in response.payload["comments"]], [comment["id"]])
        self.assertIsNone(self.call("GET", f"/post/{self.post['id']}").payload["state"])

    def test_list(self):
        response = self.call("GET", "/post")
        self.assertEqual(response.message, "Posts retrieved successfully!")
        self.assertEqual(len(response.payload), 1)


class TestCommentController(ForumTestCase):
    def setUp(self):
        super().setUp()
        self.alice, self.alice_session = self.logged_in("alice")
        self.bob, self.bob_session = self.logged_in("bob")
        category = self.create_category(self.alice_session)
        self.post = self.create_post(self.alice_session, category["id"])

    def test_create_and_redirect(self):
        response = self.call("POST", "/comment", {"postId": self.post["id"], "content": "Hi"}, self.bob_session)
        self.assertEqual(response.message, "Comment created successfully!")
        self.assertEqual(response.redirect_to, f"post/{self.post['id']}")
        self.assertIsNone(response.payload["replyId"])

    def test_create_validation(self):
        self.assertFails(
            self.call("POST", "/comment", {"postId": self.post["id"]}, self.bob_session),
            400,
            "Cannot create Comment: Missing content.",
        )
        self.assertFails(
            self.call("POST", "/comment", {"postId": "99", "content": "Hi"}, self.bob_session),
            400,
            "Cannot create Comment: Post does not exist with ID 99.",
        )
        reply_to_unknown = {"postId": self.post["id"], "content": "Hi", "replyId": "99"}
        self.assertFails(
            self.call("POST", "/comment", reply_to_unknown, self.bob_session),
            400,
            "Cannot create Comment: Comment does not exist with ID 99.",
        )

    def test_show_collects_nested_replies(self):
        root = self.create_comment(self.bob_session, self.post["id"])
        child = self.create_comment(self.alice_session, self.post["id"], reply_id=root["id"])
        grandchild = self.create_comment(self.bob_session, self.post["id"], reply_id=child["id"])
        response = self.call("GET", f"/comment/{root['id']}")
        self.assertEqual(response.message, "Comment retrieved successfully!")
        self.assertEqual([r["id"] for r in response.payload["replies"]], [child["id"], grandchild["id"]])

    def test_collect_replies_is_cycle_safe(self):
        first = self.create_comment(self.bob_session, self.post["id"])
        second = self.create_comment(self.bob_session, self.post["id"], reply_id=first["id"])
        self.storage.comments.get(first["id"])["reply_id"] = second["id"]
        replies = collect_replies(self.storage.comments.get(first["id"]), self.storage)
        self.assertEqual([r["id"] for r in replies], [second["id"]])

    def test_update_and_delete(self):
        comment = self.create_comment(self.bob_session, self.post["id"])
        self.assertFails(
            self.call("PUT", f"/comment/{comment['id']}", {"content": "x"}, self.alice_session),
            403,
            "Cannot update Comment: You cannot update a comment created by someone other than yourself.",
        )
        response = self.call("PUT", f"/comment/{comment['id']}", {"content": "Edited"}, self.bob_session)
        self.assertEqual(response.message, "Comment updated successfully!")
        response = self.call("DELETE", f"/comment/{comment['id']}", session=self.bob_session)
        self.assertEqual(response.message, "Comment deleted successfully!")
        self.assertEqual(response.redirect_to, f"post/{self.post['id']}")

    def test_votes_and_bookmarks(self):
        comment = self.create_comment(self.bob_session, self.post["id"])
        path = f"/comment/{comment['id']}"
        self.assertEqual(
            self.call("GET", f"{path}/upvote", session=self.alice_session).message, "Comment was up voted successfully!"
        )
        self.assertFails(
            self.call("GET", f"{path}/upvote", session=self.alice_session),
            400,
            "Cannot up vote Comment: Comment has already been up voted.",
        )
        self.assertEqual(
            self.call("GET", f"{path}/bookmark", session=self.alice_session).message,
            "Comment was bookmarked successfully!",
        )
        payload = self.call("GET", path, session=self.alice_session).payload
        self.assertEqual((payload["upvotes"], payload["downvotes"], payload["isBookmarked"]), (1, 0, True))

    def test_vote_flip_unvote_and_unbookmark(self):
        comment = self.create_comment(self.bob_session, self.post["id"])
        path = f"/comment/{comment['id']}"
        self.call("GET", f"{path}/upvote", session=self.alice_session)
        response = self.call("GET", f"{path}/downvote", session=self.alice_session)
        self.assertEqual(response.message, "Comment was down voted successfully!")
        self.assertEqual(response.payload, {"state": "Down", "upvotes": 0, "downvotes": 1})
        self.assertFails(
            self.call("GET", f"{path}/downvote", session=self.alice_session),
            400,
            "Cannot down vote Comment: Comment has already been down voted.",
        )
        response = self.call("GET", f"{path}/unvote", session=self.alice_session)
        self.assertEqual(response.message, "Comment was unvoted successfully!")
        self.assertEqual(response.payload, {"state": None, "upvotes": 0, "downvotes": 0})
        self.assertFails(
            self.call("GET", f"{path}/unvote", session=self.alice_session),
            400,
            "Cannot unvote Comment: Comment must first be up or down voted.",
        )
        self.assertFails(
            self.call("GET", f"{path}/unbookmark", session=self.alice_session),
            400,
            "Cannot unbookmark Comment: Comment has not been bookmarked.",
        )
        self.call("GET", f"{path}/bookmark", session=self.alice_session)
        response = self.call("GET", f"{path}/unbookmark", session=self.alice_session)
        self.assertEqual(response.message, "Comment was unbookmarked successfully!")
        self.assertEqual(response.payload, {"isBookmarked": False})
        self.assertFalse(self.call("GET", path, session=self.alice_session).payload["isBookmarked"])


class TestAccessRules(ForumTestCase):
    """Login and ownership guards, checked the same way on every resource"""

    def setUp(self):
        super().setUp()
        self.alice, self.alice_session = self.logged_in("alice")
        self.bob, self.bob_session = self.logged_in("bob")
        self.category = self.create_category(self.alice_session)
        self.post = self.create_post(self.alice_session, self.category["id"])
        self.comment = self.create_comment(self.alice_session, self.post["id"])
        self.owned = [
            ("category", "Category", self.category["id"]),
            ("post", "Post", self.post["id"]),
            ("comment", "Comment", self.comment["id"]),
        ]

    def assertNothingDeleted(self):
        for table in (self.storage.categories, self.storage.posts, self.storage.comments):
            self.assertEqual([row["deleted_at"] for row in table.values()], [None])

    def test_unauthenticated_mutations(self):
        body = {"title": "x", "description": "x", "content": "x"}
        for resource, entity, entity_id in self.owned:
            cases = [
                ("POST", f"/{resource}", "create"),
                ("PUT", f"/{resource}/{entity_id}", "update"),
                ("DELETE", f"/{resource}/{entity_id}", "delete"),
                ("GET", f"/{resource}/{entity_id}/edit", "update"),
            ]
            if resource != "category":
                cases += [
                    ("GET", f"/{resource}/{entity_id}/upvote", "up vote"),
                    ("GET", f"/{resource}/{entity_id}/downvote", "down vote"),
                    ("GET", f"/{resource}/{entity_id}/unvote", "unvote"),
                    ("GET", f"/{resource}/{entity_id}/bookmark", "bookmark"),
                    ("GET", f"/{resource}/{entity_id}/unbookmark", "unbookmark"),
                ]
            for method, path, action in cases:
                with self.subTest(method=method, path=path):
                    self.assertFails(
                        self.call(method, path, body), 401, f"Cannot {action} {entity}: You must be logged in."
                    )
        self.assertNothingDeleted()
        self.assertEqual(len(self.storage.comments), 1)

    def test_non_owner_is_forbidden(self):
        body = {"title": "x", "description": "x", "content": "x"}
        for resource, entity, entity_id in self.owned:
            cases = [
                ("PUT", f"/{resource}/{entity_id}", "update"),
                ("DELETE", f"/{resource}/{entity_id}", "delete"),
                ("GET", f"/{resource}/{entity_id}/edit", "update"),
            ]
            for method, path, action in cases:
                with self.subTest(method=method, path=path):
                    self.assertFails(
                        self.call(method, path, body, self.bob_session),
                        403,
                        f"Cannot {action} {entity}: You cannot {action} a {resource} "
                        "created by someone other than yourself.",
                    )
        self.assertNothingDeleted()
        self.assertEqual(self.storage.comments.get(self.comment["id"])["content"], "Nice post")

    def test_user_delete_guards(self):
        path = f"/user/{self.alice['id']}"
        self.assertFails(self.call("DELETE", path), 401, "Cannot delete User: You must be logged in.")
        self.assertFails(
            self.call("DELETE", path, session=self.bob_session),
            403,
            "Cannot delete User: You cannot delete a user other than yourself.",
        )
        self.assertIsNone(self.storage.users.get(self.alice["id"])["deleted_at"])
        self.assertEqual(self.bob_session.get(SESSION_USER_KEY), self.bob["id"])


@patch("forum_server.log_structured")
class TestDemoData(TestCase):
    def test_populate(self, log_structured_mock):
        storage = ForumStorage(populate_demo=True)
        self.assertEqual(len(storage.users), 3)
        self.assertEqual(len(storage.categories), 2)
        self.assertEqual(len(storage.posts), 3)
        self.assertEqual(vote_counts(storage, EntityKind.POST, "1"), (2, 0))
        self.assertEqual(vote_counts(storage, EntityKind.COMMENT, "1"), (0, 1))


class TestForumHandler(TestCase):
    """Full HTTP round trips through the WSGI app"""

    def setUp(self):
        import httpx

        log_patcher = patch("forum_server.log_structured")
        log_patcher.start()
        self.addCleanup(log_patcher.stop)
        self.session_store = SessionStore(ttl=60, sweep_interval=60, max_sessions=100)
        self.app = ForumHandler(Router(self.session_store, ForumStorage(populate_demo=False)))
        transport = httpx.WSGITransport(app=self.app)
        self.client = httpx.Client(
            transport=transport, base_url="http://testserver", headers={"Accept": "application/json"}
        )
        self.addCleanup(self.client.close)

    def sign_up_and_log_in(self, username="alice"):
        email = f"{username}@example.com"
        self.client.post("/user", json={"username": username, "email": email, "password": "password123"})
        return self.client.post("/auth/login", json={"email": email, "password": "password123"})

    def test_homepage_envelope(self):
        response = self.client.get("/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["content-type"], "application/json")
        self.assertEqual(response.json(), {"statusCode": 200, "message": "Homepage!", "payload": {}})

    def test_session_cookie_is_issued_and_reused(self):
        first = self.client.get("/")
        set_cookie = first.headers["set-cookie"]
        self.assertTrue(set_cookie.startswith(f"{SESSION_COOKIE_NAME}="))
        self.assertIn("HttpOnly", set_cookie)
        session_id = first.cookies[SESSION_COOKIE_NAME]
        self.client.get("/")
        self.assertEqual(len(self.session_store), 1)
        self.assertIsNotNone(self.session_store.get(session_id))

    def test_login_flow_and_authorized_call(self):
        response = self.sign_up_and_log_in()
        self.assertEqual(response.json()["message"], "Logged in successfully!")
        response = self.client.post("/category", json={"title": "General", "description": "All the things"})
        self.assertEqual(response.json()["message"], "Category created successfully!")
        self.client.get("/auth/logout")
        response = self.client.post("/category", json={"title": "Other", "description": "More things"})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(
            response.json(),
            {"statusCode": 401, "message": "Cannot create Category: You must be logged in.", "payload": {}},
        )

    def test_remembered_email_prefills_login_form(self):
        self.assertEqual(self.client.get("/auth/login").json()["payload"], {"email": None})
        self.client.post("/user", json={"username": "alice", "email": "alice@example.com", "password": "pw"})
        self.client.post("/auth/login", json={"email": "alice@example.com", "password": "pw", "remember": "on"})
        response = self.client.get("/auth/login")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["payload"], {"email": "alice@example.com"})
        self.assertEqual(self.client.get("/auth/register").json()["statusCode"], 200)

    def test_error_status_codes(self):
        self.assertEqual(self.client.get("/nonexistent").status_code, 404)
        self.assertEqual(self.client.patch("/user").status_code, 405)

    def test_malformed_json_body(self):
        response = self.client.post("/user", content=b"{not json", headers={"Content-Type": "application/json"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["message"], "Invalid request body!")

    def test_html_rendering_and_redirect(self):
        self.client.post("/user", json={"username": "alice", "email": "alice@example.com", "password": "pw"})
        response = self.client.post(
            "/auth/login",
            data={"email": "alice@example.com", "password": "pw", "remember": "on"},
            headers={"Accept": "text/html"},
        )
        self.assertEqual(response.status_code, 303)
        self.assertEqual(response.headers["location"], "/user/1")
        self.assertIn("email", response.cookies)
        response = self.client.get("/nonexistent", headers={"Accept": "text/html"})
        self.assertEqual(response.status_code, 404)
        self.assertTrue(response.headers["content-type"].startswith("text/html"))
        self.assertIn("Invalid request path!", response.text)

    def test_form_method_tunnelling(self):
        self.sign_up_and_log_in()
        self.client.post("/category", json={"title": "General", "description": "All the things"})
        self.client.post("/post", json={"categoryId": 1, "title": "Hello", "type": "Text", "content": "First"})
        response = self.client.post("/post/1", data={"method": "PUT", "content": "Second"})
        self.assertEqual(response.json()["message"], "Post updated successfully!")
        response = self.client.post("/post/1", data={"method": "DELETE"})
        self.assertEqual(response.json()["message"], "Post deleted successfully!")
