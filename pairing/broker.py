"""
Session / Pairing Broker.

============================================================
PURPOSE
============================================================
Ephemeral pairing codes that bootstrap a one-off channel without
a persisted connection.

- Codes: 8 characters over a 31-character alphabet without the
  easily confused 0/O and 1/I/L
- Sessions live in process memory only
- A session is bound to its owner's lifetime: an asyncio.Task
  owner removes it when the task finishes, any other owner when
  it is garbage collected
- A code moves pending -> connected exactly once

============================================================
"""

import asyncio
import logging
import secrets
import threading
import weakref
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from core.clock import ClockProtocol, SystemClock
from core.exceptions import (
    InvalidSessionCodeError,
    PolicyDeniedError,
    SessionAlreadyUsedError,
    SyncException,
    ValidationError,
)


logger = logging.getLogger(__name__)


CODE_ALPHABET = "23456789ABCDEFGHJKMNPQRSTUVWXYZ"
CODE_LENGTH = 8
CREATE_ATTEMPTS = 10


# ============================================================
# TYPES
# ============================================================

class SessionDirection(str, Enum):
    SEND = "send"
    RECEIVE = "receive"


class SessionStatus(str, Enum):
    PENDING = "pending"
    CONNECTED = "connected"


@dataclass
class Session:
    """One pairing session."""

    code: str
    """Human-typable pairing code."""

    direction: SessionDirection
    """What the owner intends to do with the data."""

    status: SessionStatus = SessionStatus.PENDING
    created_at: Optional[datetime] = None
    connected_at: Optional[datetime] = None

    sender_info: Dict[str, Any] = field(default_factory=dict)
    """Opaque descriptor of the sending side."""

    receiver_info: Dict[str, Any] = field(default_factory=dict)
    """Opaque descriptor of the receiving side."""

    _owner_ref: Optional[Callable[[], Any]] = field(default=None, repr=False, compare=False)

    @property
    def owner(self) -> Any:
        return self._owner_ref() if self._owner_ref is not None else None

    @property
    def has_owner(self) -> bool:
        return self._owner_ref is not None

    @property
    def owner_alive(self) -> bool:
        """Owner-less sessions count as alive until swept by age."""
        if self._owner_ref is None:
            return True
        owner = self._owner_ref()
        if owner is None:
            return False
        if isinstance(owner, asyncio.Future):
            return not owner.done()
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "direction": self.direction.value,
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "sender_info": dict(self.sender_info),
            "receiver_info": dict(self.receiver_info),
        }


def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: Any) -> str:
    """Upper-case and strip what a human typed."""
    if not isinstance(code, str):
        return ""
    return code.strip().upper()


# ============================================================
# BROKER
# ============================================================

class SessionBroker:
    """
    In-memory registry of pairing sessions keyed by code.

    Usage:
        broker = SessionBroker()
        session = broker.create_session("receive", owner=asyncio.current_task())
        ...
        session = broker.validate_code(typed_code)
    """

    def __init__(self, clock: Optional[ClockProtocol] = None):
        self._clock = clock or SystemClock()
        self._sessions: Dict[str, Session] = {}
        # Re-entrant: finalize callbacks can fire during GC while the lock is held
        self._lock = threading.RLock()

    # ---------------------------------------------------------
    # CREATE
    # ---------------------------------------------------------

    def create_session(
        self,
        direction: Any,
        owner: Any = None,
        sender_info: Optional[Dict[str, Any]] = None,
        receiver_info: Optional[Dict[str, Any]] = None,
    ) -> Session:
        """
        Create a session bound to ``owner``'s lifetime.

        Raises:
            ValidationError: unknown direction or an owner that cannot
                be weakly referenced
        """
        try:
            direction = SessionDirection(direction)
        except ValueError as e:
            raise ValidationError(
                f"Unknown session direction: {direction!r}",
                errors={"direction": "invalid"},
            ) from e

        owner_ref = None
        if owner is not None:
            try:
                owner_ref = weakref.ref(owner)
            except TypeError as e:
                raise ValidationError(
                    "Session owner must support weak references",
                    errors={"owner": "invalid"},
                ) from e

        for _ in range(CREATE_ATTEMPTS):
            session = Session(
                code=generate_code(),
                direction=direction,
                created_at=self._clock.now(),
                sender_info=dict(sender_info or {}),
                receiver_info=dict(receiver_info or {}),
                _owner_ref=owner_ref,
            )
            with self._lock:
                if session.code in self._sessions:
                    continue
                self._sessions[session.code] = session
            break
        else:
            raise SyncException("Could not allocate a unique session code", reason="already_exists")

        if owner is not None:
            self._bind_owner(session.code, owner)

        logger.info(f"Pairing session {session.code} created ({direction.value})")
        return replace(session)

    def _bind_owner(self, code: str, owner: Any) -> None:
        if isinstance(owner, asyncio.Future):
            owner.add_done_callback(lambda _fut: self._owner_gone(code))
        else:
            weakref.finalize(owner, self._owner_gone, code)

    def _owner_gone(self, code: str) -> None:
        with self._lock:
            removed = self._sessions.pop(code, None)
        if removed is not None:
            logger.info(f"Pairing session {code} removed: owner finished")

    # ---------------------------------------------------------
    # LOOKUP / VALIDATE
    # ---------------------------------------------------------

    def _live(self, code: str) -> Session:
        """Caller holds the lock."""
        session = self._sessions.get(code)
        if session is None:
            raise InvalidSessionCodeError(f"Invalid session code: {code}")
        if not session.owner_alive:
            self._sessions.pop(code, None)
            raise InvalidSessionCodeError(f"Invalid session code: {code}")
        return session

    def get_session(self, code: str) -> Session:
        code = normalize_code(code)
        with self._lock:
            return replace(self._live(code))

    def validate_code(self, code: str) -> Session:
        """
        Consume a pairing code.

        Raises:
            InvalidSessionCodeError: unknown code or owner gone
            SessionAlreadyUsedError: code already connected
        """
        code = normalize_code(code)
        with self._lock:
            session = self._live(code)
            if session.status is SessionStatus.CONNECTED:
                logger.warning(f"Pairing session {code} reused")
                raise SessionAlreadyUsedError(code)
            session.status = SessionStatus.CONNECTED
            session.connected_at = self._clock.now()
            result = replace(session)

        logger.info(f"Pairing session {code} connected")
        return result

    # ---------------------------------------------------------
    # MUTATE
    # ---------------------------------------------------------

    def update_session(self, code: str, owner: Any = None, **changes: Any) -> Session:
        """
        Update sender_info / receiver_info / status.

        When ``owner`` is given it must be the session's owner.
        """
        allowed = {"sender_info", "receiver_info", "status"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(
                f"Cannot update session fields: {sorted(unknown)}",
                errors={k: "not_updatable" for k in unknown},
            )

        code = normalize_code(code)
        with self._lock:
            session = self._live(code)
            if owner is not None and session.owner is not owner:
                raise PolicyDeniedError("not_owner")
            for key, value in changes.items():
                if key == "status":
                    value = SessionStatus(value)
                setattr(session, key, value)
            return replace(session)

    def delete_session(self, code: str) -> bool:
        code = normalize_code(code)
        with self._lock:
            removed = self._sessions.pop(code, None)
        if removed is not None:
            logger.info(f"Pairing session {code} deleted")
        return removed is not None

    # ---------------------------------------------------------
    # LISTING / CLEANUP
    # ---------------------------------------------------------

    def list_active(self) -> List[Session]:
        with self._lock:
            return [replace(s) for s in list(self._sessions.values()) if s.owner_alive]

    def count_active(self) -> int:
        return len(self.list_active())

    def cleanup_orphaned(self, max_age_hours: float = 24) -> int:
        """
        Drop sessions whose owner is gone, and owner-less sessions
        older than ``max_age_hours``.
        """
        cutoff = self._clock.now() - timedelta(hours=max_age_hours)
        with self._lock:
            stale = [
                code for code, s in list(self._sessions.items())
                if not s.owner_alive or (not s.has_owner and s.created_at < cutoff)
            ]
            for code in stale:
                self._sessions.pop(code, None)

        if stale:
            logger.info(f"Removed {len(stale)} orphaned pairing sessions")
        return len(stale)
