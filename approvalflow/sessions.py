"""
Transcript collaborator: bounded, in-process conversation memory.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any

from approvalflow.config import settings
from approvalflow.conversation_state import ConversationState
from approvalflow.exceptions import AuthorizationError

logger = logging.getLogger(__name__)


@dataclass
class Session:
    session_id: str
    employee_id: str
    ts: float
    messages: list[dict[str, Any]] = field(default_factory=list)
    state: ConversationState = field(default_factory=ConversationState)


class SessionStore:
    """
    Sessions keyed by id, oldest first.

    Guarantees
    ----------
    - expired sessions (TTL) are dropped on every access
    - never more than ``max_sessions`` sessions in memory
    - a session belongs to the employee who opened it
    """

    def __init__(self, max_sessions: int | None = None, ttl_seconds: int | None = None):
        self.max_sessions = max_sessions or settings.max_sessions
        self.ttl_seconds = ttl_seconds or settings.session_ttl_seconds
        self.sessions: OrderedDict[str, Session] = OrderedDict()

    def _prune(self) -> None:
        now = time.time()
        expired = [sid for sid, s in self.sessions.items() if now - s.ts > self.ttl_seconds]
        for sid in expired:
            del self.sessions[sid]
        while len(self.sessions) > self.max_sessions:
            oldest, _ = self.sessions.popitem(last=False)
            logger.info(f"Evicted session {oldest} (capacity)")

    def open(self, session_id: str, employee_id: str) -> Session:
        self._prune()
        session = self.sessions.get(session_id)
        if session is None:
            session = Session(session_id=session_id, employee_id=employee_id, ts=time.time())
            self.sessions[session_id] = session
            self._prune()
        elif session.employee_id != employee_id:
            logger.warning(
                f"Session {session_id} belongs to {session.employee_id}, not {employee_id}"
            )
            raise AuthorizationError("This conversation belongs to another employee.")
        session.ts = time.time()
        self.sessions.move_to_end(session_id)
        return session

    def recent(self, session_id: str, limit: int | None = None) -> list[dict[str, str]]:
        """Last ``limit`` messages, role and content only."""
        session = self.sessions.get(session_id)
        if session is None:
            return []
        limit = settings.max_history if limit is None else limit
        window = session.messages[-limit:] if limit > 0 else []
        return [{"role": m["role"], "content": m["content"]} for m in window]

    def append_turn(
        self, session_id: str, user_message: str, answer: str, tool_invocations: list[dict]
    ) -> None:
        session = self.sessions.get(session_id)
        if session is None:
            return
        session.messages.append({"role": "user", "content": user_message})
        session.messages.append(
            {"role": "assistant", "content": answer, "tool_invocations": tool_invocations}
        )
        session.ts = time.time()

    def history(self, session_id: str) -> list[dict[str, Any]]:
        session = self.sessions.get(session_id)
        return list(session.messages) if session else []

    def reset(self, session_id: str) -> bool:
        if self.sessions.pop(session_id, None) is not None:
            logger.info(f"Conversation reset for session {session_id}")
            return True
        return False

    def __len__(self) -> int:
        return len(self.sessions)
