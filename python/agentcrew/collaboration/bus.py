"""Peer-to-peer and broadcast messaging between workers.

Messages between two participants about one task share a session,
created lazily on the first message.  Delivering a message runs the
addressee's capability on a context block; when the sender asked for a
response, the addressee's output comes back as an ``answer`` after a
short delay, linked to the question through ``parent_message_id``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel, Field

from agentcrew.event_bus import QueueEventBus
from agentcrew.exceptions_unified import (
    AgentCommunicationError,
    MessageNotFoundError,
    SessionNotFoundError,
    WorkerNotFoundError,
)
from agentcrew.interfaces.event_bus import CollaborationEvent, CollaborationEventType
from agentcrew.interfaces.worker import ChatMessage
from agentcrew.orchestration.models import now_ms
from agentcrew.workers.pool import WorkerPool

if TYPE_CHECKING:
    from agentcrew.config.settings import Settings

logger = logging.getLogger(__name__)

MASTER_ID = "master"


class MessageType(str, Enum):
    QUESTION = "question"
    ANSWER = "answer"
    SUGGESTION = "suggestion"
    NOTIFICATION = "notification"
    HANDOFF = "handoff"
    CLARIFICATION = "clarification"
    ESCALATION = "escalation"


class Urgency(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CLOSED = "closed"


_MESSAGE_LABELS = {
    MessageType.QUESTION: "Question",
    MessageType.ANSWER: "Answer",
    MessageType.SUGGESTION: "Suggestion",
    MessageType.NOTIFICATION: "Notification",
    MessageType.HANDOFF: "Handoff",
    MessageType.CLARIFICATION: "Clarification",
    MessageType.ESCALATION: "Escalation",
}

_URGENCY_ORDER = {Urgency.HIGH: 0, Urgency.MEDIUM: 1, Urgency.LOW: 2}


@dataclass(frozen=True)
class CollaborationMessage:
    """Message exchanged between workers; immutable once sent."""
    id: str
    type: MessageType
    from_id: str
    to_id: str
    content: str
    session_id: str
    task_id: Optional[str] = None
    subtask_id: Optional[str] = None
    parent_message_id: Optional[str] = None
    urgency: Urgency = Urgency.MEDIUM
    requires_response: bool = False
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dictionary"""
        return {
            "id": self.id,
            "type": self.type.value,
            "from_id": self.from_id,
            "to_id": self.to_id,
            "content": self.content,
            "session_id": self.session_id,
            "task_id": self.task_id,
            "subtask_id": self.subtask_id,
            "parent_message_id": self.parent_message_id,
            "urgency": self.urgency.value,
            "requires_response": self.requires_response,
            "timestamp": self.timestamp,
        }


@dataclass
class CollaborationSession:
    id: str
    participant_ids: List[str]
    task_id: Optional[str] = None
    topic: str = ""
    messages: List[CollaborationMessage] = field(default_factory=list)
    status: SessionStatus = SessionStatus.ACTIVE
    start_time: int = field(default_factory=now_ms)
    last_activity: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "participant_ids": list(self.participant_ids),
            "topic": self.topic,
            "message_count": len(self.messages),
            "status": self.status.value,
            "start_time": self.start_time,
            "last_activity": self.last_activity,
        }


@dataclass(frozen=True)
class ConversationRecord:
    """Archived snapshot of a closed session."""
    session_id: str
    task_id: Optional[str]
    messages: Tuple[CollaborationMessage, ...]
    summary: str
    saved_at: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class BroadcastResult:
    sent: Tuple[CollaborationMessage, ...]
    failures: Dict[str, str]


class CollaborationRequest(BaseModel):
    """Inbound request to send one message."""

    from_id: str = Field(min_length=1)
    to_id: str = Field(min_length=1)
    type: MessageType = MessageType.QUESTION
    content: str = Field(min_length=1)
    task_id: Optional[str] = None
    subtask_id: Optional[str] = None
    require_response: bool = False
    urgency: Urgency = Urgency.MEDIUM


@dataclass
class CollaborationConfig:
    auto_reply_delay: float = 1.0
    session_purge_delay: float = 60.0
    stale_session_after: float = 300.0

    @classmethod
    def from_settings(cls, settings: "Settings") -> "CollaborationConfig":
        return cls(
            auto_reply_delay=settings.auto_reply_delay_s,
            session_purge_delay=settings.session_purge_delay_s,
            stale_session_after=settings.stale_session_s,
        )


class CollaborationBus:
    """Session-based messaging over the worker pool."""

    def __init__(
        self,
        pool: WorkerPool,
        event_bus: Optional[QueueEventBus] = None,
        config: Optional[CollaborationConfig] = None,
    ) -> None:
        self._pool = pool
        self._bus = event_bus
        self.config = config or CollaborationConfig()
        self._sessions: Dict[str, CollaborationSession] = {}
        self._worker_sessions: Dict[str, Set[str]] = {}
        self._messages: Dict[str, CollaborationMessage] = {}
        self._records: List[ConversationRecord] = []
        self._background: Set[asyncio.Task] = set()
        self._purge_handles: Dict[str, asyncio.TimerHandle] = {}

    # ── Sending ──────────────────────────────────────────────────────

    async def send(
        self,
        from_id: str,
        to_id: str,
        type: MessageType,
        content: str,
        task_id: Optional[str] = None,
        subtask_id: Optional[str] = None,
        require_response: bool = False,
        urgency: Urgency = Urgency.MEDIUM,
        parent_message_id: Optional[str] = None,
    ) -> CollaborationMessage:
        """Record a message in the pair's session and deliver it.

        Raises:
            WorkerNotFoundError: either party is unknown.
            AgentCommunicationError: the addressee's capability failed.
        """
        self._check_participant(from_id)
        self._check_participant(to_id)

        session = self._find_or_create_session(from_id, to_id, task_id)
        message = CollaborationMessage(
            id=f"msg-{uuid.uuid4().hex[:12]}",
            type=MessageType(type),
            from_id=from_id,
            to_id=to_id,
            content=content,
            session_id=session.id,
            task_id=task_id,
            subtask_id=subtask_id,
            parent_message_id=parent_message_id,
            urgency=Urgency(urgency),
            requires_response=require_response,
        )
        session.messages.append(message)
        session.last_activity = message.timestamp
        self._messages[message.id] = message
        self._emit(CollaborationEventType.MESSAGE_SENT, session, message)

        response = await self._deliver(message)
        self._emit(CollaborationEventType.MESSAGE_RECEIVED, session, message)

        if require_response and response and response.strip():
            self._spawn(self._auto_reply(message, response.strip()))
        return message

    async def reply(
        self,
        original_message_id: str,
        content: str,
        type: MessageType = MessageType.ANSWER,
    ) -> CollaborationMessage:
        original = self._messages.get(original_message_id)
        if original is None:
            raise MessageNotFoundError(f"Message {original_message_id!r} not found")
        return await self.send(
            original.to_id,
            original.from_id,
            type,
            content,
            task_id=original.task_id,
            subtask_id=original.subtask_id,
            parent_message_id=original.id,
        )

    async def broadcast(
        self,
        from_id: str,
        to_ids: Iterable[str],
        content: str,
        type: MessageType = MessageType.NOTIFICATION,
        task_id: Optional[str] = None,
        urgency: Urgency = Urgency.MEDIUM,
    ) -> BroadcastResult:
        """Send to every recipient except the sender; failures are collected."""
        sent: List[CollaborationMessage] = []
        failures: Dict[str, str] = {}
        for to_id in to_ids:
            if to_id == from_id:
                continue
            try:
                sent.append(await self.send(from_id, to_id, type, content, task_id=task_id, urgency=urgency))
            except (WorkerNotFoundError, AgentCommunicationError) as exc:
                logger.warning("Broadcast to %s failed: %s", to_id, exc)
                failures[to_id] = str(exc)
        return BroadcastResult(sent=tuple(sent), failures=failures)

    async def _deliver(self, message: CollaborationMessage) -> Optional[str]:
        worker = self._pool.get(message.to_id)
        if worker is None or worker.capability is None:
            return None
        try:
            return await worker.capability.chat([
                ChatMessage("system", f"You are {worker.name}, a {worker.role}, collaborating with your team."),
                ChatMessage("user", self._context_block(message)),
            ])
        except Exception as exc:
            raise AgentCommunicationError(
                f"Delivery to {message.to_id} failed: {exc}",
                details={"message_id": message.id},
            ) from exc

    def _context_block(self, message: CollaborationMessage) -> str:
        sender = self._display_name(message.from_id)
        receiver = self._display_name(message.to_id)
        sent_at = datetime.fromtimestamp(message.timestamp / 1000, tz=timezone.utc).isoformat()
        lines = [
            f"[Collaboration {_MESSAGE_LABELS[message.type]}]",
            f"From: {sender}",
            f"To: {receiver}",
            f"Time: {sent_at}",
        ]
        if message.task_id:
            lines.append(f"Task: {message.task_id}")
        if message.subtask_id:
            lines.append(f"Sub-task: {message.subtask_id}")
        lines += ["", message.content, ""]
        if message.requires_response:
            lines.append("This message needs a response.")
        if message.urgency == Urgency.HIGH:
            lines.append("Urgent: handle this first.")
        return "\n".join(lines).rstrip()

    async def _auto_reply(self, question: CollaborationMessage, content: str) -> None:
        await asyncio.sleep(self.config.auto_reply_delay)
        try:
            await self.send(
                question.to_id,
                question.from_id,
                MessageType.ANSWER,
                content,
                task_id=question.task_id,
                subtask_id=question.subtask_id,
                parent_message_id=question.id,
            )
        except (WorkerNotFoundError, AgentCommunicationError) as exc:
            logger.warning("Automatic reply to %s failed: %s", question.id, exc)

    # ── Sessions ─────────────────────────────────────────────────────

    def create_session(
        self,
        participant_ids: List[str],
        task_id: Optional[str] = None,
        topic: str = "",
    ) -> CollaborationSession:
        session = CollaborationSession(
            id=f"session-{uuid.uuid4().hex[:12]}",
            participant_ids=list(dict.fromkeys(participant_ids)),
            task_id=task_id,
            topic=topic,
        )
        self._sessions[session.id] = session
        for pid in session.participant_ids:
            self._worker_sessions.setdefault(pid, set()).add(session.id)
        self._emit(CollaborationEventType.SESSION_CREATED, session)
        return session

    def close_session(self, session_id: str, save_record: bool = True) -> Optional[ConversationRecord]:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id!r} not found")
        if session.status == SessionStatus.CLOSED:
            return None

        session.status = SessionStatus.CLOSED
        for pid in session.participant_ids:
            self._worker_sessions.get(pid, set()).discard(session_id)

        record = None
        if save_record:
            record = ConversationRecord(
                session_id=session.id,
                task_id=session.task_id,
                messages=tuple(session.messages),
                summary=self._summarize(session),
            )
            self._records.append(record)

        self._schedule_purge(session_id)
        self._emit(CollaborationEventType.SESSION_CLOSED, session)
        return record

    def _find_or_create_session(self, a: str, b: str, task_id: Optional[str]) -> CollaborationSession:
        for session in self._sessions.values():
            if (
                session.status == SessionStatus.ACTIVE
                and session.task_id == task_id
                and a in session.participant_ids
                and b in session.participant_ids
            ):
                return session
        return self.create_session([a, b], task_id=task_id)

    def _summarize(self, session: CollaborationSession) -> str:
        names = ", ".join(self._display_name(pid) for pid in session.participant_ids)
        types = ", ".join(sorted({m.type.value for m in session.messages})) or "none"
        duration = round((session.last_activity - session.start_time) / 1000)
        return f"{names} exchanged {len(session.messages)} messages ({types}) over {duration}s"

    def _schedule_purge(self, session_id: str) -> None:
        loop = asyncio.get_running_loop()
        self._purge_handles[session_id] = loop.call_later(
            self.config.session_purge_delay, self._purge, session_id,
        )

    def _purge(self, session_id: str) -> None:
        self._purge_handles.pop(session_id, None)
        self._sessions.pop(session_id, None)

    # ── Queries ──────────────────────────────────────────────────────

    def get_session(self, session_id: str) -> Optional[CollaborationSession]:
        return self._sessions.get(session_id)

    def get_task_sessions(self, task_id: str) -> List[CollaborationSession]:
        return [s for s in self._sessions.values() if s.task_id == task_id]

    def get_worker_sessions(self, worker_id: str) -> List[CollaborationSession]:
        return [self._sessions[sid] for sid in self._worker_sessions.get(worker_id, set()) if sid in self._sessions]

    def get_session_messages(self, session_id: str, limit: Optional[int] = None) -> List[CollaborationMessage]:
        session = self._sessions.get(session_id)
        if session is None:
            return []
        return session.messages[-limit:] if limit else list(session.messages)

    def get_conversation_history(self, a: str, b: str, limit: int = 50) -> List[CollaborationMessage]:
        history = [
            m for m in self._messages.values()
            if {m.from_id, m.to_id} == {a, b}
        ]
        history.sort(key=lambda m: m.timestamp)
        return history[-limit:]

    def has_reply(self, message_id: str) -> bool:
        return any(m.parent_message_id == message_id for m in self._messages.values())

    def get_pending_responses(self, worker_id: Optional[str] = None) -> List[CollaborationMessage]:
        """Messages that asked for a response and have none yet, urgent first."""
        replied = {m.parent_message_id for m in self._messages.values() if m.parent_message_id}
        pending = [
            m for m in self._messages.values()
            if m.requires_response
            and m.id not in replied
            and (worker_id is None or m.to_id == worker_id)
        ]
        pending.sort(key=lambda m: (_URGENCY_ORDER[m.urgency], m.timestamp))
        return pending

    def get_overview(self) -> Dict[str, Any]:
        activity: Dict[str, Dict[str, Any]] = {}
        for message in self._messages.values():
            stats = activity.setdefault(message.from_id, {"messages_sent": 0, "last_activity": 0})
            stats["messages_sent"] += 1
            stats["last_activity"] = max(stats["last_activity"], message.timestamp)
        return {
            "active_sessions": sum(1 for s in self._sessions.values() if s.status == SessionStatus.ACTIVE),
            "total_sessions": len(self._sessions),
            "total_messages": len(self._messages),
            "pending_responses": len(self.get_pending_responses()),
            "archived_records": len(self._records),
            "worker_activity": activity,
        }

    def get_attention_required(self) -> Dict[str, Any]:
        stale_before = now_ms() - int(self.config.stale_session_after * 1000)
        return {
            "urgent_unanswered": [
                m for m in self.get_pending_responses() if m.urgency == Urgency.HIGH
            ],
            "stale_sessions": [
                s for s in self._sessions.values()
                if s.status == SessionStatus.ACTIVE and s.last_activity < stale_before
            ],
        }

    def get_records(self, task_id: Optional[str] = None) -> List[ConversationRecord]:
        if task_id is None:
            return list(self._records)
        return [r for r in self._records if r.task_id == task_id]

    async def shutdown(self) -> None:
        for handle in self._purge_handles.values():
            handle.cancel()
        self._purge_handles.clear()
        pending = list(self._background)
        for job in pending:
            job.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def wait_idle(self) -> None:
        """Wait for scheduled automatic replies to be sent."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ── Internals ────────────────────────────────────────────────────

    def _check_participant(self, worker_id: str) -> None:
        if worker_id != MASTER_ID and worker_id not in self._pool:
            raise WorkerNotFoundError(f"Worker {worker_id!r} not found", details={"worker_id": worker_id})

    def _display_name(self, worker_id: str) -> str:
        if worker_id == MASTER_ID:
            return "Master"
        worker = self._pool.get(worker_id)
        return worker.name if worker is not None else worker_id

    def _spawn(self, coro) -> asyncio.Task:
        job = asyncio.create_task(coro)
        self._background.add(job)
        job.add_done_callback(self._background.discard)
        return job

    def _emit(
        self,
        event_type: CollaborationEventType,
        session: CollaborationSession,
        message: Optional[CollaborationMessage] = None,
    ) -> None:
        if self._bus is None:
            return
        self._bus.publish(CollaborationEvent(
            type=event_type,
            session_id=session.id,
            task_id=session.task_id,
            message_id=message.id if message else None,
            message_type=message.type.value if message else None,
            from_id=message.from_id if message else None,
            to_id=message.to_id if message else None,
        ))
