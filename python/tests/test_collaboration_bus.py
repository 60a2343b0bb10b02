"""Tests for agentcrew.collaboration.bus."""

import asyncio

import pytest

from agentcrew.collaboration.bus import (
    MASTER_ID,
    CollaborationBus,
    CollaborationConfig,
    MessageType,
    SessionStatus,
    Urgency,
)
from agentcrew.event_bus import QueueEventBus
from agentcrew.exceptions_unified import (
    AgentCommunicationError,
    MessageNotFoundError,
    SessionNotFoundError,
    WorkerNotFoundError,
)
from agentcrew.interfaces.event_bus import CollaborationEventType, EventFamily
from agentcrew.workers.pool import WorkerPool

from conftest import ScriptedWorker


@pytest.fixture
def crew():
    """Bus over three workers: alice, bob and a broken carol."""
    pool = WorkerPool()
    alice = ScriptedWorker(chat_reply="Thanks!")
    bob = ScriptedWorker(chat_reply="Use a B-tree index.")
    carol = ScriptedWorker(chat_error=ConnectionError("offline"))
    pool.add("Alice", role="backend developer", capability=alice, worker_id="alice")
    pool.add("Bob", role="database expert", capability=bob, worker_id="bob")
    pool.add("Carol", role="designer", capability=carol, worker_id="carol")
    bus = QueueEventBus()
    events = bus.subscribe([EventFamily.COLLABORATION])
    collab = CollaborationBus(pool, bus, CollaborationConfig(auto_reply_delay=0.01, session_purge_delay=0.02))
    return collab, {"alice": alice, "bob": bob, "carol": carol}, events


# ========================================================================
# SENDING
# ========================================================================


class TestSend:
    """Sessions and delivery."""

    async def test_session_created_lazily_and_reused(self, crew):
        collab, _, events = crew
        first = await collab.send("alice", "bob", MessageType.QUESTION, "Index?", task_id="t1")
        second = await collab.send("bob", "alice", MessageType.SUGGESTION, "Also cache", task_id="t1")
        other = await collab.send("alice", "bob", MessageType.NOTIFICATION, "FYI", task_id="t2")

        assert first.session_id == second.session_id
        assert other.session_id != first.session_id
        assert len(collab.get_session_messages(first.session_id)) == 2
        types = [e.type for e in events.drain()]
        assert types.count(CollaborationEventType.SESSION_CREATED) == 2
        assert types.count(CollaborationEventType.MESSAGE_SENT) == 3

    async def test_delivery_runs_addressee_capability(self, crew):
        collab, workers, _ = crew
        await collab.send(
            "alice", "bob", MessageType.QUESTION, "Which index?",
            task_id="t1", subtask_id="s2", urgency=Urgency.HIGH,
        )
        prompt = workers["bob"].chat_calls[0][-1].content
        assert prompt.startswith("[Collaboration Question]")
        assert "From: Alice" in prompt
        assert "To: Bob" in prompt
        assert "Sub-task: s2" in prompt
        assert "Which index?" in prompt
        assert "Urgent" in prompt

    async def test_auto_reply_links_parent(self, crew):
        collab, _, _ = crew
        question = await collab.send("alice", "bob", MessageType.QUESTION, "Index?", require_response=True)
        assert collab.get_pending_responses("bob") == [question]

        await collab.wait_idle()
        history = collab.get_conversation_history("alice", "bob")
        answer = history[-1]
        assert answer.type == MessageType.ANSWER
        assert answer.from_id == "bob"
        assert answer.parent_message_id == question.id
        assert answer.content == "Use a B-tree index."
        assert collab.has_reply(question.id)
        assert collab.get_pending_responses() == []

    async def test_manual_reply(self, crew):
        collab, _, _ = crew
        question = await collab.send("alice", "bob", MessageType.QUESTION, "Ping?")
        answer = await collab.reply(question.id, "Pong")
        assert answer.parent_message_id == question.id
        assert (answer.from_id, answer.to_id) == ("bob", "alice")
        with pytest.raises(MessageNotFoundError):
            await collab.reply("msg-missing", "?")

    async def test_unknown_participant(self, crew):
        collab, _, _ = crew
        with pytest.raises(WorkerNotFoundError):
            await collab.send("alice", "zed", MessageType.QUESTION, "?")

    async def test_delivery_failure(self, crew):
        collab, _, _ = crew
        with pytest.raises(AgentCommunicationError, match="offline"):
            await collab.send("alice", "carol", MessageType.QUESTION, "Colours?")

    async def test_master_can_send(self, crew):
        collab, workers, _ = crew
        message = await collab.send(MASTER_ID, "alice", MessageType.NOTIFICATION, "Heads up")
        assert message.from_id == MASTER_ID
        assert "From: Master" in workers["alice"].chat_calls[0][-1].content


# ========================================================================
# BROADCAST
# ========================================================================


class TestBroadcast:
    """Fan-out with failure collection."""

    async def test_broadcast_skips_sender_and_collects_failures(self, crew):
        collab, _, _ = crew
        result = await collab.broadcast("alice", ["alice", "bob", "carol", "ghost"], "Standup in 5")
        assert [m.to_id for m in result.sent] == ["bob"]
        assert set(result.failures) == {"carol", "ghost"}


# ========================================================================
# SESSIONS
# ========================================================================


class TestSessions:
    """Closing, archiving and purging."""

    async def test_close_archives_and_purges(self, crew):
        collab, _, _ = crew
        message = await collab.send("alice", "bob", MessageType.QUESTION, "Index?", task_id="t1")
        record = collab.close_session(message.session_id)

        assert record.session_id == message.session_id
        assert len(record.messages) == 1
        assert "Alice, Bob exchanged 1 messages" in record.summary
        assert collab.get_session(message.session_id).status == SessionStatus.CLOSED
        assert collab.get_records("t1") == [record]
        assert collab.close_session(message.session_id) is None

        await asyncio.sleep(0.05)
        assert collab.get_session(message.session_id) is None

    async def test_new_session_after_close(self, crew):
        collab, _, _ = crew
        first = await collab.send("alice", "bob", MessageType.QUESTION, "A?")
        collab.close_session(first.session_id, save_record=False)
        second = await collab.send("alice", "bob", MessageType.QUESTION, "B?")
        assert second.session_id != first.session_id
        assert collab.get_records() == []

    def test_close_unknown(self, crew):
        collab, _, _ = crew
        with pytest.raises(SessionNotFoundError):
            collab.close_session("session-missing")

    async def test_explicit_session_and_worker_index(self, crew):
        collab, _, _ = crew
        session = collab.create_session(["alice", "bob", "alice"], task_id="t9", topic="schema")
        assert session.participant_ids == ["alice", "bob"]
        assert collab.get_worker_sessions("bob") == [session]
        assert collab.get_task_sessions("t9") == [session]


# ========================================================================
# OVERVIEW
# ========================================================================


class TestOverview:
    """Aggregate views."""

    async def test_overview_counts(self, crew):
        collab, _, _ = crew
        await collab.send("alice", "bob", MessageType.QUESTION, "A?")
        await collab.send("alice", "bob", MessageType.QUESTION, "B?")
        overview = collab.get_overview()
        assert overview["active_sessions"] == 1
        assert overview["total_messages"] == 2
        assert overview["worker_activity"]["alice"]["messages_sent"] == 2

    async def test_attention_required(self, crew):
        collab, workers, _ = crew
        collab.config.stale_session_after = 0.0
        workers["bob"].chat_reply = ""
        urgent = await collab.send(
            "alice", "bob", MessageType.QUESTION, "Now!", require_response=True, urgency=Urgency.HIGH,
        )
        await asyncio.sleep(0.01)
        attention = collab.get_attention_required()
        assert attention["urgent_unanswered"] == [urgent]
        assert len(attention["stale_sessions"]) == 1

    async def test_pending_urgent_first(self, crew):
        collab, workers, _ = crew
        workers["bob"].chat_reply = ""
        low = await collab.send("alice", "bob", MessageType.QUESTION, "Later", require_response=True, urgency=Urgency.LOW)
        high = await collab.send("alice", "bob", MessageType.QUESTION, "Now", require_response=True, urgency=Urgency.HIGH)
        assert collab.get_pending_responses() == [high, low]
