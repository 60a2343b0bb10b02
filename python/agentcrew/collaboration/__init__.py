"""Inter-worker messaging."""

from agentcrew.collaboration.bus import (
    MASTER_ID,
    BroadcastResult,
    CollaborationBus,
    CollaborationConfig,
    CollaborationMessage,
    CollaborationRequest,
    CollaborationSession,
    ConversationRecord,
    MessageType,
    SessionStatus,
    Urgency,
)

__all__ = [
    "MASTER_ID",
    "BroadcastResult",
    "CollaborationBus",
    "CollaborationConfig",
    "CollaborationMessage",
    "CollaborationRequest",
    "CollaborationSession",
    "ConversationRecord",
    "MessageType",
    "SessionStatus",
    "Urgency",
]
