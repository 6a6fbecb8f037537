"""Chat – room fan-out, message ingestion and persona replies."""

from chat.broadcast import (
    EVENT_MESSAGE,
    EVENT_MESSAGE_REJECTED,
    EVENT_TRIAD_LOCKED,
    Broadcaster,
    HttpRelayBroadcaster,
    RoomBroadcaster,
    RoomEvent,
    deliver,
)
from chat.replies import PersonaReplyCoordinator, bounded_transcript, is_echo, snippet
from chat.rooms import RoomService, merge_message_feeds

__all__ = [
    "Broadcaster",
    "EVENT_MESSAGE",
    "EVENT_MESSAGE_REJECTED",
    "EVENT_TRIAD_LOCKED",
    "HttpRelayBroadcaster",
    "PersonaReplyCoordinator",
    "RoomBroadcaster",
    "RoomEvent",
    "RoomService",
    "bounded_transcript",
    "deliver",
    "is_echo",
    "merge_message_feeds",
    "snippet",
]
