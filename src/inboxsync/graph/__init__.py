from inboxsync.graph.client import GraphClient, classify_error
from inboxsync.graph.payloads import (
    ConversationDetail,
    ConversationSummary,
    GraphMessage,
    Party,
    ParticipantProfile,
    PushEvent,
    normalize_profile_pic_url,
    parse_graph_time,
)

__all__ = [
    "ConversationDetail",
    "ConversationSummary",
    "GraphClient",
    "GraphMessage",
    "Party",
    "ParticipantProfile",
    "PushEvent",
    "classify_error",
    "normalize_profile_pic_url",
    "parse_graph_time",
]
