"""Conversation and presence synchronization core for two-party direct messages."""

from .bridge import LiveEventBridge
from .client import ClientConfig, MessagingClient, SendOutcome
from .errors import (
    ConstraintViolation,
    DMSyncError,
    PresenceWriteError,
    SubscriptionError,
    TransportError,
    UniqueViolation,
    ValidationError,
)
from .memory import InMemorySubstrate
from .models import Conversation, Message, Profile, canonical_pair
from .presence import PresenceTracker
from .resolver import ConversationResolver
from .roster import Roster
from .session import AuthSession
from .timeline import MessageTimeline

__all__ = [
    "AuthSession",
    "ClientConfig",
    "ConstraintViolation",
    "Conversation",
    "ConversationResolver",
    "DMSyncError",
    "InMemorySubstrate",
    "LiveEventBridge",
    "Message",
    "MessageTimeline",
    "MessagingClient",
    "PresenceTracker",
    "PresenceWriteError",
    "Profile",
    "Roster",
    "SendOutcome",
    "SubscriptionError",
    "TransportError",
    "UniqueViolation",
    "ValidationError",
    "canonical_pair",
]
