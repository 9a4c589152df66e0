from __future__ import annotations

import logging

from .errors import TransportError, UniqueViolation, ValidationError
from .models import Conversation
from .substrate import Substrate

logger = logging.getLogger(__name__)


class ConversationResolver:
    """Maps an unordered pair of users onto their single conversation.

    Creation is an idempotent create: the substrate's pair uniqueness
    constraint decides the winner when two callers insert at once, and the
    loser re-reads the winning row instead of failing.
    """

    def __init__(self, substrate: Substrate) -> None:
        self._substrate = substrate

    async def resolve(self, user_a: str, user_b: str) -> str:
        conversation = await self.resolve_conversation(user_a, user_b)
        return conversation.id

    async def resolve_conversation(self, user_a: str, user_b: str) -> Conversation:
        if not user_a or not user_b:
            raise ValidationError("both user ids are required")
        if user_a == user_b:
            raise ValidationError("cannot open a conversation with yourself")

        existing = await self._substrate.find_conversation(user_a, user_b)
        if existing is not None:
            return existing

        try:
            created = await self._substrate.insert_conversation(user_a, user_b)
        except UniqueViolation:
            logger.debug("conversation for %s/%s created concurrently, re-reading", user_a, user_b)
            winner = await self._substrate.find_conversation(user_a, user_b)
            if winner is None:
                raise TransportError("conversation conflict reported but no row found")
            return winner
        logger.debug("created conversation %s for %s/%s", created.id, user_a, user_b)
        return created
