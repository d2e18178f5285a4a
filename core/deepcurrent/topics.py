"""Topic Registry - CRUD over research topics.

Topics own their strategy versions, episodes and evolution log; deleting
a topic removes all of them. The active-version pointer is never changed
here, only by ``RolloutManager.promote``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from deepcurrent.errors import NotFoundError
from deepcurrent.storage.models import Topic

if TYPE_CHECKING:
    from deepcurrent.storage.repository import StrategyRepository

logger = logging.getLogger(__name__)


class TopicRegistry:
    """Create, look up, edit and delete topics."""

    def __init__(self, repository: StrategyRepository) -> None:
        self._repo = repository

    async def create_topic(
        self,
        title: str,
        description: str = "",
        user_id: str | None = None,
        topic_id: str | None = None,
    ) -> Topic:
        if not title.strip():
            raise ValueError("Topic title must not be empty")
        topic = Topic(title=title.strip(), description=description, user_id=user_id)
        if topic_id is not None:
            topic = topic.model_copy(update={"topic_id": topic_id})
        created = await self._repo.create_topic(topic)
        logger.info(f"Created topic {created.topic_id}: {created.title}")
        return created

    async def get_topic(self, topic_id: str) -> Topic:
        """Raises NotFoundError if the topic does not exist."""
        topic = await self._repo.get_topic(topic_id)
        if topic is None:
            raise NotFoundError("Topic", topic_id)
        return topic

    async def list_topics(self, user_id: str | None = None) -> list[Topic]:
        """Topics newest first, optionally only one user's."""
        topics = await self._repo.list_topics()
        if user_id is not None:
            topics = [t for t in topics if t.user_id == user_id]
        return topics

    async def search_topics(self, query: str, user_id: str | None = None) -> list[Topic]:
        """Case-insensitive substring match on title and description."""
        needle = query.lower()
        return [
            t
            for t in await self.list_topics(user_id)
            if needle in t.title.lower() or needle in t.description.lower()
        ]

    async def update_topic(
        self,
        topic_id: str,
        title: str | None = None,
        description: str | None = None,
    ) -> Topic:
        if title is not None and not title.strip():
            raise ValueError("Topic title must not be empty")
        async with self._repo.transaction(topic_id) as txn:
            if title is not None:
                txn.topic.title = title.strip()
            if description is not None:
                txn.topic.description = description
            txn.topic.updated_at = datetime.now(UTC)
            updated = txn.topic.model_copy(deep=True)
        return updated

    async def delete_topic(self, topic_id: str) -> bool:
        """Delete a topic and everything recorded for it."""
        return await self._repo.delete_topic(topic_id)
