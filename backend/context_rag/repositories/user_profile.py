"""Read-only access to user profiles."""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import select

from context_rag.db_models import UserProfile
from context_rag.repositories.base import AsyncSessionRepository, QueryError, RepositoryContext

logger = logging.getLogger(__name__)

# Profile columns surfaced as prompt preferences, in display order
PREFERENCE_FIELDS = (
    ("company_name", "company"),
    ("industry", "industry"),
    ("role", "role"),
    ("primary_goals", "goals"),
    ("communication_style", "communication_style"),
)


class UserProfileRepository(AsyncSessionRepository):

    def __init__(self, session_factory=None, context: Optional[RepositoryContext] = None):
        super().__init__(session_factory, context)

    async def get_preferences(self, user_id: str) -> Dict[str, Any]:
        """Non-empty profile fields keyed by preference name; {} if no profile."""
        self._log_operation("get_preferences", user_id=user_id)

        try:
            async with self.session() as session:
                result = await session.execute(
                    select(UserProfile).where(UserProfile.user_id == user_id)
                )
                profile = result.scalar_one_or_none()
        except Exception as e:
            self._log_error("get_preferences", e, user_id=user_id)
            raise QueryError(str(e), "get_preferences")

        if profile is None:
            return {}

        preferences = {}
        for column, key in PREFERENCE_FIELDS:
            value = getattr(profile, column)
            if value:
                preferences[key] = list(value) if isinstance(value, (list, tuple)) else value
        return preferences
