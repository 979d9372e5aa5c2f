"""
Effective usage-limit resolution.

Priority: user-specific row > global row > built-in defaults.
"""

import logging
from typing import Optional

from ai_credit_guard.storage.models import DEFAULT_USAGE_LIMIT, UsageLimit
from ai_credit_guard.storage.repository import UsageRepository

logger = logging.getLogger(__name__)


class LimitConfigResolver:
    """Resolves the UsageLimit that governs a user."""

    def __init__(self, repository: UsageRepository, default_limit: UsageLimit = DEFAULT_USAGE_LIMIT):
        self.repository = repository
        self.default_limit = default_limit

    async def get_user_limits(self, user_id: str) -> Optional[UsageLimit]:
        return await self.repository.get_active_limit(user_id=user_id)

    async def get_global_limits(self) -> Optional[UsageLimit]:
        return await self.repository.get_active_limit(user_id=None)

    async def resolve(self, user_id: str) -> UsageLimit:
        """Return the effective limits for ``user_id``.

        Stops at the first scope that has an active row. Store errors
        propagate; callers decide how to degrade.
        """
        user_limits = await self.get_user_limits(user_id)
        if user_limits is not None:
            return user_limits

        global_limits = await self.get_global_limits()
        if global_limits is not None:
            return global_limits

        logger.debug(f"No usage limit rows for {user_id}, using built-in defaults")
        return self.default_limit
