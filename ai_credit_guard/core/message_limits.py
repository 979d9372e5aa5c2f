"""
Daily message caps for anonymous and no-credit principals.

Evaluation order, first match wins:
1. Anonymous principals skip the ledger entirely.
2. A negative balance is a hard block; a positive balance allows the
   message and is accounted in credits.
3. A zero balance, or no ledger entry, falls back to counting today's
   user messages against the daily cap.

Results are cached per (user, anonymous) for 60 seconds. Any failure
degrades to a small permissive allowance instead of blocking chat.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Tuple

from .aggregator import start_of_day
from .request_cache import RequestCreditCache
from .result import capture
from .ttl_cache import TTLCache
from ai_credit_guard.billing.ledger import CreditLedger
from ai_credit_guard.storage.models import utcnow
from ai_credit_guard.storage.repository import UsageRepository

logger = logging.getLogger(__name__)

ANONYMOUS_DAILY_LIMIT = 10
AUTHENTICATED_DAILY_LIMIT = 20
# Shown to credited users; their real gate is the balance itself
CREDITED_DISPLAY_LIMIT = 250
FAIL_OPEN_LIMIT = 10


@dataclass(frozen=True)
class MessageLimitStatus:
    """Outcome of a message-cap check."""
    has_reached_limit: bool
    limit: int
    remaining: int
    credits: Optional[int] = None
    used_credits: bool = False


class MessageLimitCache:
    """Message-cap checks behind a process-wide TTL cache."""

    def __init__(
        self,
        repository: UsageRepository,
        ledger: CreditLedger,
        cache: Optional[TTLCache] = None,
        anonymous_daily_limit: int = ANONYMOUS_DAILY_LIMIT,
        authenticated_daily_limit: int = AUTHENTICATED_DAILY_LIMIT,
        credited_display_limit: int = CREDITED_DISPLAY_LIMIT,
        fail_open_limit: int = FAIL_OPEN_LIMIT,
        now: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.ledger = ledger
        if cache is None:
            cache = TTLCache(60, name="message_limits")
        self.cache: TTLCache[Tuple[str, bool], MessageLimitStatus] = cache
        self.anonymous_daily_limit = anonymous_daily_limit
        self.authenticated_daily_limit = authenticated_daily_limit
        self.credited_display_limit = credited_display_limit
        self.fail_open_limit = fail_open_limit
        self._now = now

    def fail_open_status(self) -> MessageLimitStatus:
        return MessageLimitStatus(
            has_reached_limit=False,
            limit=self.fail_open_limit,
            remaining=self.fail_open_limit,
        )

    async def check_message_limit(
        self,
        user_id: str,
        is_anonymous: bool = False,
        credit_cache: Optional[RequestCreditCache] = None,
    ) -> MessageLimitStatus:
        """Whether ``user_id`` may send another message; never raises.

        Args:
            user_id: Principal id (anonymous sessions have ids too)
            is_anonymous: Anonymous principals never have a ledger entry
            credit_cache: Request-scoped cache to read the balance through
        """
        key = (user_id, is_anonymous)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        result = await capture("message limit", self._evaluate(user_id, is_anonymous, credit_cache))
        if not result.ok:
            return result.unwrap_or(self.fail_open_status())

        self.cache.set(key, result.value)
        return result.value

    async def _evaluate(
        self,
        user_id: str,
        is_anonymous: bool,
        credit_cache: Optional[RequestCreditCache],
    ) -> MessageLimitStatus:
        credits: Optional[int] = None
        if not is_anonymous:
            source = credit_cache or self.ledger
            credits = await source.get_remaining_credits_by_external_id(user_id)
            if credits is not None:
                status = self._credits_status(credits)
                if status is not None:
                    return status

        return await self._check_daily_message_limit(user_id, is_anonymous, credits)

    def _credits_status(self, credits: int) -> Optional[MessageLimitStatus]:
        if credits < 0:
            return MessageLimitStatus(
                has_reached_limit=True,
                limit=0,
                remaining=0,
                credits=credits,
                used_credits=True,
            )
        if credits > 0:
            return MessageLimitStatus(
                has_reached_limit=False,
                limit=self.credited_display_limit,
                remaining=credits,
                credits=credits,
                used_credits=True,
            )
        # zero balance: daily cap applies
        return None

    async def _check_daily_message_limit(
        self,
        user_id: str,
        is_anonymous: bool,
        credits: Optional[int],
    ) -> MessageLimitStatus:
        override, message_count = await asyncio.gather(
            self.repository.get_user_message_limit(user_id),
            self.count_todays_messages(user_id),
        )

        if override is not None:
            message_limit = override
        elif is_anonymous:
            message_limit = self.anonymous_daily_limit
        else:
            message_limit = self.authenticated_daily_limit

        return MessageLimitStatus(
            has_reached_limit=message_count >= message_limit,
            limit=message_limit,
            remaining=max(0, message_limit - message_count),
            credits=credits,
            used_credits=False,
        )

    async def count_todays_messages(self, user_id: str) -> int:
        """User-role messages sent today in chats the user created today.

        Reads chat ids first and counts within them; if that path fails,
        the equivalent join query answers instead.
        """
        since = start_of_day(self._now())
        try:
            chat_ids = await self.repository.get_chat_ids_created_since(user_id, since)
            if not chat_ids:
                return 0
            return await self.repository.count_user_messages_in_chats(chat_ids, since)
        except Exception as e:
            logger.warning(f"Chat-id message count failed for {user_id}, using join query: {e}")
            return await self.repository.count_user_messages_joined(user_id, since)

    def invalidate(self, user_id: str) -> None:
        """Drop both cached entries (anonymous and not) for ``user_id``."""
        self.cache.invalidate((user_id, True))
        self.cache.invalidate((user_id, False))

    def clear(self) -> None:
        self.cache.clear()
