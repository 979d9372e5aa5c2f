"""
Guarded OpenAI client wrapper.

Asks the metering engine before every chat completion and records the
usage event after a successful one.
"""

import logging
from typing import Any, Dict, List, Mapping, Optional

from openai import AsyncOpenAI

from ..core.credits import Principal
from ..core.guardrails import Decision, MeteringEngine, RequestDenied
from ..core.pricing import estimate_cost, provider_of
from ..core.token_counter import TokenUsage
from ..storage.models import UsageEvent

logger = logging.getLogger(__name__)


class GuardedChatClient:
    """AsyncOpenAI wrapper that enforces credit and usage decisions.

    Denied requests never reach the provider. Provider and storage errors
    propagate unchanged so no usage is silently lost.
    """

    def __init__(self, engine: MeteringEngine, client: Optional[AsyncOpenAI] = None):
        """Initialize guarded client.

        Args:
            engine: Metering engine that decides and records
            client: OpenAI-compatible async client (defaults to ``AsyncOpenAI()``)
        """
        self.engine = engine
        self.client = client or AsyncOpenAI()

    async def chat(
        self,
        principal: Principal,
        model_id: str,
        messages: List[Dict[str, str]],
        api_keys: Optional[Mapping[str, str]] = None,
        web_search: bool = False,
        **kwargs: Any
    ) -> Any:
        """Create a chat completion if the principal is allowed to.

        Args:
            principal: Who the request is attributed to
            model_id: Requested model id
            messages: List of message dictionaries (required)
            api_keys: Provider keys supplied by the caller, by key name
            web_search: Whether the request asks for web search
            **kwargs: Additional completion parameters

        Returns:
            The provider's chat completion response, unchanged

        Raises:
            ValueError: If model_id or messages is empty, or usage is missing
            RequestDenied: If the metering engine rejects the request
        """
        if not model_id or not model_id.strip():
            raise ValueError("model_id is required and cannot be empty")
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        decision = await self.engine.evaluate(principal, model_id, api_keys=api_keys, web_search=web_search)
        if not decision.allowed:
            raise RequestDenied(decision)

        response = await self.client.chat.completions.create(
            model=model_id,
            messages=messages,
            **kwargs
        )

        usage = response.usage
        if not usage:
            raise ValueError("Chat completion response missing usage information")

        await self._record(principal, model_id, decision, usage.prompt_tokens, usage.completion_tokens)
        return response

    async def _record(
        self,
        principal: Principal,
        model_id: str,
        decision: Decision,
        input_tokens: int,
        output_tokens: int,
    ) -> None:
        token_usage = TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)
        model_info = await self.engine.catalog.get_model_details(model_id)
        event = UsageEvent(
            user_id=principal.user_id,
            model_id=model_id,
            provider=provider_of(model_id),
            input_tokens=token_usage.input_tokens,
            output_tokens=token_usage.output_tokens,
            total_tokens=token_usage.total_tokens,
            estimated_cost=estimate_cost(model_info, token_usage),
        )
        await self.engine.record_usage(event)
        if decision.degraded:
            logger.warning(f"Recorded usage for {principal.user_id} admitted while metering was degraded")
