"""Call-site wrapper around the language-model boundary.

Every model call made by the pipeline goes through ``invoke``: it applies
the per-call timeout, retries upstream failures with exponential backoff
and jitter, and normalizes whatever the call function returned into a
``CallOutcome``.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from loguru import logger

from rlmkit.errors import SubQueryTimeout, UpstreamCallFailed
from rlmkit.providers.base import LLMResponse

# (system_prompt, user_content, context) -> text or LLMResponse
CallFn = Callable[[str, str, dict[str, Any]], Awaitable[Union[LLMResponse, str]]]


@dataclass
class RetryPolicy:
    attempts: int = 2  # Retries after the first attempt
    delay: float = 1.0
    backoff: float = 2.0
    jitter: float = 0.1

    @classmethod
    def from_config(cls, config: Any) -> "RetryPolicy":
        return cls(
            attempts=config.retry_attempts,
            delay=config.retry_delay,
            backoff=config.retry_backoff,
            jitter=config.retry_jitter,
        )


@dataclass
class CallOutcome:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    attempts: int = 1


def _normalize(raw: Union[LLMResponse, str, None]) -> CallOutcome:
    if isinstance(raw, LLMResponse):
        usage = raw.usage or {}
        return CallOutcome(
            text=raw.content or "",
            input_tokens=int(usage.get("prompt_tokens", 0)),
            output_tokens=int(usage.get("completion_tokens", 0)),
        )
    return CallOutcome(text=raw or "")


async def invoke(
    call_fn: CallFn,
    system_prompt: str,
    user_content: str,
    context: dict[str, Any],
    timeout: float,
    policy: Optional[RetryPolicy] = None,
) -> CallOutcome:
    """Call the model once, retrying upstream failures.

    Raises:
        SubQueryTimeout: the call exceeded ``timeout``. Not retried.
        UpstreamCallFailed: every attempt raised or returned empty text.
    """
    policy = policy or RetryPolicy()
    label = context.get("sub_query_id", "call")
    delay = policy.delay
    last_error: Optional[Exception] = None

    for attempt in range(policy.attempts + 1):
        try:
            raw = await asyncio.wait_for(call_fn(system_prompt, user_content, context), timeout=timeout)
            outcome = _normalize(raw)
            if not outcome.text.strip():
                raise UpstreamCallFailed("Model returned an empty response", sub_query_id=context.get("sub_query_id"))
            outcome.attempts = attempt + 1
            return outcome
        except asyncio.TimeoutError:
            raise SubQueryTimeout(
                f"No response within {timeout:.0f}s",
                depth=context.get("depth"),
                sub_query_id=context.get("sub_query_id"),
            ) from None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = e

        if attempt < policy.attempts:
            jitter = delay * policy.jitter * (2 * random.random() - 1)
            actual_delay = max(0, delay + jitter)
            logger.warning(f"Attempt {attempt + 1} failed for {label} ({last_error}), retrying in {actual_delay:.2f}s")
            await asyncio.sleep(actual_delay)
            delay *= policy.backoff
        else:
            logger.error(f"All {policy.attempts + 1} attempts failed for {label}: {last_error}")

    if isinstance(last_error, UpstreamCallFailed):
        raise last_error
    raise UpstreamCallFailed(
        f"Model call failed: {last_error}",
        depth=context.get("depth"),
        sub_query_id=context.get("sub_query_id"),
    ) from last_error
