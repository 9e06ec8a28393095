from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from loguru import logger

from .config import CallPolicy
from .pipeline_types import CollaboratorError, InputError

T = TypeVar("T")


class NonRetryableError(CollaboratorError):
    """A collaborator answered, but with an error retrying cannot fix."""


# ---------------------------
# Cooperative cancellation
# ---------------------------

class CancelToken:
    """Cancellation flag checked between rows and between sources."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


# ---------------------------
# Timeout + bounded retry
# ---------------------------

async def guarded_call(
    collaborator: str,
    call: Callable[[], Awaitable[T]],
    policy: CallPolicy,
) -> T:
    """
    Await `call()` with a per-attempt timeout and up to `policy.max_retries`
    retries, sleeping `retry_delay_s * attempt` between attempts.

    InputError and CollaboratorError (a collaborator that already spent
    its own retry budget, or a NonRetryableError) are raised immediately.
    Anything else that survives the budget is raised as CollaboratorError.
    """
    attempts = 1 + policy.max_retries
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(call(), timeout=policy.timeout_s)
        except (InputError, CollaboratorError):
            raise
        except asyncio.TimeoutError as e:
            last_error = e
            logger.warning(
                "{} call timed out after {}s (attempt {}/{})",
                collaborator,
                policy.timeout_s,
                attempt,
                attempts,
            )
        except Exception as e:
            last_error = e
            logger.warning(
                "{} call failed (attempt {}/{}): {}",
                collaborator,
                attempt,
                attempts,
                e,
            )
        if attempt < attempts and policy.retry_delay_s > 0:
            await asyncio.sleep(policy.retry_delay_s * attempt)

    if isinstance(last_error, asyncio.TimeoutError):
        message = f"timed out after {attempts} attempt(s)"
    else:
        message = str(last_error) or type(last_error).__name__
    raise CollaboratorError(collaborator, message) from last_error
