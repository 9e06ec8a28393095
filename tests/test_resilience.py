import asyncio

import pytest

from catalog_match.config import CallPolicy
from catalog_match.pipeline_types import CollaboratorError, InputError
from catalog_match.resilience import CancelToken, NonRetryableError, guarded_call

POLICY = CallPolicy(timeout_s=0.05, max_retries=2, retry_delay_s=0.0)


@pytest.mark.asyncio
async def test_guarded_call_retries_until_success():
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise RuntimeError("transient")
        return "ok"

    assert await guarded_call("svc", flaky, POLICY) == "ok"
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_guarded_call_timeout_becomes_collaborator_error():
    async def slow():
        await asyncio.sleep(1)

    with pytest.raises(CollaboratorError) as info:
        await guarded_call("slow-svc", slow, POLICY)
    assert info.value.collaborator == "slow-svc"
    assert "timed out" in str(info.value)


@pytest.mark.asyncio
async def test_guarded_call_does_not_retry_input_or_collaborator_errors():
    attempts = []

    async def bad_input():
        attempts.append(1)
        raise InputError("bad row")

    async def refused():
        attempts.append(1)
        raise NonRetryableError("svc", "HTTP 400")

    with pytest.raises(InputError):
        await guarded_call("svc", bad_input, POLICY)
    with pytest.raises(NonRetryableError):
        await guarded_call("svc", refused, POLICY)
    assert len(attempts) == 2


def test_cancel_token():
    token = CancelToken()
    assert not token.cancelled
    token.cancel("user abort")
    assert token.cancelled
    assert token.reason == "user abort"
