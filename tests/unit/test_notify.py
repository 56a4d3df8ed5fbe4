"""Notification delivery."""

import json

import httpx
import pytest

from repflow.notify import LogNotifier, Notification, WebhookNotifier
from repflow.utils.retry import RetryPolicy


def _notification():
    return Notification(
        user_id="u1",
        kind="email",
        title="Welcome to Pro",
        data={"tier": "pro"},
        idempotency_key="run-1:send-welcome-email",
    )


@pytest.mark.asyncio
async def test_webhook_posts_json_with_idempotency_key():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202)

    notifier = WebhookNotifier("https://gateway.test/notify", transport=httpx.MockTransport(handler))
    await notifier.send(_notification())
    await notifier.close()

    [request] = seen
    assert request.headers["Idempotency-Key"] == "run-1:send-welcome-email"
    body = json.loads(request.content)
    assert body["title"] == "Welcome to Pro"
    assert body["data"] == {"tier": "pro"}


@pytest.mark.asyncio
async def test_gateway_errors_surface_with_retry_class():
    statuses = iter([503, 400])
    notifier = WebhookNotifier(
        "https://gateway.test/notify",
        transport=httpx.MockTransport(lambda request: httpx.Response(next(statuses))),
    )
    policy = RetryPolicy()

    with pytest.raises(httpx.HTTPStatusError) as unavailable:
        await notifier.send(_notification())
    assert policy.is_retryable(unavailable.value)

    with pytest.raises(httpx.HTTPStatusError) as rejected:
        await notifier.send(_notification())
    assert not policy.is_retryable(rejected.value)
    await notifier.close()


@pytest.mark.asyncio
async def test_log_notifier_keeps_sent_messages():
    notifier = LogNotifier()
    await notifier.send(_notification())
    assert [n.title for n in notifier.sent] == ["Welcome to Pro"]
