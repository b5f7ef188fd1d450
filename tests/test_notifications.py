import json

import httpx
import pytest

from aurelia.config.settings import Settings
from aurelia.notifications.dispatcher import OrderNotifier
from aurelia.notifications.mailer import HttpMailSender, LogMailSender, build_mail_sender
from aurelia.schema.full_schema import OrderStatus
from tests.fakes import InMemoryMailSender


@pytest.mark.asyncio
async def test_status_change_sends_one_mail():
    sender = InMemoryMailSender()
    notifier = OrderNotifier(sender)

    task = notifier.order_status_changed(7, "buyer@example.com", OrderStatus.PROCESSING, OrderStatus.SHIPPED)
    await notifier.drain()

    assert task is not None and task.done()
    assert sender.sent == [{
        "recipient": "buyer@example.com",
        "subject": "Your order #7 has shipped",
        "body": "Order #7 moved from processing to shipped.",
        "metadata": {"order_id": 7, "old_status": "PROCESSING", "new_status": "SHIPPED"},
    }]


@pytest.mark.asyncio
async def test_nothing_sent_without_recipient_or_change():
    sender = InMemoryMailSender()
    notifier = OrderNotifier(sender)
    assert notifier.order_status_changed(1, None, OrderStatus.PENDING, OrderStatus.CONFIRMED) is None
    assert notifier.order_status_changed(1, "a@b.co", OrderStatus.CONFIRMED, OrderStatus.CONFIRMED) is None
    await notifier.drain()
    assert sender.sent == []


@pytest.mark.asyncio
async def test_relay_failure_is_contained():
    notifier = OrderNotifier(InMemoryMailSender(fail=True))
    task = notifier.order_status_changed(3, "buyer@example.com", OrderStatus.PENDING, OrderStatus.CONFIRMED)
    await notifier.drain()
    assert task.done() and task.exception() is None


@pytest.mark.asyncio
async def test_http_sender_posts_to_relay():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202, json={"queued": True})

    sender = HttpMailSender("https://relay.test/send", "orders@aurelia.test", token="t0k",
                            transport=httpx.MockTransport(handler))
    await sender.send(recipient="buyer@example.com", subject="hi", body="there", metadata={"order_id": 1})

    assert seen[0].headers["Authorization"] == "Bearer t0k"
    assert json.loads(seen[0].content) == {
        "from": "orders@aurelia.test",
        "to": "buyer@example.com",
        "subject": "hi",
        "text": "there",
        "metadata": {"order_id": 1},
    }


@pytest.mark.asyncio
async def test_http_sender_raises_on_relay_error():
    sender = HttpMailSender("https://relay.test/send", "orders@aurelia.test",
                            transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    with pytest.raises(httpx.HTTPStatusError):
        await sender.send(recipient="buyer@example.com", subject="hi", body="there")


def test_sender_selection():
    assert isinstance(build_mail_sender(Settings(_env_file=None)), LogMailSender)
    relay = build_mail_sender(Settings(_env_file=None, MAIL_RELAY_URL="https://relay.test/send"))
    assert isinstance(relay, HttpMailSender)
