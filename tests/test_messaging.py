import base64
import hashlib
import hmac
import json

import httpx
import pytest

from conftest import RecordingSender
from shopchat.errors import DeliveryError
from shopchat.messaging import (
    LineSender,
    MessengerSender,
    PlatformRouter,
    RecentMessageIds,
    split_text,
    verify_line_signature,
    verify_messenger_signature,
)


def test_split_text_short_reply_is_single_chunk():
    assert split_text("สวัสดีค่ะ", 2000) == ["สวัสดีค่ะ"]


def test_split_text_prefers_line_breaks_and_loses_nothing():
    text = "\n".join(f"บรรทัดที่ {i}" for i in range(40))
    chunks = split_text(text, 50)
    assert all(len(chunk) <= 50 for chunk in chunks)
    assert "".join(chunks) == text
    assert all(chunk.endswith("\n") for chunk in chunks[:-1])


def test_split_text_hard_cuts_long_lines():
    chunks = split_text("x" * 120, 50)
    assert [len(chunk) for chunk in chunks] == [50, 50, 20]


def test_messenger_signature():
    body = b'{"object": "page"}'
    digest = hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()
    assert verify_messenger_signature("app-secret", body, f"sha256={digest}")
    assert not verify_messenger_signature("app-secret", body, f"sha256={'0' * 64}")
    assert not verify_messenger_signature("app-secret", body, digest)
    assert not verify_messenger_signature("app-secret", body, None)


def test_line_signature():
    body = b'{"events": []}'
    signature = base64.b64encode(hmac.new(b"line-secret", body, hashlib.sha256).digest()).decode()
    assert verify_line_signature("line-secret", body, signature)
    assert not verify_line_signature("other-secret", body, signature)
    assert not verify_line_signature("line-secret", body, None)


def test_recent_message_ids_expire():
    now = [0.0]
    dedup = RecentMessageIds(ttl_sec=300, clock=lambda: now[0])
    assert not dedup.seen_before("m1")
    assert dedup.seen_before("m1")
    assert not dedup.seen_before(None)
    assert not dedup.seen_before(None)
    now[0] = 301
    assert not dedup.seen_before("m1")


async def test_messenger_sender_posts_chunks():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"message_id": "m"})

    sender = MessengerSender("page-token", http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    await sender.send("psid-1", "a" * 2500)

    assert len(requests) == 2
    assert requests[0].url.params["access_token"] == "page-token"
    first = json.loads(requests[0].content)
    assert first["recipient"] == {"id": "psid-1"}
    assert len(first["message"]["text"]) == 2000


async def test_messenger_sender_raises_on_rejection():
    transport = httpx.MockTransport(lambda request: httpx.Response(400, json={"error": "bad psid"}))
    sender = MessengerSender("page-token", http_client=httpx.AsyncClient(transport=transport))
    with pytest.raises(DeliveryError) as excinfo:
        await sender.send("psid-1", "hi")
    assert excinfo.value.status_code == 400
    # Typing indicators are best effort.
    await sender.send_typing("psid-1")


async def test_line_sender_batches_five_messages_per_push():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={})

    sender = LineSender("line-token", http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    await sender.send("U1", "y" * (5000 * 6))

    assert [len(body["messages"]) for body in bodies] == [5, 1]
    assert bodies[0]["to"] == "U1"


async def test_router_uses_platform_the_user_came_from():
    messenger, line = RecordingSender(), RecordingSender()
    router = PlatformRouter({"messenger": messenger, "line": line})
    router.remember("U1", "line")

    await router.send("U1", "line reply")
    await router.send("psid-9", "messenger reply")

    assert line.sent == [("U1", "line reply")]
    assert messenger.sent == [("psid-9", "messenger reply")]


async def test_router_without_sender_raises():
    router = PlatformRouter({"messenger": RecordingSender()})
    router.remember("U1", "line")
    with pytest.raises(DeliveryError):
        await router.send("U1", "hi")


async def test_router_forgets_idle_users():
    now = [0.0]
    messenger, line = RecordingSender(), RecordingSender()
    router = PlatformRouter({"messenger": messenger, "line": line}, ttl_sec=60, clock=lambda: now[0])
    router.remember("U1", "line")
    assert router.platform_for("U1") == "line"

    now[0] = 61
    router.remember("U2", "line")

    assert list(router._platform_by_user) == ["U2"]
    await router.send("U1", "back again")
    assert messenger.sent == [("U1", "back again")]
    assert line.sent == []
