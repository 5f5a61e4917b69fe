from __future__ import annotations

"""Outbound delivery and inbound authenticity helpers for Messenger and LINE."""

import base64
import hashlib
import hmac
import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

import httpx

from .errors import DeliveryError
from .utils import mask_user_id

logger = logging.getLogger("shopchat.messaging")

GRAPH_API_URL = "https://graph.facebook.com/v18.0/me/messages"
LINE_PUSH_URL = "https://api.line.me/v2/bot/message/push"
MESSENGER_TEXT_LIMIT = 2000
LINE_TEXT_LIMIT = 5000
LINE_MAX_MESSAGES = 5
DEDUP_TTL_SEC = 5 * 60
PLATFORM_MEMORY_TTL_SEC = 24 * 60 * 60


def split_text(text: str, limit: int) -> List[str]:
    """Purpose: Split a reply into platform-sized chunks, preferring line breaks.
    Inputs/Outputs: Input is reply text and a character limit; output is chunks.
    Side Effects / State: None.
    Dependencies: None.
    Failure Modes: A single line longer than the limit is hard-cut.
    If Removed: Long replies are rejected by the platform API.
    Testing Notes: Every chunk is <= limit and joining them loses no content.
    """
    # Pack whole lines while they fit, hard-cut oversized lines.
    text = text or ""
    if len(text) <= limit:
        return [text]
    chunks: List[str] = []
    current = ""
    for line in text.splitlines(keepends=True):
        while len(line) > limit:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(line[:limit])
            line = line[limit:]
        if len(current) + len(line) > limit:
            chunks.append(current)
            current = ""
        current += line
    if current:
        chunks.append(current)
    return [chunk for chunk in chunks if chunk]


class MessageSender:
    """Outbound transport: send(user_id, text) raises DeliveryError on failure."""

    async def send(self, user_id: str, text: str) -> None:
        raise NotImplementedError

    async def send_typing(self, user_id: str) -> None:
        return None

    async def close(self) -> None:
        return None


class MessengerSender(MessageSender):
    def __init__(self, page_token: str, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self._page_token = page_token
        self._client = http_client or httpx.AsyncClient(timeout=15)

    async def send(self, user_id: str, text: str) -> None:
        """Purpose: Deliver a reply through the Graph API send endpoint.
        Inputs/Outputs: Inputs are the PSID and text; no return value.
        Side Effects / State: One POST per 2000-character chunk.
        Dependencies: httpx.AsyncClient and split_text.
        Failure Modes: Network errors and non-2xx replies raise DeliveryError.
        If Removed: Messenger users never see replies.
        Testing Notes: Mock a 400 and expect DeliveryError with the status code.
        """
        # Messenger caps a text message at 2000 characters.
        for chunk in split_text(text, MESSENGER_TEXT_LIMIT):
            await self._post(
                {
                    "recipient": {"id": user_id},
                    "messaging_type": "RESPONSE",
                    "message": {"text": chunk},
                }
            )

    async def send_typing(self, user_id: str) -> None:
        # Best effort; a failed indicator must not block the turn.
        try:
            await self._post({"recipient": {"id": user_id}, "sender_action": "typing_on"})
        except DeliveryError as exc:
            logger.debug("user=%s typing indicator failed: %s", mask_user_id(user_id), exc)

    async def _post(self, body: Dict[str, object]) -> None:
        try:
            response = await self._client.post(GRAPH_API_URL, params={"access_token": self._page_token}, json=body)
        except httpx.HTTPError as exc:
            raise DeliveryError(f"messenger send failed: {exc}") from exc
        if response.status_code >= 300:
            raise DeliveryError(
                f"messenger send failed {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )

    async def close(self) -> None:
        await self._client.aclose()


class LineSender(MessageSender):
    def __init__(self, access_token: str, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self._headers = {"Content-Type": "application/json", "Authorization": f"Bearer {access_token}"}
        self._client = http_client or httpx.AsyncClient(timeout=15)

    async def send(self, user_id: str, text: str) -> None:
        """Push a reply to a LINE user, five text bubbles per request at most."""
        chunks = split_text(text, LINE_TEXT_LIMIT)
        for start in range(0, len(chunks), LINE_MAX_MESSAGES):
            batch = chunks[start : start + LINE_MAX_MESSAGES]
            body = {"to": user_id, "messages": [{"type": "text", "text": chunk} for chunk in batch]}
            try:
                response = await self._client.post(LINE_PUSH_URL, headers=self._headers, json=body)
            except httpx.HTTPError as exc:
                raise DeliveryError(f"line push failed: {exc}") from exc
            if response.status_code >= 300:
                raise DeliveryError(
                    f"line push failed {response.status_code}: {response.text[:300]}",
                    status_code=response.status_code,
                )

    async def close(self) -> None:
        await self._client.aclose()


class PlatformRouter(MessageSender):
    """Dispatch to the sender of the platform a user id was last seen on."""

    def __init__(
        self,
        senders: Dict[str, MessageSender],
        default_platform: str = "messenger",
        ttl_sec: float = PLATFORM_MEMORY_TTL_SEC,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._senders = senders
        self._default_platform = default_platform
        self._ttl_sec = ttl_sec
        self._clock = clock or time.monotonic
        self._platform_by_user: Dict[str, Tuple[str, float]] = {}

    def remember(self, user_id: str, platform: str) -> None:
        """Record the user's platform and forget users idle past the TTL."""
        now = self._clock()
        expired = [key for key, (_, seen_at) in self._platform_by_user.items() if now - seen_at > self._ttl_sec]
        for key in expired:
            del self._platform_by_user[key]
        self._platform_by_user[user_id] = (platform, now)

    def platform_for(self, user_id: str) -> str:
        remembered = self._platform_by_user.get(user_id)
        if remembered is None or self._clock() - remembered[1] > self._ttl_sec:
            return self._default_platform
        return remembered[0]

    def _sender_for(self, user_id: str) -> MessageSender:
        platform = self.platform_for(user_id)
        sender = self._senders.get(platform)
        if sender is None:
            raise DeliveryError(f"no sender configured for platform {platform}")
        return sender

    async def send(self, user_id: str, text: str) -> None:
        await self._sender_for(user_id).send(user_id, text)

    async def send_typing(self, user_id: str) -> None:
        await self._sender_for(user_id).send_typing(user_id)

    async def close(self) -> None:
        for sender in self._senders.values():
            await sender.close()


class RecentMessageIds:
    """TTL set of inbound message ids; webhooks redeliver on slow acknowledgements."""

    def __init__(self, ttl_sec: float = DEDUP_TTL_SEC, clock: Optional[Callable[[], float]] = None) -> None:
        self._ttl_sec = ttl_sec
        self._clock = clock or time.monotonic
        self._seen: Dict[str, float] = {}

    def seen_before(self, message_id: Optional[str]) -> bool:
        """Record message_id and report whether it was already seen within the TTL."""
        if not message_id:
            return False
        now = self._clock()
        expired = [key for key, seen_at in self._seen.items() if now - seen_at > self._ttl_sec]
        for key in expired:
            del self._seen[key]
        if message_id in self._seen:
            return True
        self._seen[message_id] = now
        return False


def verify_messenger_signature(app_secret: str, body: bytes, header: Optional[str]) -> bool:
    """Check X-Hub-Signature-256 ("sha256=<hex>") against the raw request body."""
    if not header or not header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, header.split("=", 1)[1])


def verify_line_signature(channel_secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Check X-Line-Signature (base64 HMAC-SHA256 of the raw body)."""
    if not signature:
        return False
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("utf-8")
    return hmac.compare_digest(expected, signature)
