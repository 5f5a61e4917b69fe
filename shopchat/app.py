from __future__ import annotations

import json
import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Tuple

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import PlainTextResponse

from .catalog import CatalogIndex
from .completion import CompletionClient, build_completion_client
from .config import Settings, load_settings
from .conversation_store import ConversationStore, build_conversation_store
from .errors import CatalogLoadError
from .fragment_buffer import FragmentBuffer
from .intent_carry import IntentCarryTracker
from .messaging import (
    LineSender,
    MessageSender,
    MessengerSender,
    PlatformRouter,
    RecentMessageIds,
    verify_line_signature,
    verify_messenger_signature,
)
from .models import HealthResponse, InboundEvent, ReloadResponse
from .orchestrator import ResponseOrchestrator
from .reassembler import Reassembler
from .session_manager import ChatSessionManager
from .utils import mask_user_id

BASE_DIR = Path(__file__).resolve().parent

log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

logging.getLogger("shopchat").setLevel(log_level)
logger = logging.getLogger("shopchat.app")

ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)


@dataclass
class AppServices:
    """Everything the HTTP layer needs, built once per application lifespan."""
    settings: Settings
    catalog: CatalogIndex
    store: ConversationStore
    completion: CompletionClient
    router: PlatformRouter
    manager: ChatSessionManager
    dedup: RecentMessageIds


def build_services(
    settings: Settings,
    completion: Optional[CompletionClient] = None,
    senders: Optional[Dict[str, MessageSender]] = None,
    store: Optional[ConversationStore] = None,
) -> AppServices:
    """Purpose: Construct the core components and transports from settings.
    Inputs/Outputs: Inputs are Settings and optional overrides for the completion
        client, per-platform senders and store; output is AppServices.
    Side Effects / State: May open HTTP pools or a Redis connection pool.
    Dependencies: All core component constructors.
    Failure Modes: Invalid provider configuration raises ValueError.
    If Removed: The app has nothing to serve requests with.
    Testing Notes: Pass fakes to exercise the webhook routes offline.
    """
    # Wire leaf components first, then the coordinator.
    catalog = CatalogIndex()
    store = store or build_conversation_store(
        settings.redis_url, max_turns=settings.history_turns, ttl_seconds=settings.chat_ttl_seconds
    )
    completion = completion or build_completion_client(settings)
    if senders is None:
        senders = {
            "messenger": MessengerSender(settings.facebook_page_token),
            "line": LineSender(settings.line_access_token),
        }
    router = PlatformRouter(senders)
    orchestrator = ResponseOrchestrator(
        completion=completion,
        store=store,
        catalog_provider=lambda: catalog.snapshot,
        prompts_dir=settings.prompts_dir,
        history_turns=settings.history_turns,
        fallback_reply=settings.fallback_reply,
        human_contact=settings.human_contact,
        timeout=settings.completion_timeout_sec,
    )
    manager = ChatSessionManager(
        buffer=FragmentBuffer(
            silence_sec=settings.silence_window_sec,
            max_fragments=settings.max_fragments,
            max_window_sec=settings.max_buffer_window_sec,
        ),
        reassembler=Reassembler(
            completion,
            settings.prompts_dir,
            model=settings.reassembler_model,
            timeout=settings.reassembler_timeout_sec,
        ),
        intent_tracker=IntentCarryTracker(),
        orchestrator=orchestrator,
        store=store,
        catalog=catalog,
        sender=router,
    )
    return AppServices(
        settings=settings,
        catalog=catalog,
        store=store,
        completion=completion,
        router=router,
        manager=manager,
        dedup=RecentMessageIds(),
    )


def create_app(
    settings: Optional[Settings] = None,
    completion: Optional[CompletionClient] = None,
    senders: Optional[Dict[str, MessageSender]] = None,
    store: Optional[ConversationStore] = None,
) -> FastAPI:
    """Build the FastAPI application; overrides are for tests and embedding."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Catalog problems never stop startup.
        resolved = settings or load_settings()
        services = build_services(resolved, completion=completion, senders=senders, store=store)
        await services.catalog.load_or_empty(resolved.catalog_source)
        app.state.services = services
        logger.info(
            "shopchat ready provider=%s model=%s products=%d",
            resolved.completion_provider,
            resolved.model,
            len(services.catalog.snapshot),
        )
        try:
            yield
        finally:
            await services.manager.shutdown()
            await services.router.close()
            await services.completion.close()
            await services.store.close()

    app = FastAPI(title="shopchat retail assistant", lifespan=lifespan)

    @app.get("/health", response_model=HealthResponse)
    def health(services: AppServices = Depends(get_services)) -> HealthResponse:
        """Report liveness plus catalog size and pending buffers."""
        return HealthResponse(
            status="ok",
            catalog_products=len(services.catalog.snapshot),
            pending_buffers=len(services.manager.buffer.pending_users()),
        )

    @app.get("/webhook")
    def verify_messenger_webhook(request: Request, services: AppServices = Depends(get_services)) -> PlainTextResponse:
        """Purpose: Answer the Messenger subscription handshake.
        Inputs/Outputs: Reads hub.mode, hub.verify_token and hub.challenge query
            params; returns the challenge as plain text.
        Side Effects / State: None.
        Dependencies: Settings.facebook_verify_token.
        Failure Modes: Mismatched token or mode returns 403.
        If Removed: The Messenger webhook cannot be subscribed.
        Testing Notes: Correct token echoes the challenge.
        """
        # Compare against the configured verify token only.
        params = request.query_params
        token = services.settings.facebook_verify_token
        if params.get("hub.mode") == "subscribe" and token and params.get("hub.verify_token") == token:
            return PlainTextResponse(params.get("hub.challenge", ""))
        raise HTTPException(status_code=403, detail="verification failed")

    @app.post("/webhook")
    async def messenger_webhook(
        request: Request,
        x_hub_signature_256: Optional[str] = Header(default=None),
        services: AppServices = Depends(get_services),
    ) -> Dict[str, str]:
        """Purpose: Accept Messenger events and push text messages into the core.
        Inputs/Outputs: Raw JSON body; returns {"status": "ok"} immediately.
        Side Effects / State: Records message ids, platform routing and buffers text.
        Dependencies: verify_messenger_signature, extract_messenger_messages,
            ChatSessionManager.receive.
        Failure Modes: Bad signature returns 403; malformed bodies are logged and
            acknowledged so the platform does not retry forever.
        If Removed: Messenger users cannot talk to the assistant.
        Testing Notes: A duplicate mid is buffered once.
        """
        # Verify against the raw bytes before parsing anything.
        body = await request.body()
        secret = services.settings.facebook_app_secret
        if secret and not verify_messenger_signature(secret, body, x_hub_signature_256):
            raise HTTPException(status_code=403, detail="invalid signature")
        payload = _parse_json(body)
        if payload is None or payload.get("object") != "page":
            return {"status": "ignored"}
        for psid, text, mid, timestamp in extract_messenger_messages(payload):
            if services.dedup.seen_before(mid):
                logger.info("user=%s duplicate mid skipped", mask_user_id(psid))
                continue
            services.router.remember(psid, "messenger")
            services.manager.receive(
                InboundEvent(user_id=psid, text=text, timestamp=timestamp, platform="messenger", message_id=mid)
            )
        return {"status": "ok"}

    @app.post("/line/webhook")
    async def line_webhook(
        request: Request,
        x_line_signature: Optional[str] = Header(default=None),
        services: AppServices = Depends(get_services),
    ) -> Dict[str, str]:
        """Accept LINE events; text message events from users go to the core."""
        body = await request.body()
        secret = services.settings.line_channel_secret
        if secret:
            if not verify_line_signature(secret, body, x_line_signature):
                raise HTTPException(status_code=403, detail="invalid signature")
        else:
            logger.warning("LINE_CHANNEL_SECRET is not set; skipping signature verification")
        payload = _parse_json(body)
        if payload is None:
            return {"status": "ignored"}
        for user_id, text, message_id, timestamp in extract_line_messages(payload):
            if services.dedup.seen_before(message_id):
                continue
            services.router.remember(user_id, "line")
            services.manager.receive(
                InboundEvent(user_id=user_id, text=text, timestamp=timestamp, platform="line", message_id=message_id)
            )
        return {"status": "ok"}

    @app.post("/admin/catalog/reload", response_model=ReloadResponse)
    async def reload_catalog(
        x_admin_token: Optional[str] = Header(default=None),
        services: AppServices = Depends(get_services),
    ) -> ReloadResponse:
        """Rebuild the catalog from CATALOG_SOURCE and swap it in; failures keep the old one."""
        admin_token = services.settings.admin_token
        if admin_token and x_admin_token != admin_token:
            raise HTTPException(status_code=403, detail="invalid admin token")
        try:
            snapshot = await services.catalog.reload(services.settings.catalog_source)
        except CatalogLoadError as exc:
            logger.warning("catalog reload failed, keeping previous snapshot: %s", exc)
            return ReloadResponse(
                reloaded=False, catalog_products=len(services.catalog.snapshot), detail=str(exc)
            )
        return ReloadResponse(reloaded=True, catalog_products=len(snapshot))

    return app


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def _parse_json(body: bytes) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(body.decode("utf-8") or "null")
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("webhook body is not valid JSON")
        return None
    return data if isinstance(data, dict) else None


def extract_messenger_messages(payload: Dict[str, Any]) -> Iterator[Tuple[str, str, Optional[str], float]]:
    """Purpose: Yield (psid, text, mid, timestamp) for plain text Messenger events.
    Inputs/Outputs: Input is the webhook JSON; output is an iterator of tuples.
    Side Effects / State: None.
    Dependencies: None.
    Failure Modes: Non-text events (attachments, echoes, deliveries) and events
        whose nested fields have the wrong JSON shape are skipped.
    If Removed: The webhook cannot separate user text from other events.
    Testing Notes: Both entry.messaging and entry.standby are read.
    """
    # Standby covers pages using the handover protocol.
    for entry in _as_list(payload.get("entry")):
        if not isinstance(entry, dict):
            continue
        events = entry.get("messaging") or entry.get("standby")
        for event in _as_list(events):
            if not isinstance(event, dict):
                continue
            psid = _as_dict(event.get("sender")).get("id")
            message = _as_dict(event.get("message"))
            text = message.get("text")
            if not psid or not isinstance(text, str) or message.get("is_echo"):
                continue
            timestamp = _event_time(event)
            yield str(psid), text.strip(), message.get("mid"), timestamp


def extract_line_messages(payload: Dict[str, Any]) -> Iterator[Tuple[str, str, Optional[str], float]]:
    for event in _as_list(payload.get("events")):
        if not isinstance(event, dict) or event.get("type") != "message":
            continue
        message = _as_dict(event.get("message"))
        user_id = _as_dict(event.get("source")).get("userId")
        text = message.get("text")
        if message.get("type") != "text" or not user_id or not isinstance(text, str):
            continue
        timestamp = _event_time(event)
        yield str(user_id), text.strip(), message.get("id"), timestamp


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _event_time(event: Dict[str, Any]) -> float:
    # Platforms send epoch milliseconds.
    raw = event.get("timestamp")
    if isinstance(raw, (int, float)) and raw > 0:
        return float(raw) / 1000.0
    return time.time()


app = create_app()
