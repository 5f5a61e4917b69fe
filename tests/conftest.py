from __future__ import annotations

import asyncio
import dataclasses
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import pytest

from shopchat.catalog import CatalogSnapshot, parse_catalog_csv
from shopchat.completion import CompletionClient
from shopchat.config import load_settings
from shopchat.errors import DeliveryError
from shopchat.messaging import MessageSender
from shopchat.models import ConversationTurn

PROMPTS_DIR = Path(__file__).resolve().parents[1] / "shopchat" / "prompts"

CATALOG_CSV = """\
ชื่อสินค้า,ราคา,หน่วย,ชื่อเรียก,หมวด,ขนาด,จำนวนต่อมัด
ซีลาย #26 เต็ม,185,เส้น,ซีลาย26เต็ม|C-line 26 full,โครงฝ้า,0.50 x 26 x 4000 มม.,10
ซีลาย #26 เบา,150,เส้น,ซีลาย26เบา|C-line 26 light,โครงฝ้า,0.35 x 26 x 4000 มม.,10
ซีลาย #32 เต็ม,210,เส้น,ซีลาย32เต็ม,โครงฝ้า,0.50 x 32 x 4000 มม.,10
โครงคร่าว #24,95,เส้น,ทีบาร์24|T-bar 24,โครงฝ้า,24 x 3660 มม.,20
ยิปซัมบอร์ด 9 มม.,160,แผ่น,แผ่นยิปซัม|gypsum board,แผ่นฝ้า,1.20 x 2.40 ม.,
"""

HANG = object()

Reply = Union[str, BaseException, object]


class ScriptedCompletion(CompletionClient):
    """Completion fake: replies are queued per model name; the base class enforces timeouts."""

    def __init__(self, replies: Optional[Dict[str, List[Reply]]] = None, timeout: float = 1.0) -> None:
        super().__init__("assistant", temperature=0.4, timeout=timeout)
        self.replies: Dict[str, List[Reply]] = {key: list(value) for key, value in (replies or {}).items()}
        self.calls: List[dict] = []

    def queue(self, model: str, *replies: Reply) -> None:
        self.replies.setdefault(model, []).extend(replies)

    async def _request(
        self, system_prompt: str, messages: List[ConversationTurn], model: str, temperature: float
    ) -> str:
        self.calls.append(
            {"system_prompt": system_prompt, "messages": list(messages), "model": model, "temperature": temperature}
        )
        queue = self.replies.get(model) or []
        reply = queue.pop(0) if queue else ""
        if reply is HANG:
            await asyncio.sleep(3600)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    def calls_for(self, model: str) -> List[dict]:
        return [call for call in self.calls if call["model"] == model]


class RecordingSender(MessageSender):
    def __init__(self, fail: bool = False) -> None:
        self.sent: List[tuple] = []
        self.typing: List[str] = []
        self.fail = fail

    async def send(self, user_id: str, text: str) -> None:
        if self.fail:
            raise DeliveryError("platform rejected the message", status_code=400)
        self.sent.append((user_id, text))

    async def send_typing(self, user_id: str) -> None:
        self.typing.append(user_id)


@pytest.fixture
def catalog() -> CatalogSnapshot:
    return CatalogSnapshot(records=parse_catalog_csv(CATALOG_CSV))


@pytest.fixture
def catalog_file(tmp_path: Path) -> Path:
    path = tmp_path / "products.csv"
    path.write_text(CATALOG_CSV, encoding="utf-8")
    return path


@pytest.fixture
def completion() -> ScriptedCompletion:
    return ScriptedCompletion()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def prompts_dir() -> Path:
    return PROMPTS_DIR


@pytest.fixture
def settings_factory(catalog_file: Path):
    def build(**overrides):
        base = dataclasses.replace(
            load_settings(),
            catalog_source=str(catalog_file),
            redis_url="",
            facebook_verify_token="verify-me",
            facebook_app_secret="",
            line_channel_secret="",
            admin_token="",
            silence_window_sec=100.0,
            max_buffer_window_sec=200.0,
        )
        return dataclasses.replace(base, **overrides)

    return build


def turns(*pairs: Sequence[str]) -> List[ConversationTurn]:
    return [ConversationTurn(role=role, content=content) for role, content in pairs]
