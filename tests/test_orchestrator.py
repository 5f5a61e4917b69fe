import pytest

from conftest import HANG, ScriptedCompletion, turns
from shopchat.catalog import CatalogSnapshot
from shopchat.conversation_store import InMemoryConversationStore
from shopchat.errors import CompletionTransportError
from shopchat.models import MergedItem, MergedTurn
from shopchat.orchestrator import EMPTY_CATALOG_LINE, ResponseOrchestrator, compose_user_content

FALLBACK = "ขอโทษค่ะ ระบบขัดข้องชั่วคราว"
CONTACT = "โทร 02-000-0000"


@pytest.fixture
def store():
    return InMemoryConversationStore(max_turns=10, ttl_seconds=3600)


def build(completion, store, prompts_dir, snapshot, history_turns=10, timeout=None):
    return ResponseOrchestrator(
        completion=completion,
        store=store,
        catalog_provider=lambda: snapshot,
        prompts_dir=prompts_dir,
        history_turns=history_turns,
        fallback_reply=FALLBACK,
        human_contact=CONTACT,
        timeout=timeout,
    )


def merged(text, items=None):
    return MergedTurn(merged_text=text, items=items or [], followups=[])


async def test_reply_is_trimmed_and_recorded(store, prompts_dir, catalog):
    completion = ScriptedCompletion({"assistant": ["  ซีลาย #26 เบา ราคา 150 บาทค่ะ \n"]})
    orchestrator = build(completion, store, prompts_dir, catalog)

    reply = await orchestrator.handle_turn("u1", merged("ซีลาย 26 เบา ราคาเท่าไหร่"), [])

    assert reply == "ซีลาย #26 เบา ราคา 150 บาทค่ะ"
    history = await store.get("u1")
    assert [(turn.role, turn.content) for turn in history] == [
        ("user", "ซีลาย 26 เบา ราคาเท่าไหร่"),
        ("assistant", "ซีลาย #26 เบา ราคา 150 บาทค่ะ"),
    ]


async def test_system_prompt_embeds_catalog_and_contact(store, prompts_dir, catalog):
    completion = ScriptedCompletion({"assistant": ["ok"]})
    await build(completion, store, prompts_dir, catalog).handle_turn("u1", merged("สวัสดี"), [])

    prompt = completion.calls[0]["system_prompt"]
    assert "- ซีลาย #26 เต็ม | ราคา 185 บาท/เส้น" in prompt
    assert "ยิปซัมบอร์ด 9 มม." in prompt
    assert CONTACT in prompt
    assert "{catalog}" not in prompt


async def test_empty_catalog_still_answers(store, prompts_dir):
    completion = ScriptedCompletion({"assistant": ["ติดต่อเจ้าหน้าที่ได้เลยค่ะ"]})
    orchestrator = build(completion, store, prompts_dir, CatalogSnapshot.empty())
    reply = await orchestrator.handle_turn("u1", merged("มีซีลายไหม"), [])
    assert reply == "ติดต่อเจ้าหน้าที่ได้เลยค่ะ"
    assert EMPTY_CATALOG_LINE in completion.calls[0]["system_prompt"]


@pytest.mark.parametrize("failure", [HANG, "", "   ", CompletionTransportError("503")])
async def test_failures_become_fallback_and_are_recorded(store, prompts_dir, catalog, failure):
    completion = ScriptedCompletion({"assistant": [failure]})
    orchestrator = build(completion, store, prompts_dir, catalog, timeout=0.05)

    reply = await orchestrator.handle_turn("u1", merged("ซีลาย 26"), [])

    assert reply == FALLBACK
    assert len(completion.calls) == 1
    history = await store.get("u1")
    assert [turn.content for turn in history] == ["ซีลาย 26", FALLBACK]


async def test_history_is_trimmed_before_current_turn(store, prompts_dir, catalog):
    completion = ScriptedCompletion({"assistant": ["ok"]})
    orchestrator = build(completion, store, prompts_dir, catalog, history_turns=2)
    history = turns(("user", "q1"), ("assistant", "a1"), ("user", "q2"), ("assistant", "a2"))

    await orchestrator.handle_turn("u1", merged("q3"), history)

    sent = completion.calls[0]["messages"]
    assert [(turn.role, turn.content) for turn in sent] == [("user", "q2"), ("assistant", "a2"), ("user", "q3")]


def test_items_are_summarized_after_merged_text():
    turn = merged(
        "เอาซีลาย 26 เบา 10 เส้น กับยิปซัม",
        items=[MergedItem(product="ซีลาย #26 เบา", qty=10, unit="เส้น"), MergedItem(product="ยิปซัมบอร์ด")],
    )
    assert compose_user_content(turn) == (
        "เอาซีลาย 26 เบา 10 เส้น กับยิปซัม\n[รายการที่ลูกค้าพูดถึง: ซีลาย #26 เบา x10 เส้น; ยิปซัมบอร์ด]"
    )
    assert compose_user_content(merged("สวัสดี")) == "สวัสดี"
