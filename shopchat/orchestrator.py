from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .catalog import CatalogSnapshot
from .completion import CompletionClient
from .conversation_store import ConversationStore
from .errors import CompletionTransportError
from .models import ConversationTurn, MergedTurn
from .prompt_loader import load_prompt
from .utils import mask_user_id

logger = logging.getLogger("shopchat.orchestrator")

EMPTY_CATALOG_LINE = "(ยังไม่มีข้อมูลสินค้าในระบบ ให้แนะนำลูกค้าติดต่อเจ้าหน้าที่)"


class ResponseOrchestrator:
    def __init__(
        self,
        completion: CompletionClient,
        store: ConversationStore,
        catalog_provider: Callable[[], CatalogSnapshot],
        prompts_dir: Path,
        history_turns: int,
        fallback_reply: str,
        human_contact: str,
        timeout: Optional[float] = None,
    ) -> None:
        """Purpose: Wire the assistant model, history store and catalog together.
        Inputs/Outputs: Inputs are the completion client, store, a callable that
            returns the current catalog snapshot, prompt dir, history size,
            fallback text, human contact text and completion timeout.
        Side Effects / State: None at init.
        Dependencies: CompletionClient, ConversationStore, CatalogSnapshot.
        Failure Modes: None at init.
        If Removed: No reply can be produced for a merged turn.
        Testing Notes: Use a fake completion client and the in-memory store.
        """
        # The provider is read per turn so catalog reloads take effect immediately.
        self._completion = completion
        self._store = store
        self._catalog_provider = catalog_provider
        self._prompts_dir = prompts_dir
        self._history_turns = history_turns
        self._fallback_reply = fallback_reply
        self._human_contact = human_contact
        self._timeout = timeout

    @property
    def fallback_reply(self) -> str:
        return self._fallback_reply

    def build_system_prompt(self, catalog: CatalogSnapshot) -> str:
        """Render the assistant prompt with the full catalog embedded."""
        template = load_prompt(self._prompts_dir / "assistant_system.txt")
        lines = catalog.render_lines() or [EMPTY_CATALOG_LINE]
        return template.replace("{human_contact}", self._human_contact).replace("{catalog}", "\n".join(lines))

    def build_messages(self, merged_turn: MergedTurn, history: Sequence[ConversationTurn]) -> List[ConversationTurn]:
        """Purpose: Build the ordered message list sent after the system prompt.
        Inputs/Outputs: Inputs are the merged turn and stored history; output is
            the last N history turns plus the user's merged utterance.
        Side Effects / State: None.
        Dependencies: ConversationTurn.
        Failure Modes: None.
        If Removed: The model would only see the latest utterance.
        Testing Notes: History is trimmed to history_turns; items are summarized.
        """
        # History tail first, then the current utterance with a compact item note.
        messages = list(history)[-self._history_turns :] if self._history_turns > 0 else []
        messages.append(ConversationTurn(role="user", content=compose_user_content(merged_turn)))
        return messages

    async def handle_turn(
        self, user_id: str, merged_turn: MergedTurn, history: Sequence[ConversationTurn]
    ) -> str:
        """Purpose: Produce the assistant reply for one merged turn and record it.
        Inputs/Outputs: Inputs are user_id, merged turn and recent history; output is
            the reply text (model answer or the fixed apology).
        Side Effects / State: One completion call; appends the user utterance and
            the reply to the conversation store.
        Dependencies: CompletionClient.complete, ConversationStore.append.
        Failure Modes: Timeouts, transport errors and empty completions become the
            fallback reply, never retried. Store failures propagate.
        If Removed: Users never receive an answer.
        Testing Notes: A timed-out completion returns the fallback and the store
            still holds both turns.
        """
        # Snapshot the catalog once for the whole turn.
        catalog = self._catalog_provider()
        system_prompt = self.build_system_prompt(catalog)
        messages = self.build_messages(merged_turn, history)
        try:
            reply = await self._completion.complete(system_prompt, messages, timeout=self._timeout)
        except CompletionTransportError as exc:
            logger.error("user=%s assistant completion failed: %s", mask_user_id(user_id), exc)
            reply = self._fallback_reply

        await self._store.append(
            user_id,
            [
                ConversationTurn(role="user", content=merged_turn.merged_text),
                ConversationTurn(role="assistant", content=reply),
            ],
        )
        logger.info("user=%s reply_chars=%d", mask_user_id(user_id), len(reply))
        return reply


def compose_user_content(merged_turn: MergedTurn) -> str:
    # Items are a hint for the model; the merged text stays the primary content.
    if not merged_turn.items:
        return merged_turn.merged_text
    parts = []
    for item in merged_turn.items:
        qty = f" x{item.qty:g}" if item.qty is not None else ""
        unit = f" {item.unit}" if item.unit else ""
        parts.append(f"{item.product}{qty}{unit}")
    return f"{merged_turn.merged_text}\n[รายการที่ลูกค้าพูดถึง: {'; '.join(parts)}]"
