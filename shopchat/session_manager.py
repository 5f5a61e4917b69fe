"""Per-user coordination of buffering, reassembly, intent carry and replies.

Role:
    ChatSessionManager is the single owner of every per-user map in the process:
    the fragment buffer registry, the pending-intent register, the per-user turn
    locks and (through the store) the conversation history. Transports call
    receive(); everything after a buffer flush runs through TurnPipeline.

Turn contract (TurnContext fields across steps):
    - fragments: flushed batch in push order; last_fragment drives intent carry.
    - history: recent turns read once per turn.
    - merged: MergedTurn from the reassembler (fallback merge on failure).
    - merged.merged_text: rewritten by intent carry when a hint applies.
    - reply: assistant text or the fixed apology.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Dict, List, Optional

from .catalog import CatalogIndex
from .conversation_store import ConversationStore
from .errors import DeliveryError
from .fragment_buffer import FragmentBuffer
from .intent_carry import IntentCarryTracker
from .models import ConversationTurn, InboundEvent, MergedTurn
from .orchestrator import ResponseOrchestrator
from .messaging import MessageSender
from .pipeline_runtime import TurnPipeline, TurnStep
from .reassembler import Reassembler, merged_turn_to_log
from .utils import mask_user_id

logger = logging.getLogger("shopchat.session")


@dataclass
class _UserLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


@dataclass
class TurnContext:
    """Mutable context passed through each turn step."""
    user_id: str
    fragments: List[str]
    history: List[ConversationTurn] = field(default_factory=list)
    merged: Optional[MergedTurn] = None
    reply: str = ""
    delivered: bool = False

    @property
    def last_fragment(self) -> str:
        return self.fragments[-1] if self.fragments else ""


class ChatSessionManager:
    def __init__(
        self,
        buffer: FragmentBuffer,
        reassembler: Reassembler,
        intent_tracker: IntentCarryTracker,
        orchestrator: ResponseOrchestrator,
        store: ConversationStore,
        catalog: CatalogIndex,
        sender: MessageSender,
    ) -> None:
        """Purpose: Own the per-user state and build the turn pipeline.
        Inputs/Outputs: Inputs are the buffer, reassembler, intent tracker,
            orchestrator, conversation store, catalog holder and outbound sender.
        Side Effects / State: Creates the per-user lock map and the step runner.
        Dependencies: TurnPipeline/TurnStep and the step methods of this class.
        Failure Modes: None at init.
        If Removed: Inbound messages have no path to a reply.
        Testing Notes: Build with fakes and drive receive() + drain().
        """
        # Store collaborators and define the ordered turn steps.
        self._buffer = buffer
        self._reassembler = reassembler
        self._intent_tracker = intent_tracker
        self._orchestrator = orchestrator
        self._store = store
        self._catalog = catalog
        self._sender = sender
        self._locks: Dict[str, _UserLock] = {}
        self._pipeline = TurnPipeline(
            steps=[
                TurnStep("typing", self._step_typing),
                TurnStep("load_history", self._step_load_history),
                TurnStep("reassemble", self._step_reassemble),
                TurnStep("intent_carry", self._step_intent_carry),
                TurnStep("respond", self._step_respond),
                TurnStep("deliver", self._step_deliver, always_run=True),
            ]
        )

    @property
    def buffer(self) -> FragmentBuffer:
        return self._buffer

    @property
    def intent_tracker(self) -> IntentCarryTracker:
        return self._intent_tracker

    def receive(self, event: InboundEvent) -> Optional[asyncio.Task]:
        """Purpose: Hand one verified inbound text message to the fragment buffer.
        Inputs/Outputs: Input is an InboundEvent; returns the flush task when the
            push triggered an immediate flush, otherwise None.
        Side Effects / State: Updates the user's buffer entry.
        Dependencies: FragmentBuffer.push and process_batch.
        Failure Modes: Blank messages are ignored.
        If Removed: Transports cannot reach the core.
        Testing Notes: Pushing the fragment cap returns a task immediately.
        """
        # Whitespace-only messages never open a buffer.
        text = (event.text or "").strip()
        if not text:
            return None
        logger.info("user=%s inbound platform=%s chars=%d", mask_user_id(event.user_id), event.platform, len(text))
        return self._buffer.push(event.user_id, text, partial(self.process_batch, event.user_id))

    async def process_batch(self, user_id: str, fragments: List[str]) -> TurnContext:
        """Purpose: Run one flushed batch through the turn pipeline.
        Inputs/Outputs: Inputs are user_id and the flushed fragments; output is the
            finished TurnContext.
        Side Effects / State: Serializes turns per user with an asyncio.Lock.
        Dependencies: TurnPipeline.run.
        Failure Modes: Step errors are logged; delivery still runs with the
            fallback reply and nothing propagates to other users.
        If Removed: Buffer flushes would have nothing to call.
        Testing Notes: Two batches for one user never interleave their steps.
        """
        # One turn at a time per user; other users proceed independently.
        context = TurnContext(user_id=user_id, fragments=list(fragments))
        slot = self._locks.setdefault(user_id, _UserLock())
        slot.holders += 1
        try:
            async with slot.lock:
                try:
                    await self._pipeline.run(context)
                except Exception:
                    logger.error("user=%s turn finished with errors", mask_user_id(user_id))
        finally:
            slot.holders -= 1
            if slot.holders == 0 and self._locks.get(user_id) is slot:
                del self._locks[user_id]
        return context

    async def reset_user(self, user_id: str) -> None:
        """Forget a user's pending intent and stored history."""
        self._intent_tracker.clear(user_id)
        await self._store.clear(user_id)

    async def shutdown(self) -> None:
        self._buffer.cancel_all()
        await self._buffer.drain()

    async def _step_typing(self, context: TurnContext) -> None:
        # Indicator only; failures are not the user's problem.
        try:
            await self._sender.send_typing(context.user_id)
        except DeliveryError as exc:
            logger.debug("user=%s typing indicator skipped: %s", mask_user_id(context.user_id), exc)

    async def _step_load_history(self, context: TurnContext) -> None:
        context.history = await self._store.get(context.user_id)

    async def _step_reassemble(self, context: TurnContext) -> None:
        context.merged = await self._reassembler.reassemble(context.fragments, context.history)
        logger.debug("user=%s merged=%s", mask_user_id(context.user_id), merged_turn_to_log(context.merged))

    async def _step_intent_carry(self, context: TurnContext) -> None:
        """Purpose: Apply the one-shot pending intent to the merged text.
        Inputs/Outputs: Input is TurnContext; rewrites merged.merged_text in place.
        Side Effects / State: Sets, consumes or discards the user's pending intent.
        Dependencies: IntentCarryTracker.process and the current catalog snapshot.
        Failure Modes: None expected; errors fall through to the pipeline handler.
        If Removed: Clarification answers lose the question they answer.
        Testing Notes: Spec question then bare product adds the spec hint.
        """
        # The newest raw fragment decides; the merged text is the fallback for grouping.
        if context.merged is None:
            raise RuntimeError("turn reached a later step without a merged turn")
        carried = self._intent_tracker.process(
            context.user_id,
            context.last_fragment,
            context.merged.merged_text,
            self._catalog.snapshot,
        )
        if carried != context.merged.merged_text:
            context.merged = context.merged.model_copy(update={"merged_text": carried})

    async def _step_respond(self, context: TurnContext) -> None:
        if context.merged is None:
            raise RuntimeError("turn reached a later step without a merged turn")
        context.reply = await self._orchestrator.handle_turn(context.user_id, context.merged, context.history)

    async def _step_deliver(self, context: TurnContext) -> None:
        """Purpose: Send the reply, or the apology when an earlier step failed.
        Inputs/Outputs: Input is TurnContext; sets delivered.
        Side Effects / State: One outbound send.
        Dependencies: MessageSender.send.
        Failure Modes: DeliveryError is logged only; state is not rolled back.
        If Removed: Replies are computed but never reach the user.
        Testing Notes: A failing sender leaves the stored history intact.
        """
        # Never leave the user in silence.
        reply = context.reply or self._orchestrator.fallback_reply
        context.reply = reply
        try:
            await self._sender.send(context.user_id, reply)
            context.delivered = True
        except DeliveryError as exc:
            logger.error("user=%s delivery failed: %s", mask_user_id(context.user_id), exc)
