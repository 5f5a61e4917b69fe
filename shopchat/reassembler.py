from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from .completion import CompletionClient
from .errors import CompletionParseError, CompletionTransportError
from .models import ConversationTurn, MergedItem, MergedTurn
from .prompt_loader import load_prompt
from .utils import strict_json_object

logger = logging.getLogger("shopchat.reassembler")

FALLBACK_SEPARATOR = " / "
HISTORY_CONTEXT_TURNS = 4


def fallback_merge(fragments: Sequence[str]) -> MergedTurn:
    """Purpose: Deterministic merge used whenever the normalizer cannot be trusted.
    Inputs/Outputs: Input is the ordered fragments; output is a MergedTurn with the
        fragments joined by " / ", no items and the joined text as the only followup.
    Side Effects / State: None.
    Dependencies: None.
    Failure Modes: None; total for any input.
    If Removed: A normalizer outage would drop the user's turn.
    Testing Notes: ["a", "b"] -> mergedText "a / b", followups ["a / b"].
    """
    # Keep the raw order; no cleverness on the failure path.
    joined = FALLBACK_SEPARATOR.join(fragments)
    return MergedTurn(merged_text=joined, items=[], followups=[joined])


def parse_normalizer_reply(raw: str) -> MergedTurn:
    """Purpose: Strictly parse the normalizer's JSON reply into a MergedTurn.
    Inputs/Outputs: Input is raw model text; output is a MergedTurn.
    Side Effects / State: None.
    Dependencies: Uses strict_json_object and pydantic validation.
    Failure Modes: Raises CompletionParseError for non-JSON, non-object, missing or
        empty mergedText, or any invalid item. Nothing is partially accepted.
    If Removed: The reassembler cannot consume normalizer output.
    Testing Notes: '{"mergedText": "x"}' parses; '{"items": []}' raises.
    """
    # Whole-object parse first, then field-by-field validation.
    data = strict_json_object(raw)
    if data is None:
        raise CompletionParseError("normalizer reply is not a JSON object")
    merged_text = data.get("mergedText")
    if not isinstance(merged_text, str) or not merged_text.strip():
        raise CompletionParseError("normalizer reply is missing mergedText")

    # Absent keys mean empty; a present key must hold a list.
    items_raw = data.get("items", [])
    followups_raw = data.get("followups", [])
    if not isinstance(items_raw, list) or not isinstance(followups_raw, list):
        raise CompletionParseError("normalizer items/followups must be lists")
    try:
        items = [MergedItem.model_validate(item) for item in items_raw]
    except ValidationError as exc:
        raise CompletionParseError(f"invalid normalizer item: {exc.errors()[:1]}") from exc
    if not all(isinstance(entry, str) for entry in followups_raw):
        raise CompletionParseError("normalizer followups must be strings")
    followups = [entry.strip() for entry in followups_raw if entry.strip()]
    return MergedTurn(merged_text=merged_text.strip(), items=items, followups=followups)


class Reassembler:
    def __init__(
        self,
        completion: CompletionClient,
        prompts_dir: Path,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._completion = completion
        self._prompts_dir = prompts_dir
        self._model = model
        self._timeout = timeout

    async def reassemble(self, fragments: Sequence[str], recent_history: Sequence[ConversationTurn]) -> MergedTurn:
        """Purpose: Merge buffered fragments into one normalized turn.
        Inputs/Outputs: Inputs are non-empty ordered fragments and recent history;
            output is a MergedTurn.
        Side Effects / State: One completion call; logs fallbacks.
        Dependencies: CompletionClient, reassembler prompt, parse_normalizer_reply.
        Failure Modes: None raised; transport and parse failures use fallback_merge.
        If Removed: Fragmented messages reach the assistant as separate noise.
        Testing Notes: Garbage, empty and timed-out replies all yield the fallback.
        """
        # Ask for strict JSON; fall back on any failure.
        if not fragments:
            raise ValueError("reassemble needs at least one fragment")
        system_prompt = load_prompt(self._prompts_dir / "reassembler.txt")
        request = ConversationTurn(role="user", content=build_normalizer_input(fragments, recent_history))
        try:
            raw = await self._completion.complete(
                system_prompt,
                [request],
                model=self._model,
                temperature=0.0,
                timeout=self._timeout,
            )
            merged = parse_normalizer_reply(raw)
        except CompletionTransportError as exc:
            logger.warning("normalizer unavailable, using fallback merge: %s", exc)
            return fallback_merge(fragments)
        except CompletionParseError as exc:
            logger.warning("normalizer reply rejected, using fallback merge: %s", exc)
            return fallback_merge(fragments)
        except Exception:
            logger.exception("normalizer call crashed, using fallback merge")
            return fallback_merge(fragments)
        logger.debug("merged fragments=%d items=%d", len(fragments), len(merged.items))
        return merged


def build_normalizer_input(fragments: Sequence[str], recent_history: Sequence[ConversationTurn]) -> str:
    lines: List[str] = ["FRAGMENTS:"]
    lines.extend(fragment.strip() for fragment in fragments)
    tail = list(recent_history)[-HISTORY_CONTEXT_TURNS:]
    if tail:
        lines.append("")
        lines.append("HISTORY:")
        lines.extend(f"{turn.role}: {turn.content}" for turn in tail)
    return "\n".join(lines)


def merged_turn_to_log(merged: MergedTurn) -> Dict[str, Any]:
    return {
        "merged_text": merged.merged_text,
        "items": [item.model_dump() for item in merged.items],
        "followups": merged.followups,
    }
