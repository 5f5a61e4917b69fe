from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .catalog import CatalogSnapshot
from .utils import mask_user_id, meaningful_tokens, normalize_spaced

logger = logging.getLogger("shopchat.intent")

# Thai has no word breaks, so only the English terms use \b.
SPEC_RE = re.compile(
    r"(ขนาด|ไซส์|ไซซ์|ไซด์|สเปค|สเป็ค|สเปก|กว้าง|ยาว|หนา|เส้นผ่า|มิติ|\bsize\b|\bspecs?\b|\bdimensions?\b|\bwidth\b|\blength\b|\bthickness\b)",
    re.IGNORECASE,
)
BUNDLE_RE = re.compile(
    r"(กี่เส้น|กี่ชิ้น|กี่อัน|กี่ท่อน|มัดละ|ต่อมัด|ในมัด|1 ?มัด|หนึ่งมัด|มัดนึง|มัดหนึ่ง|\bper bundle\b|\bpcs per\b|\bbundles?\b)",
    re.IGNORECASE,
)

SPEC_HINT = "(ลูกค้าถามขนาด/สเปคของสินค้านี้ต่อจากข้อความก่อนหน้า กรุณาแจ้งขนาดให้ชัดเจน)"
BUNDLE_HINT = "(ลูกค้าถามว่าสินค้านี้ 1 มัดมีกี่ชิ้นต่อจากข้อความก่อนหน้า กรุณาแจ้งจำนวนต่อมัด)"

PENDING_MAX_AGE_SEC = 15 * 60


@dataclass(frozen=True)
class PendingIntent:
    """One-shot clarification intent carried into the user's next turn."""
    user_id: str
    wants_spec: bool
    wants_bundle: bool
    product_group: Optional[str]
    created_at: float


def asks_spec(text: str) -> bool:
    return bool(SPEC_RE.search(normalize_spaced(text)))


def asks_bundle(text: str) -> bool:
    return bool(BUNDLE_RE.search(normalize_spaced(text)))


def looks_like_bare_product(text: str) -> bool:
    """Purpose: Decide whether a fragment is just a product reference.
    Inputs/Outputs: Input is the raw fragment; output is True for a bare reference.
    Side Effects / State: None.
    Dependencies: Uses meaningful_tokens and the spec/bundle patterns.
    Failure Modes: Heuristic; long sentences with product names also pass.
    If Removed: Carried hints would attach to unrelated follow-ups.
    Testing Notes: "26เต็ม" is bare; "ขนาดเท่าไหร่" and "ครับ" are not.
    """
    # Needs substance and must not be a new spec/bundle question.
    if not meaningful_tokens(text):
        return False
    return not asks_spec(text) and not asks_bundle(text)


class IntentCarryTracker:
    """Single-entry-per-user register of pending spec/bundle questions."""

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        max_age_sec: float = PENDING_MAX_AGE_SEC,
    ) -> None:
        self._clock = clock or time.time
        self._max_age_sec = max_age_sec
        self._pending: Dict[str, PendingIntent] = {}

    def pending(self, user_id: str) -> Optional[PendingIntent]:
        return self._pending.get(user_id)

    def clear(self, user_id: str) -> None:
        self._pending.pop(user_id, None)

    def process(self, user_id: str, fragment: str, merged_text: str, catalog: CatalogSnapshot) -> str:
        """Purpose: Set, carry or discard the user's pending clarification intent.
        Inputs/Outputs: Inputs are user_id, the last raw fragment of the batch, the
            merged text and the catalog snapshot; output is the (possibly hinted)
            merged text.
        Side Effects / State: Overwrites the pending intent when the fragment asks
            about spec/bundle; otherwise always deletes any pending intent.
        Dependencies: asks_spec/asks_bundle, looks_like_bare_product,
            CatalogSnapshot.best_guess_group.
        Failure Modes: None; unmatched groups simply produce no hint.
        If Removed: "what size?" -> "26เต็ม" exchanges lose their context.
        Testing Notes: An intent never survives two turns; a different product
            group on the next turn adds no hint.
        """
        # Step 1: classify the newest fragment.
        wants_spec = asks_spec(fragment)
        wants_bundle = asks_bundle(fragment)

        # Step 2: a new question replaces whatever was pending.
        if wants_spec or wants_bundle:
            group = catalog.best_guess_group(fragment) or catalog.best_guess_group(merged_text)
            self._pending[user_id] = PendingIntent(
                user_id=user_id,
                wants_spec=wants_spec,
                wants_bundle=wants_bundle,
                product_group=group,
                created_at=self._clock(),
            )
            logger.info(
                "user=%s pending intent set spec=%s bundle=%s group=%s",
                mask_user_id(user_id),
                wants_spec,
                wants_bundle,
                group,
            )
            return merged_text

        # Step 3: consume-or-discard, strictly one shot.
        pending = self._pending.pop(user_id, None)
        if pending is None:
            return merged_text
        if self._clock() - pending.created_at > self._max_age_sec:
            logger.info("user=%s pending intent expired", mask_user_id(user_id))
            return merged_text
        if not looks_like_bare_product(fragment):
            logger.info("user=%s pending intent dropped: not a bare product reference", mask_user_id(user_id))
            return merged_text

        group = catalog.best_guess_group(fragment)
        if pending.product_group is None or group is None or group != pending.product_group:
            logger.info(
                "user=%s pending intent dropped: topic switch %s -> %s",
                mask_user_id(user_id),
                pending.product_group,
                group,
            )
            return merged_text

        hints = []
        if pending.wants_spec:
            hints.append(SPEC_HINT)
        if pending.wants_bundle:
            hints.append(BUNDLE_HINT)
        logger.info("user=%s pending intent carried group=%s", mask_user_id(user_id), group)
        return " ".join([merged_text.rstrip(), *hints])
