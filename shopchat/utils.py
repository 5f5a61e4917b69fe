import json
import re
import unicodedata
from typing import Any, Dict, List, Optional

TOKEN_SPLIT_RE = re.compile(r"(\d+(?:\.\d+)?)")
CODE_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*\n?(.*?)\n?```$", re.DOTALL)

# Filler words that carry no product meaning in queries.
TRIVIAL_TOKENS = {
    "ครับ",
    "คับ",
    "ค่ะ",
    "คะ",
    "ค้ะ",
    "นะ",
    "จ้า",
    "จ้ะ",
    "ขอ",
    "มี",
    "ไหม",
    "มั้ย",
    "ราคา",
    "เท่าไหร่",
    "เท่าไร",
    "กี่บาท",
    "หน่อย",
    "the",
    "a",
    "an",
    "of",
    "price",
    "how",
    "much",
}


def _is_stripped(ch: str) -> bool:
    category = unicodedata.category(ch)
    # Punctuation, symbols, separators and control/format characters.
    return category[0] in {"P", "S", "Z", "C"}


def normalize_spaced(text: str) -> str:
    """Purpose: Normalize text for matching while keeping word boundaries.
    Inputs/Outputs: Input is a raw string; output is NFKC, casefolded text where
        punctuation and symbols became single spaces.
    Side Effects / State: None; pure function.
    Dependencies: Uses unicodedata; called by tokenize and the catalog parser.
    Failure Modes: Returns an empty string when input is falsy.
    If Removed: Tokenization loses its common normalization pass.
    Testing Notes: Thai combining marks must survive ("เบา" stays "เบา").
    """
    # Unicode-normalize first so full-width digits and ligatures fold.
    if not text:
        return ""
    folded = unicodedata.normalize("NFKC", unicodedata.normalize("NFKC", text).casefold())
    chars = [" " if _is_stripped(ch) else ch for ch in folded]
    # Removing characters can leave new composable pairs behind.
    joined = unicodedata.normalize("NFKC", "".join(chars))
    return re.sub(r"\s+", " ", joined).strip()


def normalize_key(text: str) -> str:
    """Purpose: Produce the compact normalization key used by every lookup.
    Inputs/Outputs: Input is a raw string; output has no whitespace or punctuation.
    Side Effects / State: None; pure function.
    Dependencies: Calls normalize_spaced.
    Failure Modes: Returns empty string for falsy input; otherwise deterministic.
    If Removed: Catalog entries and queries stop normalizing the same way.
    Testing Notes: normalize_key(normalize_key(x)) == normalize_key(x).
    """
    # Collapse normalization output into a compact key.
    return normalize_spaced(text).replace(" ", "")


def tokenize(text: str) -> List[str]:
    """Purpose: Split text into normalized tokens, separating digits from letters.
    Inputs/Outputs: Input is a raw string; output is a list of tokens in order.
    Side Effects / State: None.
    Dependencies: Uses normalize_spaced and TOKEN_SPLIT_RE.
    Failure Modes: Empty input yields an empty list.
    If Removed: Thai queries without spaces ("ซีลาย26") cannot be matched.
    Testing Notes: "ซีลาย26 เบา" -> ["ซีลาย", "26", "เบา"].
    """
    # Split on spaces first, then on letter/digit boundaries.
    tokens: List[str] = []
    for word in normalize_spaced(text).split():
        for part in TOKEN_SPLIT_RE.split(word):
            if part:
                tokens.append(part)
    return tokens


def is_numeric_token(token: str) -> bool:
    return bool(re.fullmatch(r"\d+(?:\.\d+)?", token))


def meaningful_tokens(text: str) -> List[str]:
    """Drop filler words and single non-digit characters from the token list."""
    return [
        token
        for token in tokenize(text)
        if token not in TRIVIAL_TOKENS and (len(token) > 1 or token.isdigit())
    ]


def strip_code_fence(text: str) -> str:
    """Purpose: Remove a single markdown code fence wrapping a model reply.
    Inputs/Outputs: Input is raw model text; output is the inner text or the
        stripped input when no fence wraps the whole reply.
    Side Effects / State: None.
    Dependencies: Uses CODE_FENCE_RE.
    Failure Modes: Text outside the fence is kept, so strict parsing fails later.
    If Removed: Fenced JSON replies would always fall back.
    Testing Notes: "```json\\n{}\\n```" -> "{}".
    """
    # Only a fence that spans the whole reply is unwrapped.
    stripped = (text or "").strip()
    match = CODE_FENCE_RE.match(stripped)
    if match:
        return match.group(1).strip()
    return stripped


def strict_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Purpose: Parse a model reply that must be exactly one JSON object.
    Inputs/Outputs: Input is raw text; output is a dict or None if parsing fails.
    Side Effects / State: None; pure function.
    Dependencies: Uses strip_code_fence and json.loads.
    Failure Modes: Returns None for partial JSON, prose around JSON, or non-objects.
    If Removed: Garbage replies could be half-accepted by the reassembler.
    Testing Notes: 'Sure! {"a": 1}' returns None; '{"a": 1}' returns a dict.
    """
    # No brace extraction: anything but a whole object is rejected.
    candidate = strip_code_fence(text)
    if not candidate:
        return None
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    return data


def mask_user_id(value: object) -> str:
    """Mask a platform user id for logs, keeping the last four characters."""
    text = str(value or "")
    if len(text) <= 4:
        return "***"
    return "***" + text[-4:]
