from __future__ import annotations

from functools import lru_cache
from pathlib import Path


@lru_cache(maxsize=32)
def load_prompt(prompt_path: Path) -> str:
    """Purpose: Load a prompt file as UTF-8 text and strip BOM if present.
    Inputs/Outputs: Input is a Path to the prompt file; output is the decoded string.
    Side Effects / State: Caches the text per path for the process lifetime.
    Dependencies: Uses Path.read_text/read_bytes; used by the reassembler and orchestrator.
    Failure Modes: UnicodeDecodeError triggers a tolerant decode that drops invalid
        bytes; a missing file raises FileNotFoundError.
    If Removed: Normalizer and assistant prompts cannot be built.
    Testing Notes: Validate BOM-stripping and fallback decoding on non-UTF8 files.
    """
    # Read as UTF-8 and fall back to a tolerant decode if needed.
    try:
        text = prompt_path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        text = prompt_path.read_bytes().decode("utf-8", errors="ignore")
    return text.lstrip("\ufeff").strip()
