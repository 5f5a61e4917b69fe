from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent

DEFAULT_OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_HUMAN_CONTACT = "ทักแชทแอดมินหรือโทร 02-000-0000 ในเวลาทำการ"


@dataclass(frozen=True)
class Settings:
    """Configuration container for buffering, history, models and transports."""
    silence_window_sec: float
    max_fragments: int
    max_buffer_window_sec: float
    history_turns: int
    chat_ttl_seconds: int
    completion_timeout_sec: float
    reassembler_timeout_sec: float
    model: str
    reassembler_model: str
    temperature: float
    completion_provider: str
    openrouter_api_key: str
    openrouter_url: str
    gemini_api_key: str
    facebook_page_token: str
    facebook_verify_token: str
    facebook_app_secret: str
    line_access_token: str
    line_channel_secret: str
    catalog_source: str
    redis_url: str
    admin_token: str
    human_contact: str
    prompts_dir: Path

    @property
    def fallback_reply(self) -> str:
        """Fixed apology sent whenever the assistant model cannot answer."""
        return (
            "ขอโทษค่ะ ระบบขัดข้องชั่วคราว กรุณาลองพิมพ์อีกครั้ง "
            f"หรือติดต่อเจ้าหน้าที่โดยตรง: {self.human_contact} 🙏"
        )


def _env_str(key: str, default: str = "") -> str:
    return (os.getenv(key) or default).strip()


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and filesystem paths.
    Dependencies: Uses os.getenv and BASE_DIR for default paths.
    Failure Modes: Invalid numeric env values raise ValueError.
    If Removed: App cannot configure buffers/models/transports and fails at startup.
    Testing Notes: Verify defaults and overrides via environment variables.
    """
    # Resolve the catalog source relative to the package when left unset.
    catalog_source = _env_str("CATALOG_SOURCE")
    if not catalog_source:
        catalog_source = str((BASE_DIR / "data" / "products.csv").resolve())

    model = _env_str("MODEL", "openai/gpt-3.5-turbo")

    return Settings(
        silence_window_sec=float(os.getenv("SILENCE_WINDOW_SEC", "15")),
        max_fragments=int(os.getenv("MAX_FRAGMENTS", "16")),
        max_buffer_window_sec=float(os.getenv("MAX_BUFFER_WINDOW_SEC", "60")),
        history_turns=int(os.getenv("HISTORY_TURNS", "10")),
        chat_ttl_seconds=int(os.getenv("CHAT_TTL_SECONDS", "86400")),
        completion_timeout_sec=float(os.getenv("COMPLETION_TIMEOUT_SEC", "25")),
        reassembler_timeout_sec=float(os.getenv("REASSEMBLER_TIMEOUT_SEC", "15")),
        model=model,
        reassembler_model=_env_str("REASSEMBLER_MODEL") or model,
        temperature=float(os.getenv("TEMPERATURE", "0.4")),
        completion_provider=_env_str("COMPLETION_PROVIDER", "openrouter").lower(),
        openrouter_api_key=_env_str("OPENROUTER_API_KEY"),
        openrouter_url=_env_str("OPENROUTER_URL", DEFAULT_OPENROUTER_URL),
        gemini_api_key=_env_str("GEMINI_API_KEY"),
        facebook_page_token=_env_str("FACEBOOK_PAGE_ACCESS_TOKEN"),
        facebook_verify_token=_env_str("FACEBOOK_VERIFY_TOKEN"),
        facebook_app_secret=_env_str("FACEBOOK_APP_SECRET"),
        line_access_token=_env_str("LINE_CHANNEL_ACCESS_TOKEN"),
        line_channel_secret=_env_str("LINE_CHANNEL_SECRET"),
        catalog_source=catalog_source,
        redis_url=_env_str("REDIS_URL"),
        admin_token=_env_str("ADMIN_TOKEN"),
        human_contact=_env_str("HUMAN_CONTACT", DEFAULT_HUMAN_CONTACT),
        prompts_dir=(BASE_DIR / "prompts").resolve(),
    )
