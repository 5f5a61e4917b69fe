import pytest

from shopchat.config import DEFAULT_OPENROUTER_URL, load_settings

ENV_KEYS = [
    "SILENCE_WINDOW_SEC",
    "MAX_FRAGMENTS",
    "MAX_BUFFER_WINDOW_SEC",
    "HISTORY_TURNS",
    "CHAT_TTL_SECONDS",
    "COMPLETION_TIMEOUT_SEC",
    "MODEL",
    "REASSEMBLER_MODEL",
    "COMPLETION_PROVIDER",
    "OPENROUTER_URL",
    "CATALOG_SOURCE",
    "HUMAN_CONTACT",
]


@pytest.fixture
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    settings = load_settings()
    assert settings.silence_window_sec == 15
    assert settings.max_fragments == 16
    assert settings.max_buffer_window_sec == 60
    assert settings.history_turns == 10
    assert settings.chat_ttl_seconds == 86400
    assert settings.completion_timeout_sec == 25
    assert settings.model == "openai/gpt-3.5-turbo"
    assert settings.reassembler_model == settings.model
    assert settings.completion_provider == "openrouter"
    assert settings.openrouter_url == DEFAULT_OPENROUTER_URL
    assert settings.catalog_source.endswith("products.csv")
    assert (settings.prompts_dir / "assistant_system.txt").exists()


def test_environment_overrides(clean_env):
    clean_env.setenv("SILENCE_WINDOW_SEC", "2.5")
    clean_env.setenv("MAX_FRAGMENTS", "4")
    clean_env.setenv("MODEL", "big-model")
    clean_env.setenv("REASSEMBLER_MODEL", "small-model")
    clean_env.setenv("COMPLETION_PROVIDER", " Gemini ")
    clean_env.setenv("CATALOG_SOURCE", "https://example.test/products.csv")
    settings = load_settings()
    assert settings.silence_window_sec == 2.5
    assert settings.max_fragments == 4
    assert settings.model == "big-model"
    assert settings.reassembler_model == "small-model"
    assert settings.completion_provider == "gemini"
    assert settings.catalog_source == "https://example.test/products.csv"


def test_fallback_reply_names_human_contact(clean_env):
    clean_env.setenv("HUMAN_CONTACT", "LINE @shop")
    assert "LINE @shop" in load_settings().fallback_reply


def test_invalid_number_raises(clean_env):
    clean_env.setenv("MAX_FRAGMENTS", "many")
    with pytest.raises(ValueError):
        load_settings()
