from factmemory.core.config import DatabaseSettings, FactMemorySettings, LLMSettings


def test_postgres_url_gets_async_driver():
    db = DatabaseSettings(DATABASE_URL="postgres://u:p@db:5432/facts?sslmode=require")

    assert db.connection_url == "postgresql+asyncpg://u:p@db:5432/facts?ssl=require"
    assert not db.is_sqlite


def test_sqlite_url_is_untouched():
    db = DatabaseSettings(DATABASE_URL="sqlite+aiosqlite:///./facts.db")

    assert db.connection_url == "sqlite+aiosqlite:///./facts.db"
    assert db.is_sqlite


def test_llm_configured_follows_provider_key():
    assert LLMSettings(LLM_PROVIDER="gemini", GEMINI_API_KEY="k").is_configured
    assert not LLMSettings(LLM_PROVIDER="gemini", GEMINI_API_KEY="", OPENROUTER_API_KEY="k").is_configured


def test_fact_defaults():
    facts = FactMemorySettings()

    assert facts.activation_threshold == 0.8
    assert facts.weak_pattern_confidence == 0.7
    assert facts.required_fact_categories == ["user_name", "pet_names"]
