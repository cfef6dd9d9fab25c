import pytest

from config import Config, ConfigurationError, get_config, reload_config


BASE_ENV = {
    "SUPABASE_URL": "https://project.supabase.co",
    "SUPABASE_KEY": "service-role-key",
}

OPTIONAL_KEYS = (
    "ENABLE_ADMIN_NOTIFICATIONS", "ENABLE_CACHE", "DEBUG_MODE",
    "TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_PHONE_NUMBER", "ADMIN_NOTIFY_NUMBERS",
    "DEFAULT_PAGE_SIZE", "MAX_PAGE_SIZE", "CACHE_TTL_SHORT", "LOG_LEVEL", "PORT",
)


@pytest.fixture
def env(monkeypatch):
    for key in OPTIONAL_KEYS:
        monkeypatch.delenv(key, raising=False)
    for key, value in BASE_ENV.items():
        monkeypatch.setenv(key, value)
    return monkeypatch


def test_defaults(env):
    config = Config()

    assert config.twilio is None
    assert config.cache.ttl_short == 120
    assert config.cache.ttl_long == 900
    assert config.api.default_page_size == 25
    assert config.api.max_page_size == 100
    assert config.features.enable_cache is True
    assert config.supabase.orders_table == "custom_orders"


def test_missing_supabase_url(env):
    env.delenv("SUPABASE_URL")

    with pytest.raises(ConfigurationError, match="SUPABASE_URL"):
        Config()


def test_insecure_supabase_url(env):
    env.setenv("SUPABASE_URL", "http://localhost:54321")

    with pytest.raises(ConfigurationError):
        Config()


def test_notifications_require_twilio(env):
    env.setenv("ENABLE_ADMIN_NOTIFICATIONS", "true")

    with pytest.raises(ConfigurationError, match="TWILIO"):
        Config()


def test_twilio_loaded_when_enabled(env):
    env.setenv("ENABLE_ADMIN_NOTIFICATIONS", "true")
    env.setenv("TWILIO_ACCOUNT_SID", "AC123")
    env.setenv("TWILIO_AUTH_TOKEN", "secret")
    env.setenv("TWILIO_PHONE_NUMBER", "+15005550006")
    env.setenv("ADMIN_NOTIFY_NUMBERS", "+6281100000001, +6281100000002")

    config = Config()

    assert config.twilio.admin_numbers == ["+6281100000001", "+6281100000002"]
    assert config.get_safe_summary()["admin_numbers"] == 2
    assert "secret" not in str(config.get_safe_summary())


def test_admin_numbers_must_be_e164(env):
    env.setenv("ENABLE_ADMIN_NOTIFICATIONS", "true")
    env.setenv("TWILIO_ACCOUNT_SID", "AC123")
    env.setenv("TWILIO_AUTH_TOKEN", "secret")
    env.setenv("TWILIO_PHONE_NUMBER", "+15005550006")
    env.setenv("ADMIN_NOTIFY_NUMBERS", "081100000001")

    with pytest.raises(ConfigurationError, match="E.164"):
        Config()


def test_page_size_bounds(env):
    env.setenv("DEFAULT_PAGE_SIZE", "200")
    env.setenv("MAX_PAGE_SIZE", "100")

    with pytest.raises(ConfigurationError):
        Config()


def test_non_integer_rejected(env):
    env.setenv("CACHE_TTL_SHORT", "two minutes")

    with pytest.raises(ConfigurationError):
        Config()


def test_reload_picks_up_changes(env):
    env.setenv("MAX_PAGE_SIZE", "50")
    assert reload_config().api.max_page_size == 50

    env.setenv("MAX_PAGE_SIZE", "75")
    assert reload_config().api.max_page_size == 75
    assert get_config().api.max_page_size == 75


def test_runtime_warnings(env):
    env.setenv("DEBUG_MODE", "true")

    warnings = Config().validate_runtime_dependencies()

    assert any("DEBUG_MODE" in w for w in warnings)
