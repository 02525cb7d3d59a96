import pytest
from pydantic import ValidationError

from marketplace.core.config import Settings

SQLITE_URL = "sqlite+aiosqlite:///./test.db"
POSTGRES_URL = "postgresql+asyncpg://orders:orders@db:5432/orders"


def _settings(**overrides):
    values = {"DATABASE_URL": SQLITE_URL, "ENVIRONMENT": "development"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def test_defaults():
    settings = _settings()

    assert settings.ORDER_RESERVATION_WINDOW_MINUTES == 15
    assert settings.ORDER_SWEEP_INTERVAL_SECONDS == 60.0
    assert settings.DEBUG is False
    assert settings.is_sqlite


def test_cors_origins_accept_comma_separated_and_json():
    assert _settings(CORS_ORIGINS="https://a.example, https://b.example").CORS_ORIGINS == [
        "https://a.example", "https://b.example",
    ]
    assert _settings(CORS_ORIGINS='["https://a.example"]').CORS_ORIGINS == ["https://a.example"]


@pytest.mark.parametrize("field, value", [
    ("ORDER_RESERVATION_WINDOW_MINUTES", 0),
    ("ORDER_SWEEP_BATCH_SIZE", -1),
    ("ORDER_SWEEP_INTERVAL_SECONDS", 0),
    ("CHECKOUT_MAX_RETRIES", -1),
])
def test_invalid_values_rejected(field, value):
    with pytest.raises(ValidationError):
        _settings(**{field: value})


def test_production_rejects_sqlite_and_debug():
    with pytest.raises(ValidationError) as exc_info:
        _settings(ENVIRONMENT="production", DEBUG=True, CORS_ORIGINS="https://shop.example")

    message = str(exc_info.value)
    assert "DEBUG=True is forbidden" in message
    assert "SQLite DATABASE_URL" in message


def test_production_accepts_postgres():
    settings = _settings(
        ENVIRONMENT="production",
        DATABASE_URL=POSTGRES_URL,
        CORS_ORIGINS="https://shop.example",
    )
    assert not settings.is_sqlite
