"""Tests for settings normalization and the application shell."""
import pytest

from app.config import Settings


def test_database_url_uses_asyncpg_driver():
    cfg = Settings(DATABASE_URL="postgresql://billing:secret@db:5432/marketplace")
    assert cfg.DATABASE_URL == "postgresql+asyncpg://billing:secret@db:5432/marketplace"


def test_database_url_translates_sslmode():
    cfg = Settings(DATABASE_URL="postgresql://billing:secret@db/marketplace?sslmode=require")
    assert cfg.DATABASE_URL == "postgresql+asyncpg://billing:secret@db/marketplace?ssl=require"


def test_async_urls_are_left_alone():
    url = "sqlite+aiosqlite:///./billing.db"
    assert Settings(DATABASE_URL=url).DATABASE_URL == url


def test_billing_defaults():
    cfg = Settings()
    assert cfg.CURRENCY == "INR"
    assert cfg.MONTHLY_TOTAL_COUNT == 12
    assert cfg.YEARLY_TOTAL_COUNT == 1
    assert cfg.GATEWAY_TIMEOUT_SECONDS == 5.0


@pytest.mark.asyncio
async def test_health_reports_scheduler_state(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "scheduler_running": False}
    assert response.headers["X-Content-Type-Options"] == "nosniff"
