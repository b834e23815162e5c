import os
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from dotenv import load_dotenv

# Load the test environment FIRST, before any autoreply imports, so the
# settings object can be built.
load_dotenv(dotenv_path=os.path.join(os.path.dirname(os.path.dirname(__file__)), ".env.test"))
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-the-auto-reply-suite-0123456789")
os.environ.setdefault("ENVIRONMENT", "test")

from fastapi.testclient import TestClient  # noqa: E402

from autoreply.models.config import (  # noqa: E402
    AutoReplyRule,
    BusinessHours,
    ConfigurationRecord,
    KnowledgeBase,
    OwnerType,
    ResponseSettings,
)
from autoreply.models.domain import InboundMessage  # noqa: E402

# Monday 2024-01-01 12:00 UTC
MONDAY_NOON_UTC = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_kb():
    """Factory for knowledge bases. Business hours are off unless given."""
    def _make(**overrides):
        data = {
            "id": "kb-1",
            "title": "Main KB",
            "system_prompt": "You answer questions for a fitness coaching business.",
            "business_info": {"company_name": "FitCo", "services": ["Coaching"], "pricing": "From $50"},
            "response_settings": ResponseSettings(),
            "business_hours": BusinessHours(enabled=False),
            "auto_reply_rules": [],
            "is_default": True,
        }
        data.update(overrides)
        return KnowledgeBase(**data)
    return _make


@pytest.fixture
def make_rule():
    def _make(trigger, response="Rule reply", **overrides):
        return AutoReplyRule(trigger=trigger, response=response, **overrides)
    return _make


@pytest.fixture
def make_message():
    def _make(text="hi", **overrides):
        data = {
            "id": "wamid.1",
            "conversation_id": "conv-1",
            "sender_address": "+15551234567",
            "sender_display_name": "Dana",
            "text": text,
            "received_at_utc": MONDAY_NOON_UTC,
            "tenant_id": "coach-1",
        }
        data.update(overrides)
        return InboundMessage(**data)
    return _make


@pytest.fixture
def admin_record():
    return ConfigurationRecord(
        id="admin-settings-1",
        owner_id="admin-1",
        owner_type=OwnerType.ADMIN,
        is_default=True,
        ai_knowledge={"response_settings": {"max_length": 150, "tone": "professional"}},
        business_hours={"after_hours_message": "Admin: we are closed."},
        analytics={"enabled": False},
    )


@pytest.fixture
def coach_record():
    return ConfigurationRecord(
        id="coach-settings-1",
        owner_id="coach-1",
        owner_type=OwnerType.COACH,
        inheritance={"enabled": True, "inherit_from": "admin", "customizations": []},
        version=3,
    )


@pytest.fixture
def auth_headers():
    """Bearer headers for a given owner id and role."""
    from autoreply.services.jwt_service import jwt_service

    def _headers(sub="coach-1", role="coach"):
        token = jwt_service.create_access_token({"sub": sub, "role": role})
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture(scope="function")
def test_client(mocker):
    """
    TestClient for API tests. Queue workers and index creation are patched
    out so no Redis or MongoDB server is needed.
    """
    mocker.patch("autoreply.utils.queue.RedisMessageQueue.start_workers", new_callable=AsyncMock)
    mocker.patch("autoreply.utils.queue.RedisMessageQueue.stop_workers", new_callable=AsyncMock)
    mocker.patch("autoreply.services.db_service.DatabaseService.create_indexes", new_callable=AsyncMock)

    from autoreply.main import app
    with TestClient(app) as client:
        yield client
