"""
Test configuration and fixtures.

Pure-logic tests need nothing from here. Document, service and API tests
run against a real MongoDB (``TEST_MONGODB_URL``) and are skipped when no
server answers.
"""

import os
import logging
import pytest
from dotenv import load_dotenv
from pymongo import AsyncMongoClient
from pymongo.errors import PyMongoError
from httpx import AsyncClient, ASGITransport

from permitflow.core.database import init_models
from permitflow.models import DOCUMENT_MODELS
from permitflow.services.notification_service import notification_service
from permitflow.services.storage_service import storage_service


# Load test environment variables
test_env_path = os.path.join(os.path.dirname(__file__), "test.env")
if os.path.exists(test_env_path):
    load_dotenv(test_env_path)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

TEST_DATABASE_NAME = os.getenv("TEST_MONGODB_DB_NAME", "permitflow_test")
TEST_MONGODB_URL = os.getenv("TEST_MONGODB_URL", "mongodb://localhost:27017")


@pytest.fixture
async def test_db():
    """Set up the test database, or skip when MongoDB is not reachable"""
    client = AsyncMongoClient(TEST_MONGODB_URL, serverSelectionTimeoutMS=1500, tz_aware=False)
    try:
        await client.admin.command("ping")
    except PyMongoError as e:
        await client.close()
        pytest.skip(f"MongoDB is not available at {TEST_MONGODB_URL}: {e}")

    database = client[TEST_DATABASE_NAME]
    await init_models(database)

    yield database

    await client.close()


@pytest.fixture
async def clean_db(test_db):
    """Clean database before each test"""
    for model in DOCUMENT_MODELS:
        await model.delete_all()

    yield test_db


@pytest.fixture(autouse=True)
def file_storage(tmp_path, monkeypatch):
    """Stored files (QR cards, photos) go to a per-test directory"""
    monkeypatch.setattr(storage_service, "storage_path", tmp_path)
    return tmp_path


@pytest.fixture(autouse=True)
def sent_notifications(monkeypatch):
    """Capture notifications instead of calling the notification service"""
    sent = []

    async def record_notification(user_id, template_type, data, municipality_id=None):
        if not user_id:
            return False
        sent.append({
            "user_id": user_id,
            "template_type": template_type,
            "data": data,
            "municipality_id": municipality_id,
        })
        return True

    monkeypatch.setattr(notification_service, "send_notification", record_notification)
    return sent


@pytest.fixture
async def api_client(clean_db):
    """HTTP client bound to the app; the database is already initialised"""
    from permitflow.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
