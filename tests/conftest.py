import os
import time

os.environ["SUPABASE_URL"] = "http://localhost:54321"
os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "test-service-role-key"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["AUTODS_REFRESH_TOKEN"] = "env-refresh-token-123"
os.environ["RAPIDAPI_KEY"] = "test-rapidapi-key"
os.environ["SP_API_CLIENT_ID"] = "amzn1.application-oa2-client.test"
os.environ["SP_API_CLIENT_SECRET"] = "test-client-secret"
os.environ["SP_API_REFRESH_TOKEN"] = "Atzr|test-refresh"

import pytest
import requests
import supabase
from fastapi.testclient import TestClient

from fake_supabase import FakeSupabase

FAKE_DB = FakeSupabase()

# services.py builds its client at import time
supabase.create_client = lambda *args, **kwargs: FAKE_DB


def _network_disabled(url, *args, **kwargs):
    raise requests.ConnectionError(f"network disabled in tests: {url}")


@pytest.fixture(autouse=True)
def db():
    FAKE_DB.reset()
    yield FAKE_DB
    FAKE_DB.reset()


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(time, "sleep", lambda seconds: None)


@pytest.fixture(autouse=True)
def no_network(monkeypatch):
    for name in ("get", "post", "patch"):
        monkeypatch.setattr(requests, name, _network_disabled)


@pytest.fixture
def client():
    from main import app

    return TestClient(app)


@pytest.fixture
def cron_headers():
    return {"x-cron-secret": "test-cron-secret"}
