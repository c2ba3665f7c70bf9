import pytest

from fakes import FakeSupabase, FakeTransport
from services.config import SchedulerConfig


@pytest.fixture
def db():
    return FakeSupabase()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def config():
    return SchedulerConfig(
        supabase_url="https://db.test",
        supabase_service_key="service-key",
        scheduler_api_key="test-key",
        stream_api_key="stream-key",
        stream_api_secret="stream-secret",
        app_url="https://api.ptflow.test",
        qstash_token="qstash-token",
    )
