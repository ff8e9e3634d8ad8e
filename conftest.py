import pytest

from retrieval_services.settings import RetrievalSettings


def pytest_runtest_setup(item):
    # Skip integration tests by default when marked
    if 'integration' in item.keywords:
        pytest.skip("skipping integration test")


@pytest.fixture(autouse=True)
def clear_provider_env(monkeypatch):
    """Keep real provider credentials out of the tests."""

    for var in ("EMBEDDING_API_KEY", "SILICONFLOW_API_KEY", "EMBEDDING_API_BASE", "KB_DATA_DIR"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def fast_settings():
    """Settings with retry backoff and batch delays disabled."""

    return RetrievalSettings(retry_backoff=0.0, retry_backoff_max=0.0, batch_delay=0.0)
