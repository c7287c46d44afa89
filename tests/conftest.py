import pytest
from fastapi.testclient import TestClient

from webflasher.config import Settings
from webflasher.main import create_app
from webflasher.services.flash_stats import FlashStatsStore
from webflasher.services.guard_pipeline import GuardPipeline
from webflasher.services.rate_limit import RateLimiter


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a throwaway data dir with the marker file in place"""
    s = Settings(
        DATA_DIR=str(tmp_path / "data"),
        ALLOWED_ORIGIN_HOSTS="flasher.example.com,localhost",
        RATE_LIMIT_SALT="test-salt",
        LOG_FORMAT="text",
    )
    s.data_path.mkdir(parents=True, exist_ok=True)
    s.marker_path.write_text("deployed\n")
    return s


@pytest.fixture
def store(settings):
    return FlashStatsStore(
        counts_path=settings.counts_path,
        errors_path=settings.errors_path,
        max_entries=settings.ERROR_LOG_MAX_ENTRIES,
        max_counts_bytes=settings.MAX_COUNTS_FILE_BYTES,
        max_errors_bytes=settings.MAX_ERRORS_FILE_BYTES,
    )


@pytest.fixture
def clock():
    """Mutable fake clock: clock.now is returned by clock()"""

    class FakeClock:
        now = 1_700_000_000.0

        def __call__(self):
            return self.now

        def advance(self, seconds):
            self.now += seconds

    return FakeClock()


@pytest.fixture
def rate_limiter(settings, clock):
    return RateLimiter(
        path=settings.rate_limit_path,
        salt=settings.RATE_LIMIT_SALT,
        per_minute=settings.RATE_LIMIT_PER_MINUTE,
        per_hour=settings.RATE_LIMIT_PER_HOUR,
        clock=clock,
    )


@pytest.fixture
def pipeline(settings, store, rate_limiter):
    return GuardPipeline(settings, store, rate_limiter)


@pytest.fixture
def client(settings):
    app = create_app(settings)
    with TestClient(app) as c:
        yield c
