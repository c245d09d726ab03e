import pytest
import redis

from app.application.rate_limiter import InMemoryRateLimitStore, RateLimiter
from app.core_settings import Settings, get_settings
from app.domain.errors import RateLimited


class FakeClock:
    def __init__(self, start=1_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(get_settings(), clock=clock)


def test_booking_allows_five_per_window_then_denies(limiter, clock):
    for _ in range(5):
        assert limiter.check("user-a", "booking").allowed
        clock.advance(1)

    denied = limiter.check("user-a", "booking")
    assert not denied.allowed
    # oldest request was 5s ago, so it leaves the 60s window in 55s
    assert denied.retry_after_ms == 55_000


def test_admin_actions_allow_three(limiter):
    results = [limiter.check("admin", "quality_check").allowed for _ in range(4)]
    assert results == [True, True, True, False]


def test_unknown_action_uses_default_limit(limiter):
    results = [limiter.check("user-a", "something_else").allowed for _ in range(6)]
    assert results.count(True) == 5


def test_actors_and_actions_are_independent(limiter):
    for _ in range(3):
        limiter.check("admin-1", "package")
    assert not limiter.check("admin-1", "package").allowed
    assert limiter.check("admin-2", "package").allowed
    assert limiter.check("admin-1", "approve_dispatch").allowed


def test_window_slides(limiter, clock):
    for _ in range(3):
        limiter.check("admin", "dispatch")
    assert not limiter.check("admin", "dispatch").allowed

    clock.advance(60)
    assert limiter.check("admin", "dispatch").allowed


def test_denied_requests_do_not_extend_the_window(limiter, clock):
    for _ in range(3):
        limiter.check("admin", "package")
    clock.advance(30)
    for _ in range(10):
        assert not limiter.check("admin", "package").allowed
    clock.advance(30)
    assert limiter.check("admin", "package").allowed


def test_retry_after_is_clamped_to_the_window():
    store = InMemoryRateLimitStore()
    assert store.hit("k", 1, 60_000, 0).allowed
    decision = store.hit("k", 1, 60_000, 10)
    assert 0 <= decision.retry_after_ms <= 60_000


def test_zero_limit_denies_for_a_full_window(clock):
    store = InMemoryRateLimitStore()
    decision = store.hit("k", 0, 60_000, 0)
    assert (decision.allowed, decision.retry_after_ms) == (False, 60_000)

    limiter = RateLimiter(Settings(RATE_LIMITS={"dispatch": 0}), clock=clock)
    with pytest.raises(RateLimited) as exc:
        limiter.enforce("admin", "dispatch")
    assert exc.value.retry_after_seconds == 60


def test_enforce_raises_with_retry_after_seconds(limiter, clock):
    for _ in range(3):
        limiter.enforce("admin", "cancel")
    clock.advance(0.2)
    with pytest.raises(RateLimited) as exc:
        limiter.enforce("admin", "cancel")
    assert exc.value.retry_after_seconds == 60
    assert exc.value.code == "RATE_LIMITED"
    assert exc.value.http_status == 429


class BrokenStore:
    def hit(self, *args):
        raise redis.ConnectionError("redis is down")

    def reset(self):
        pass


def test_store_failure_falls_back_to_process_window(clock):
    limiter = RateLimiter(get_settings(), store=BrokenStore(), clock=clock)
    results = [limiter.check("user-a", "booking").allowed for _ in range(6)]
    assert results == [True] * 5 + [False]


def test_reset_clears_windows(limiter):
    for _ in range(3):
        limiter.check("admin", "package")
    limiter.reset()
    assert limiter.check("admin", "package").allowed
