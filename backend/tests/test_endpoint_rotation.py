import sys
from pathlib import Path

import httpx
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.endpoint_rotation import EndpointRotationManager
from utils.retry import RpcRateLimitError

URLS = ["https://rpc-a.example", "https://rpc-b.example", "https://rpc-c.example"]


def _manager(clock, jitter=4.0, **kwargs):
    return EndpointRotationManager(
        URLS,
        cooldown_base=30.0,
        jitter_min=1.0,
        jitter_max=11.0,
        clock=clock,
        rng=lambda lo, hi: jitter,
        **kwargs,
    )


def _rotate_to(manager, url):
    for _ in range(len(manager.endpoints)):
        if manager.current.url == url:
            return
        manager.record_failure(manager.current, ValueError("execution reverted"))
    assert manager.current.url == url


def test_select_starts_at_first_endpoint(fake_clock):
    manager = _manager(fake_clock)
    assert manager.select().url == URLS[0]
    assert manager.select().url == URLS[0]


def test_rate_limit_sets_jittered_cooldown_and_rotates(fake_clock):
    manager = _manager(fake_clock, jitter=4.0)
    first = manager.select()

    manager.record_failure(first, RpcRateLimitError("429 Too Many Requests"))

    assert first.cooldown_until == pytest.approx(fake_clock.now + 34.0)
    assert first.failures == 1
    assert manager.select().url == URLS[1]


def test_non_rate_limit_error_rotates_without_cooldown(fake_clock):
    manager = _manager(fake_clock)
    first = manager.select()

    manager.record_failure(first, ValueError("execution reverted"))

    assert first.cooldown_until is None
    assert manager.select().url == URLS[1]


def test_cooled_endpoint_is_skipped_until_cooldown_elapses(fake_clock):
    manager = _manager(fake_clock, jitter=5.0)
    first = manager.select()
    manager.record_failure(first, httpx.ConnectTimeout("timed out"))
    window_end = first.cooldown_until

    _rotate_to(manager, URLS[0])
    fake_clock.now = window_end - 0.001
    assert manager.select().url != URLS[0]

    _rotate_to(manager, URLS[0])
    fake_clock.now = window_end
    assert manager.select().url == URLS[0]


def test_all_endpoints_cooling_down_returns_current(fake_clock):
    manager = _manager(fake_clock)
    for _ in URLS:
        manager.record_failure(manager.select(), RpcRateLimitError("rate limit"))

    assert all(ep.is_cooling_down(fake_clock.now) for ep in manager.endpoints)
    chosen = manager.select()
    assert chosen is manager.current
    assert manager.get_status()["stats"]["all_cooling_down"] == 1


def test_cooldown_is_bounded_by_max(fake_clock):
    manager = _manager(fake_clock, jitter=500.0, max_cooldown=60.0)
    first = manager.select()

    manager.record_failure(first, RpcRateLimitError("rate limit"))

    assert first.cooldown_remaining(fake_clock.now) == pytest.approx(60.0)
    fake_clock.advance(60.0)
    assert not first.is_cooling_down(fake_clock.now)


def test_http_429_status_error_is_treated_as_rate_limit(fake_clock):
    manager = _manager(fake_clock)
    first = manager.select()
    request = httpx.Request("POST", URLS[0])
    error = httpx.HTTPStatusError(
        "Too Many Requests", request=request, response=httpx.Response(429, request=request)
    )

    manager.record_failure(first, error)

    assert first.is_cooling_down(fake_clock.now)


def test_record_success_clears_failure_counters(fake_clock):
    manager = _manager(fake_clock)
    first = manager.select()
    manager.record_failure(first, ValueError("boom"))

    manager.record_success(first)

    assert first.failures == 0
    assert first.last_error is None


def test_reset_clears_cooldowns_and_pointer(fake_clock):
    manager = _manager(fake_clock)
    manager.record_failure(manager.select(), RpcRateLimitError("rate limit"))

    manager.reset()

    assert manager.current.url == URLS[0]
    assert all(ep.cooldown_until is None for ep in manager.endpoints)


def test_duplicate_and_blank_urls_are_dropped(fake_clock):
    manager = EndpointRotationManager([URLS[0], " ", URLS[0], URLS[1]], clock=fake_clock)
    assert [ep.url for ep in manager.endpoints] == URLS[:2]


def test_rejects_empty_endpoint_list():
    with pytest.raises(ValueError):
        EndpointRotationManager([])


def test_rejects_negative_cooldown():
    with pytest.raises(ValueError):
        EndpointRotationManager(URLS, cooldown_base=-1.0)


def test_status_reports_remaining_cooldown(fake_clock):
    manager = _manager(fake_clock, jitter=2.0)
    manager.record_failure(manager.select(), RpcRateLimitError("rate limit"))
    fake_clock.advance(10.0)

    status = manager.get_status()

    assert status["current"] == URLS[1]
    first = status["endpoints"][0]
    assert first["cooling_down"] is True
    assert first["cooldown_remaining_seconds"] == pytest.approx(22.0)
