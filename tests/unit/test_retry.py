import pytest

from phaseflow.utils.retry import compute_backoff, schedule_retry


def test_compute_backoff_grows():
    assert compute_backoff(2, base=2, jitter=0) > compute_backoff(1, base=2, jitter=0)


def test_compute_backoff_is_capped():
    assert compute_backoff(10, base=2, jitter=0, max_delay=5) == 5


def test_compute_backoff_zero_base_disables_waiting():
    assert compute_backoff(3, base=0, jitter=1) == 0.0


@pytest.mark.asyncio
async def test_schedule_retry_returns_delay():
    assert await schedule_retry(1, base=0) == 0.0
