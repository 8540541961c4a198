from postgate.utils.retry import compute_backoff


def test_compute_backoff_grows_exponentially():
    assert compute_backoff(1, base=2, jitter=0) == 2
    assert compute_backoff(3, base=2, jitter=0) == 8


def test_compute_backoff_jitter_bounds():
    for _ in range(20):
        delay = compute_backoff(1, base=1.5, jitter=0.5)
        assert 1.5 <= delay <= 2.0
