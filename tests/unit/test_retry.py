from ledgerflow.utils.retry import compute_backoff


def test_backoff_grows_exponentially():
    assert compute_backoff(1, base=1.0, factor=2.0, jitter=0.0) == 1.0
    assert compute_backoff(3, base=1.0, factor=2.0, jitter=0.0) == 4.0


def test_backoff_jitter_and_zero_base():
    delay = compute_backoff(2, base=0.5, factor=2.0, jitter=0.25)
    assert 1.0 <= delay <= 1.25
    assert compute_backoff(5, base=0.0) == 0.0
