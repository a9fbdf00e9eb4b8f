from iup_tracker.utils.rate_limit import LoginRateLimiter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_blocks_after_max_failures_until_window_passes():
    clock = FakeClock()
    limiter = LoginRateLimiter(clock=clock)
    for _ in range(3):
        assert limiter.check("k", 3, 60) == 0
        limiter.record_failure("k")
    assert limiter.check("k", 3, 60) == 60
    clock.now += 45
    assert limiter.check("k", 3, 60) == 15
    clock.now += 15
    assert limiter.check("k", 3, 60) == 0


def test_keys_are_independent_and_reset_clears():
    limiter = LoginRateLimiter(clock=FakeClock())
    limiter.record_failure("a")
    assert limiter.check("a", 1, 60) > 0
    assert limiter.check("b", 1, 60) == 0
    limiter.reset("a")
    assert limiter.check("a", 1, 60) == 0
