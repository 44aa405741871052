from grinder.utils.rate_limiter import RateLimiter
from tests.helpers import ClockStub


def make_limiter(min_interval, increment=0.0):
    clock = ClockStub()
    return RateLimiter(min_interval, increment=increment, clock=clock, sleep=clock.sleep), clock


def test_first_call_never_waits():
    limiter, clock = make_limiter(5)
    assert limiter.wait() == 0
    assert clock.sleeps == []
    assert limiter.calls == 1


def test_spacing_between_calls():
    limiter, clock = make_limiter(5)
    limiter.wait()
    clock.advance(2)

    assert not limiter.ready()
    assert limiter.remaining() == 3
    assert limiter.wait() == 3
    assert clock.sleeps == [3]


def test_interval_grows_with_increment():
    limiter, clock = make_limiter(10, increment=1)
    limiter.wait()
    limiter.wait()
    assert limiter.interval == 11
    limiter.wait()
    assert limiter.interval == 12
    assert clock.sleeps == [10, 11]


def test_bump_pushes_next_call_out():
    limiter, clock = make_limiter(2)
    limiter.wait()
    limiter.bump(30)
    assert limiter.remaining() == 30
    clock.advance(30)
    assert limiter.ready()


def test_zero_interval_is_always_ready():
    limiter, clock = make_limiter(0)
    limiter.wait()
    limiter.wait()
    assert limiter.ready()
    assert clock.sleeps == []
