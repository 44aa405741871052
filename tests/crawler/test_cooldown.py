from grinder.crawler.cooldown import DomainCooldownTracker


def test_cooldown_blocks_host_until_expiry(clock):
    tracker = DomainCooldownTracker(clock=clock)
    tracker.set_cooldown("https://www.example.com/story", 60, "rate_limited")

    status = tracker.is_in_cooldown("https://example.com/other")
    assert status is not None
    assert status.host == "example.com"
    assert status.reason == "rate_limited"
    assert status.remaining == 60

    clock.advance(59)
    assert tracker.is_in_cooldown("example.com") is not None

    clock.advance(1)
    assert tracker.is_in_cooldown("example.com") is None
    assert tracker.snapshot() == {}


def test_shorter_cooldown_never_shortens_existing(clock):
    tracker = DomainCooldownTracker(clock=clock)
    tracker.set_cooldown("example.com", 600, "captcha")
    status = tracker.set_cooldown("example.com", 30, "timeout")

    assert status.until == clock.now + 600
    assert status.reason == "captcha"


def test_longer_cooldown_extends_and_keeps_reason_when_blank(clock):
    tracker = DomainCooldownTracker(clock=clock)
    tracker.set_cooldown("example.com", 30, "timeout")
    tracker.set_cooldown("example.com", 300, "")

    status = tracker.is_in_cooldown("example.com")
    assert status.until == clock.now + 300
    assert status.reason == "timeout"


def test_non_positive_duration_or_missing_host_is_ignored(clock):
    tracker = DomainCooldownTracker(clock=clock)
    assert tracker.set_cooldown("example.com", 0, "x") is None
    assert tracker.set_cooldown("", 60, "x") is None
    assert tracker.is_in_cooldown("example.com") is None
    assert tracker.is_in_cooldown(None) is None


def test_probe_lets_one_request_through_per_interval(clock):
    tracker = DomainCooldownTracker(probe_seconds=120, clock=clock)
    tracker.set_cooldown("example.com", 3600, "http_403")

    # A fresh cooldown counts as just probed
    assert tracker.is_in_cooldown("example.com") is not None

    clock.advance(120)
    assert tracker.is_in_cooldown("example.com") is None
    assert tracker.is_in_cooldown("example.com") is not None

    clock.advance(119)
    assert tracker.is_in_cooldown("example.com") is not None
    clock.advance(1)
    assert tracker.is_in_cooldown("example.com") is None


def test_probe_disabled_by_default(clock):
    tracker = DomainCooldownTracker(clock=clock)
    tracker.set_cooldown("example.com", 3600, "http_403")
    clock.advance(3000)
    assert tracker.is_in_cooldown("example.com") is not None


def test_clear_single_host_and_all(clock):
    tracker = DomainCooldownTracker(clock=clock)
    tracker.set_cooldown("a.com", 60, "x")
    tracker.set_cooldown("b.com", 60, "y")

    tracker.clear("https://www.a.com/page")
    assert tracker.is_in_cooldown("a.com") is None
    assert set(tracker.snapshot()) == {"b.com"}

    tracker.clear()
    assert tracker.snapshot() == {}
