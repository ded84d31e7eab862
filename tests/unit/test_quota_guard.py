import threading

from app.features.auto_reply.services.quota_guard import QuotaGuard


def test_allows_until_minute_ceiling(clock):
    guard = QuotaGuard(limits={"minute": 3, "day": 100}, clock=clock)

    decisions = [guard.check() for _ in range(4)]

    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert decisions[-1].window == "minute"
    assert "minute" in decisions[-1].reason


def test_denied_check_does_not_count(clock):
    guard = QuotaGuard(limits={"minute": 1, "day": 100}, clock=clock)
    guard.check()

    for _ in range(5):
        assert guard.check().allowed is False

    stats = guard.get_usage_stats()
    assert stats["minute"]["count"] == 1
    assert stats["day"]["count"] == 1


def test_minute_window_rolls_over_lazily(clock):
    guard = QuotaGuard(limits={"minute": 2, "day": 100}, clock=clock)
    guard.check()
    guard.check()
    assert guard.check().allowed is False

    clock.advance(60)

    assert guard.check().allowed is True
    stats = guard.get_usage_stats()
    assert stats["minute"]["count"] == 1
    assert stats["day"]["count"] == 3


def test_day_ceiling_denies_even_with_minute_room(clock):
    guard = QuotaGuard(limits={"minute": 10, "day": 2}, clock=clock)
    guard.check()
    clock.advance(61)
    guard.check()
    clock.advance(61)

    decision = guard.check()

    assert decision.allowed is False
    assert decision.window == "day"


def test_usage_stats_do_not_mutate(clock):
    guard = QuotaGuard(limits={"minute": 10, "day": 1000}, clock=clock)
    guard.check()
    clock.advance(15)

    first = guard.get_usage_stats()
    second = guard.get_usage_stats()

    assert first == second
    assert first["minute"] == {"count": 1, "limit": 10, "resets_in_seconds": 45.0}
    assert first["percentage_used"] == {"minute": 10.0, "day": 0.1}


def test_usage_stats_report_expired_window_as_empty(clock):
    guard = QuotaGuard(limits={"minute": 10, "day": 1000}, clock=clock)
    guard.check()
    clock.advance(120)

    stats = guard.get_usage_stats()

    assert stats["minute"]["count"] == 0
    assert stats["day"]["count"] == 1


def test_concurrent_checks_never_exceed_ceiling():
    guard = QuotaGuard(limits={"minute": 50, "day": 1000})
    results: list[bool] = []
    lock = threading.Lock()

    def worker():
        for _ in range(20):
            allowed = guard.check().allowed
            with lock:
                results.append(allowed)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 50
    assert guard.get_usage_stats()["minute"]["count"] == 50
