"""Tests for sleep and fatigue simulation."""

from datetime import datetime, timedelta

from availability import SLEEPING, TIRED, AvailabilitySimulator
from fakes import StubRandom


def _awake(**kwargs) -> AvailabilitySimulator:
    """Simulator that never sleeps, for fatigue tests."""
    return AvailabilitySimulator(active_hours_start=0, active_hours_end=24, rng=StubRandom(), **kwargs)


def test_sleeps_before_active_hours():
    sim = AvailabilitySimulator(active_hours_start=7, active_hours_end=24, rng=StubRandom())
    now = datetime(2024, 5, 1, 3, 15)

    assert sim.should_go_away(now=now)
    assert sim.state.is_away
    assert sim.state.away_reason == SLEEPING
    assert sim.state.away_until == datetime(2024, 5, 1, 7, 0)


def test_sleeps_after_active_hours_until_next_morning():
    sim = AvailabilitySimulator(active_hours_start=7, active_hours_end=22, rng=StubRandom())
    now = datetime(2024, 5, 1, 23, 30)

    assert sim.should_go_away(now=now)
    assert sim.state.away_until == datetime(2024, 5, 2, 7, 0)


def test_available_during_active_hours():
    sim = AvailabilitySimulator(active_hours_start=7, active_hours_end=24, rng=StubRandom())
    assert not sim.should_go_away(now=datetime(2024, 5, 1, 12, 0))
    assert not sim.state.is_away


def test_tired_after_hourly_cap():
    sim = _awake(max_messages_per_hour=5)
    now = datetime.now()
    for _ in range(4):
        sim.increment_message_counter(now=now)
    assert not sim.should_go_away(now=now)

    sim.increment_message_counter(now=now)
    assert sim.should_go_away(now=now)
    assert sim.state.away_reason == TIRED
    assert sim.state.away_until == now + timedelta(minutes=30)


def test_community_counters_are_separate():
    sim = _awake(max_messages_per_hour=3)
    now = datetime.now()
    for _ in range(3):
        sim.increment_message_counter("guild1", now=now)

    assert not sim.should_go_away("guild2", now=now)
    assert sim.should_go_away("guild1", now=now)


def test_counter_resets_after_an_hour():
    sim = _awake(max_messages_per_hour=2)
    now = datetime.now()
    sim.increment_message_counter(now=now)
    sim.increment_message_counter(now=now)

    assert not sim.should_go_away(now=now + timedelta(minutes=61))
    assert sim.global_counter.hourly == 0


def test_is_away_auto_clears():
    sim = _awake()
    now = datetime.now()
    sim.state.is_away = True
    sim.state.away_reason = TIRED
    sim.state.away_until = now + timedelta(minutes=1)

    assert sim.is_away(now)
    assert not sim.is_away(now + timedelta(minutes=2))
    assert sim.state.away_reason is None


def test_energy_low_above_eighty_percent():
    sim = _awake(max_messages_per_hour=10)
    for _ in range(8):
        sim.increment_message_counter()
    assert not sim.is_energy_low()
    sim.increment_message_counter()
    assert sim.is_energy_low()


def test_away_messages():
    sim = _awake()
    now = datetime(2024, 5, 1, 12, 0)

    assert sim.away_message(SLEEPING, None, now).startswith("I'm getting sleepy")
    tired = sim.away_message(TIRED, now + timedelta(minutes=30), now)
    assert "30 minutes" in tired
    assert sim.away_message("unknown", None, now) == "I'll be back in a while!"


def test_reset_away_status():
    sim = _awake(max_messages_per_hour=1)
    sim.increment_message_counter()
    assert sim.should_go_away()

    sim.reset_away_status()
    assert not sim.state.is_away
    assert sim.snapshot()["awayReason"] is None
