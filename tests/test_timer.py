"""
Tests for the wall-clock exam timer.

Covers:
- Remaining time derived from the end timestamp
- Monotonicity across missed ticks and clock changes
- One-time low-time warning and expiry signals
- Timer state persistence and reconstruction
"""

import pytest
from unittest.mock import Mock

from examsession.errors import StorageError
from examsession.timer import WallClockTimer
from examsession import storage


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


class TestRemaining:
    """Test remaining time computation."""

    def test_remaining_counts_down_with_wall_clock(self, clock):
        timer = WallClockTimer(clock=clock)
        timer.start(600)

        clock.now += 125
        assert timer.remaining() == pytest.approx(475)

    def test_remaining_never_negative(self, clock):
        timer = WallClockTimer(clock=clock)
        timer.start(10)

        clock.now += 3600
        assert timer.remaining() == 0.0

    def test_long_pause_does_not_drift(self, clock):
        """Missed ticks are irrelevant: remaining matches wall-clock truth."""
        timer = WallClockTimer(clock=clock)
        timer.start(600)
        timer.tick()

        clock.now += 240  # process suspended, no ticks delivered
        assert timer.tick() == pytest.approx(360)

    def test_clock_set_backwards_gives_no_time_back(self, clock):
        timer = WallClockTimer(clock=clock)
        timer.start(600)
        clock.now += 100
        assert timer.remaining() == pytest.approx(500)

        clock.now -= 50
        assert timer.remaining() == pytest.approx(500)

    def test_remaining_is_non_increasing(self, clock):
        timer = WallClockTimer(clock=clock)
        timer.start(300)
        readings = []
        for step in (1, 0, 30, -20, 5, 400):
            clock.now += step
            readings.append(timer.remaining())

        assert readings == sorted(readings, reverse=True)

    def test_not_started(self):
        assert WallClockTimer().remaining() == 0.0

    def test_format_remaining(self, clock):
        timer = WallClockTimer(clock=clock)
        timer.start(3725)
        assert timer.format_remaining() == "01:02:05"


class TestSignals:
    """Test low-time warning and expiry."""

    def test_warning_fires_once(self, clock):
        on_warning = Mock()
        timer = WallClockTimer(clock=clock, low_time_warning_seconds=300, on_warning=on_warning)
        timer.start(600)

        clock.now += 299
        timer.tick()
        on_warning.assert_not_called()

        clock.now += 2
        timer.tick()
        clock.now += 10
        timer.tick()
        on_warning.assert_called_once()

    def test_no_warning_when_started_inside_window(self, clock):
        on_warning = Mock()
        timer = WallClockTimer(clock=clock, low_time_warning_seconds=300, on_warning=on_warning)
        timer.start(120)

        clock.now += 10
        timer.tick()
        on_warning.assert_not_called()

    def test_expiry_fires_exactly_once(self, clock):
        on_expired = Mock()
        timer = WallClockTimer(clock=clock, on_expired=on_expired)
        timer.start(60)

        clock.now += 61
        timer.tick()
        timer.tick()
        clock.now += 10
        timer.tick()

        on_expired.assert_called_once_with()
        assert timer.expired is True
        assert timer.running is False

    def test_stopped_timer_does_not_signal(self, clock):
        on_expired = Mock()
        timer = WallClockTimer(clock=clock, on_expired=on_expired)
        timer.start(60)
        timer.stop()

        clock.now += 120
        timer.tick()
        on_expired.assert_not_called()


class TestPersistence:
    """Test saving and reconstructing the timer state."""

    def test_save_and_reconstruct(self, clock, tmp_path):
        store = storage.LocalStore(tmp_path)
        timer = WallClockTimer(clock=clock)
        timer.start(600)
        clock.now += 100
        assert timer.save_timer_state(store, "e1", "a1") is True

        clock.now += 50
        restored = WallClockTimer(clock=clock).load_timer_state(store, "e1", "a1")
        assert restored == pytest.approx(450)

    def test_reconstruct_missing_state(self, clock, tmp_path):
        store = storage.LocalStore(tmp_path)
        assert WallClockTimer(clock=clock).load_timer_state(store, "e1", "a1") is None

    def test_persist_failure_is_logged_not_raised(self, clock):
        store = Mock()
        store.save.side_effect = StorageError("disk full")
        logger = Mock()
        timer = WallClockTimer(clock=clock, session_logger=logger)
        timer.start(600)

        assert timer.save_timer_state(store, "e1", "a1") is False
        logger.assert_called_once_with("TIMER_PERSIST_FAILED", "disk full")

    def test_corrupt_state_is_ignored(self, clock):
        store = Mock()
        store.load.return_value = {"remaining_seconds": "soon"}
        assert WallClockTimer(clock=clock).load_timer_state(store, "e1", "a1") is None
