import unittest

from autoreload import TimerService
from fakes import FakeClock, advance


class TimerServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.timers = TimerService(self.clock)
        self.fired = []

    def test_fires_once_per_interval(self) -> None:
        self.timers.create_periodic_timer(2.0, lambda: self.fired.append(self.clock.now))
        advance(self.clock, self.timers, 7.0)
        self.assertEqual(self.fired, [2.0, 4.0, 6.0])
        self.assertEqual(self.timers.next_deadline(), 8.0)

    def test_run_due_catches_up_missed_periods(self) -> None:
        self.timers.create_periodic_timer(2.0, lambda: self.fired.append("tick"))
        self.clock.now = 6.5
        self.assertEqual(self.timers.run_due(), 3)
        self.assertEqual(len(self.fired), 3)

    def test_suspend_and_cancel_are_idempotent(self) -> None:
        timer = self.timers.create_periodic_timer(1.0, lambda: self.fired.append("tick"))
        timer.suspend()
        timer.suspend()
        self.assertFalse(timer.is_running())
        timer.cancel()
        timer.cancel()
        self.assertFalse(timer.is_running())
        self.assertIsNone(self.timers.next_deadline())
        advance(self.clock, self.timers, 5.0)
        self.assertEqual(self.fired, [])

    def test_resume_schedules_one_interval_after_resume(self) -> None:
        timer = self.timers.create_periodic_timer(2.0, lambda: self.fired.append(self.clock.now))
        advance(self.clock, self.timers, 2.5)
        timer.suspend()
        self.clock.now = 9.0
        timer.resume()
        timer.resume()
        self.assertEqual(self.timers.next_deadline(), 11.0)
        advance(self.clock, self.timers, 11.0)
        self.assertEqual(self.fired, [2.0, 11.0])

    def test_cancelled_timer_cannot_be_resumed(self) -> None:
        timer = self.timers.create_periodic_timer(1.0, lambda: None)
        timer.cancel()
        timer.resume()
        self.assertFalse(timer.is_running())

    def test_callback_can_cancel_other_timer_in_same_pass(self) -> None:
        second = self.timers.create_periodic_timer(1.0, lambda: self.fired.append("second"))
        self.timers.create_periodic_timer(1.0, lambda: self.fired.append("first"))
        self.timers.create_periodic_timer(0.5, second.cancel)
        self.clock.now = 1.0
        self.timers.run_due()
        self.assertEqual(self.fired, ["first"])

    def test_failing_callback_does_not_stop_others(self) -> None:
        def boom() -> None:
            raise RuntimeError("boom")

        self.timers.create_periodic_timer(1.0, boom)
        self.timers.create_periodic_timer(1.0, lambda: self.fired.append("ok"))
        self.clock.now = 1.0
        with self.assertLogs(level="ERROR"):
            self.timers.run_due()
        self.assertEqual(self.fired, ["ok"])

    def test_non_positive_interval_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self.timers.create_periodic_timer(0, lambda: None)


if __name__ == "__main__":
    unittest.main()
