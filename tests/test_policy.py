from authflow.config import LockoutPolicy
from authflow.service.policy import format_duration, lockout_duration


class TestLockoutDuration:
    def test_free_attempts_do_not_lock(self):
        policy = LockoutPolicy()
        assert [lockout_duration(n, policy) for n in range(0, 5)] == [0, 0, 0, 0, 0]

    def test_table_values(self):
        policy = LockoutPolicy()
        assert lockout_duration(5, policy) == 30
        assert lockout_duration(6, policy) == 60
        assert lockout_duration(7, policy) == 120
        assert lockout_duration(8, policy) == 240
        assert lockout_duration(9, policy) == 480
        assert lockout_duration(10, policy) == 1800

    def test_duration_never_decreases_and_is_capped(self):
        policy = LockoutPolicy()
        durations = [lockout_duration(n, policy) for n in range(0, 60)]
        assert durations == sorted(durations)
        assert max(durations) == policy.max_lockout_seconds
        assert lockout_duration(500, policy) == 1800

    def test_cap_applies_to_custom_tables(self):
        policy = LockoutPolicy(free_attempts=1, durations={2: 10, 3: 5000}, max_lockout_seconds=600)
        assert lockout_duration(2, policy) == 10
        assert lockout_duration(3, policy) == 600
        assert lockout_duration(9, policy) == 600


class TestFormatDuration:
    def test_seconds_below_a_minute(self):
        assert format_duration(1) == "1 second"
        assert format_duration(45) == "45 seconds"

    def test_minutes_round_up(self):
        assert format_duration(60) == "1 minute"
        assert format_duration(61) == "2 minutes"
        assert format_duration(1800) == "30 minutes"

    def test_vietnamese_units(self):
        assert format_duration(30, "vi") == "30 giây"
        assert format_duration(240, "vi") == "4 phút"

    def test_unknown_language_falls_back_to_english(self):
        assert format_duration(120, "fr") == "2 minutes"
