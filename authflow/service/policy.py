from __future__ import annotations

import math

from authflow.config import LockoutPolicy


def lockout_duration(attempt_count: int, policy: LockoutPolicy) -> int:
    """Seconds to lock an account after ``attempt_count`` consecutive failures.

    Zero up to ``policy.free_attempts``; otherwise the largest table entry at
    or below the count, so the result never decreases as the count grows and
    never exceeds ``policy.max_lockout_seconds``.
    """
    if attempt_count <= policy.free_attempts:
        return 0
    eligible = [threshold for threshold in policy.durations if threshold <= attempt_count]
    if not eligible:
        return 0
    duration = policy.durations[max(eligible)]
    return min(duration, policy.max_lockout_seconds)


_UNITS = {
    "en": (("second", "seconds"), ("minute", "minutes")),
    "vi": (("giây", "giây"), ("phút", "phút")),
}


def format_duration(seconds: int, language: str = "en") -> str:
    """Human readable wait time; whole minutes (rounded up) from 60 seconds on."""
    seconds = max(0, int(seconds))
    (sec_one, sec_many), (min_one, min_many) = _UNITS.get(language, _UNITS["en"])
    if seconds >= 60:
        minutes = math.ceil(seconds / 60)
        return f"{minutes} {min_one if minutes == 1 else min_many}"
    return f"{seconds} {sec_one if seconds == 1 else sec_many}"
