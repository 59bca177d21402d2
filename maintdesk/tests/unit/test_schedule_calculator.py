from __future__ import annotations

from datetime import datetime, timezone

from maintdesk.services.scheduling.calculator import ScheduleSpec, is_valid_time_of_day, next_occurrence


def _utc(*parts: int) -> datetime:
    return datetime(*parts, tzinfo=timezone.utc)


def test_daily_returns_today_when_time_is_still_ahead() -> None:
    spec = ScheduleSpec(type="daily", timezone="UTC", time_of_day="07:30")
    assert next_occurrence(spec, _utc(2026, 3, 2, 6, 0)) == _utc(2026, 3, 2, 7, 30)


def test_daily_rolls_to_tomorrow_when_reference_is_at_or_past_time() -> None:
    spec = ScheduleSpec(type="daily", timezone="UTC", time_of_day="07:30")
    # Strictly after: an occurrence equal to the reference is already consumed.
    assert next_occurrence(spec, _utc(2026, 3, 2, 7, 30)) == _utc(2026, 3, 3, 7, 30)
    assert next_occurrence(spec, _utc(2026, 3, 2, 9, 0)) == _utc(2026, 3, 3, 7, 30)


def test_daily_wall_clock_uses_schedule_timezone() -> None:
    # Madrid is UTC+2 in July, so 07:30 local is 05:30 UTC.
    spec = ScheduleSpec(type="daily", timezone="Europe/Madrid", time_of_day="07:30")
    assert next_occurrence(spec, _utc(2026, 7, 1, 4, 0)) == _utc(2026, 7, 1, 5, 30)


def test_missing_time_of_day_defaults_to_eight() -> None:
    spec = ScheduleSpec(type="daily", timezone="UTC")
    assert next_occurrence(spec, _utc(2026, 3, 2, 6, 0)) == _utc(2026, 3, 2, 8, 0)


def test_weekly_includes_today_when_time_is_ahead() -> None:
    # 2026-03-02 is a Monday.
    spec = ScheduleSpec(type="weekly", timezone="UTC", time_of_day="08:00", days_of_week=(1, 4))
    assert next_occurrence(spec, _utc(2026, 3, 2, 7, 0)) == _utc(2026, 3, 2, 8, 0)


def test_weekly_picks_next_listed_weekday() -> None:
    spec = ScheduleSpec(type="weekly", timezone="UTC", time_of_day="08:00", days_of_week=(1, 4))
    assert next_occurrence(spec, _utc(2026, 3, 2, 9, 0)) == _utc(2026, 3, 5, 8, 0)


def test_weekly_tuesday_thursday_advances_within_the_week() -> None:
    spec = ScheduleSpec(type="weekly", timezone="UTC", time_of_day="09:00", days_of_week=(2, 4))
    # Monday 10:00 -> Tuesday 09:00, Tuesday 09:30 -> Thursday 09:00.
    assert next_occurrence(spec, _utc(2026, 3, 2, 10, 0)) == _utc(2026, 3, 3, 9, 0)
    assert next_occurrence(spec, _utc(2026, 3, 3, 9, 30)) == _utc(2026, 3, 5, 9, 0)


def test_weekly_single_day_wraps_a_full_week() -> None:
    spec = ScheduleSpec(type="weekly", timezone="UTC", time_of_day="08:00", days_of_week=(1,))
    assert next_occurrence(spec, _utc(2026, 3, 2, 8, 0)) == _utc(2026, 3, 9, 8, 0)


def test_monthly_clamps_to_last_day_of_short_month() -> None:
    spec = ScheduleSpec(type="monthly", timezone="UTC", time_of_day="08:00", day_of_month=31)
    assert next_occurrence(spec, _utc(2026, 4, 10, 12, 0)) == _utc(2026, 4, 30, 8, 0)
    assert next_occurrence(spec, _utc(2026, 4, 30, 9, 0)) == _utc(2026, 5, 31, 8, 0)


def test_monthly_rolls_over_year_end() -> None:
    spec = ScheduleSpec(type="monthly", timezone="UTC", time_of_day="08:00", day_of_month=15)
    assert next_occurrence(spec, _utc(2026, 12, 20, 0, 0)) == _utc(2027, 1, 15, 8, 0)


def test_date_schedule_fires_once() -> None:
    target = _utc(2026, 5, 1, 10, 0)
    spec = ScheduleSpec(type="date", date=target)
    assert next_occurrence(spec, _utc(2026, 4, 1)) == target
    consumed = spec.with_progress(next_run_at=None, last_run_at=target)
    assert next_occurrence(consumed, _utc(2026, 4, 1)) is None
    assert next_occurrence(ScheduleSpec(type="date"), _utc(2026, 4, 1)) is None


def test_unknown_timezone_falls_back_to_utc() -> None:
    spec = ScheduleSpec(type="daily", timezone="Mars/Olympus_Mons", time_of_day="07:30")
    assert next_occurrence(spec, _utc(2026, 3, 2, 6, 0)) == _utc(2026, 3, 2, 7, 30)


def test_naive_reference_is_treated_as_utc() -> None:
    spec = ScheduleSpec(type="daily", timezone="UTC", time_of_day="07:30")
    assert next_occurrence(spec, datetime(2026, 3, 2, 6, 0)) == _utc(2026, 3, 2, 7, 30)


def test_unknown_type_has_no_occurrence() -> None:
    assert next_occurrence(ScheduleSpec(type="hourly"), _utc(2026, 3, 2)) is None


def test_time_of_day_format() -> None:
    assert is_valid_time_of_day("00:00")
    assert is_valid_time_of_day("23:59")
    assert not is_valid_time_of_day("24:00")
    assert not is_valid_time_of_day("7:30")
