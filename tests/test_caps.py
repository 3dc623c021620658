"""Tests for rolling caps recomputed from the completion log."""

from datetime import datetime, timedelta, timezone

from neuroloop_engine.caps import CompletionRecord, GamesCaps, build_games_caps, detect_cap_violations
from neuroloop_engine.plans import get_plan_modifiers

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
LIGHT = get_plan_modifiers("light")


def _done(game_type: str, delta: timedelta, **kwargs) -> CompletionRecord:
    return CompletionRecord(game_type=game_type, completed_at=NOW - delta, **kwargs)


class TestBuildGamesCaps:
    def test_daily_and_weekly_counts(self):
        completions = [
            _done("S1-AE", timedelta(hours=1)),
            _done("S1-RA", timedelta(hours=2)),
            _done("S1-AE", timedelta(days=1)),
            _done("S2-CT", timedelta(hours=3)),
            _done("S2-IN", timedelta(days=3)),
            _done("S2-IN", timedelta(days=8)),
        ]
        caps = build_games_caps(completions, LIGHT, NOW)
        assert caps.s1_daily_used == 2
        assert caps.s2_daily_used == 1
        assert caps.s2_weekly_used == 2
        assert caps.insight_weekly_used == 1

    def test_weekly_limits_follow_plan(self):
        caps = build_games_caps([], get_plan_modifiers("superhuman"), NOW)
        assert caps.s2_weekly_max == 10
        assert caps.insight_weekly_max == 4
        assert caps.s1_daily_max == 3
        assert caps.s2_daily_max == 1

    def test_only_completed_rows_count(self):
        completions = [
            _done("S1-AE", timedelta(hours=1), status="abandoned"),
            _done("S1-AE", timedelta(hours=1)),
        ]
        assert build_games_caps(completions, LIGHT, NOW).s1_daily_used == 1

    def test_future_rows_ignored(self):
        completions = [_done("S1-AE", -timedelta(hours=1))]
        assert build_games_caps(completions, LIGHT, NOW).s1_daily_used == 0

    def test_day_boundary_uses_local_calendar(self):
        # 03:00 UTC is 23:00 the previous evening in New York (EDT)
        completions = [CompletionRecord("S1-AE", datetime(2026, 3, 10, 3, 0, tzinfo=timezone.utc))]
        assert build_games_caps(completions, LIGHT, NOW).s1_daily_used == 1
        assert build_games_caps(completions, LIGHT, NOW, "America/New_York").s1_daily_used == 0

    def test_games_with_xp_today(self):
        completions = [
            _done("S1-AE", timedelta(hours=1), xp_awarded=20),
            _done("S1-RA", timedelta(hours=2), xp_awarded=0),
            _done("S2-CT", timedelta(days=2), xp_awarded=30),
        ]
        assert build_games_caps(completions, LIGHT, NOW).games_with_xp_today == 1


class TestDetectCapViolations:
    def test_none_at_limit(self):
        assert detect_cap_violations(GamesCaps(s1_daily_used=3, s2_daily_used=1)) == []

    def test_overshoot_reported(self):
        caps = GamesCaps(s1_daily_used=4, s2_weekly_used=5, s2_weekly_max=4)
        assert detect_cap_violations(caps) == ["s1_daily", "s2_weekly"]

    def test_reached_flags(self):
        caps = GamesCaps(s1_daily_used=3, insight_weekly_used=2, insight_weekly_max=2)
        assert caps.s1_daily_reached
        assert caps.insight_weekly_reached
        assert not caps.s2_daily_reached
