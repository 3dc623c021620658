from neuroloop_engine.unlock import (
    MetricGap,
    game_unlock_actions,
    unlock_suggestions,
    unlock_window,
)


class TestUnlockSuggestions:
    def test_largest_gap_first(self):
        gaps = [MetricGap("readiness", 50, 55), MetricGap("recovery", 30, 50)]
        suggestions = unlock_suggestions(gaps)
        assert [s.target_metric for s in suggestions] == ["recovery", "readiness"]
        assert suggestions[0].id == "detox-session"

    def test_at_most_three(self):
        gaps = [
            MetricGap("sharpness", 40, 70),
            MetricGap("readiness", 40, 60),
            MetricGap("recovery", 40, 55),
            MetricGap("s2_capacity", 60, 70),
        ]
        assert len(unlock_suggestions(gaps)) == 3

    def test_games_disabled_skips_game_actions(self):
        suggestions = unlock_suggestions([MetricGap("sharpness", 40, 60)], games_enabled=False)
        assert suggestions[0].id == "focus-block"

    def test_closed_gap_is_zero(self):
        assert MetricGap("recovery", 70, 50).gap == 0


class TestGameUnlockActions:
    def test_deduplicated(self):
        gaps = [MetricGap("recovery", 40, 50), MetricGap("recovery", 40, 55)]
        assert game_unlock_actions(gaps) == ["30-min detox session", "30-min walk"]

    def test_capped_at_three(self):
        gaps = [MetricGap("recovery", 20, 50), MetricGap("sharpness", 30, 65)]
        assert len(game_unlock_actions(gaps)) == 3

    def test_unknown_metric(self):
        assert game_unlock_actions([MetricGap("mood", 10, 50)]) == []


def test_unlock_window():
    assert unlock_window([MetricGap("recovery", 45, 50)]) == "within 1-2 hours"
    assert unlock_window([MetricGap("recovery", 35, 50)]) == "later today"
    assert unlock_window([MetricGap("recovery", 20, 50)]) == "tomorrow morning"
    assert unlock_window([MetricGap("recovery", 0, 50)]) == "after sustained recovery"
