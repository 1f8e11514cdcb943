"""Level computation tests."""

import pytest

from dungeon.policy.level_thresholds import LEVEL_THRESHOLDS, compute_level, hours_reclaimed, next_level_after


class TestLevelComputation:
    def test_level_1_at_zero_xp(self):
        result = compute_level(0)
        assert result["level"] == 1
        assert result["title"] == "Scroll Thrall"

    def test_level_boundary_8_xp(self):
        """8 XP is still level 1."""
        assert compute_level(8)["level"] == 1

    def test_level_2_at_9_xp(self):
        result = compute_level(9)
        assert result["level"] == 2
        assert result["title"] == "Restless Squire"

    def test_xp_into_level_calculation(self):
        result = compute_level(20)  # 11 XP into level 2
        assert result["xp_into_level"] == 11
        assert result["xp_for_level"] == 27  # 36 - 9

    def test_max_level(self):
        result = compute_level(3249)
        assert result["level"] == 20
        assert result["title"] == "Unplugged Sovereign"
        assert result["next_level"] == 20

    def test_max_level_exceeded(self):
        assert compute_level(1_000_000)["level"] == 20

    def test_negative_total_is_level_1(self):
        result = compute_level(-40)
        assert result["level"] == 1
        assert result["xp_into_level"] == -40

    @pytest.mark.parametrize(
        "xp,expected_level",
        [(0, 1), (9, 2), (36, 3), (81, 4), (144, 5), (225, 6), (900, 11), (3248, 19)],
    )
    def test_thresholds(self, xp, expected_level):
        assert compute_level(xp)["level"] == expected_level

    def test_thresholds_ascending(self):
        cumulative = [t["cumulative"] for t in LEVEL_THRESHOLDS]
        assert cumulative == sorted(cumulative)
        assert len(set(cumulative)) == len(cumulative)


class TestNextLevelAfter:
    def test_level_up(self):
        assert next_level_after(1, 40) == 3

    def test_never_decreases(self):
        """Penalties can drop the total below a threshold; the level stays."""
        assert next_level_after(5, 0) == 5
        assert next_level_after(5, -100) == 5


def test_hours_reclaimed():
    assert hours_reclaimed(90) == 1.5
    assert hours_reclaimed(-30) == 0
