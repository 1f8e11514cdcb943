"""User settings parse boundary tests."""

import pytest

from dungeon.exceptions import InvalidSettingsError
from dungeon.policy.settings import (
    DEFAULT_SETTINGS,
    SETTINGS_PRESETS,
    merge_settings,
    parse_settings,
    safe_parse_settings,
)


class TestParseSettings:
    def test_empty_blob_is_defaults(self):
        assert parse_settings(None) == DEFAULT_SETTINGS
        assert parse_settings({}) == DEFAULT_SETTINGS

    def test_camel_case_keys(self):
        parsed = parse_settings({"phoneUsage": {"dailyLimitMin": 45}})
        assert parsed.phone_usage.daily_limit_min == 45

    def test_snake_case_keys(self):
        parsed = parse_settings({"xp": {"xp_per_urge_resist": 20}})
        assert parsed.xp.xp_per_urge_resist == 20

    def test_out_of_range_rejected(self):
        with pytest.raises(InvalidSettingsError) as exc_info:
            parse_settings({"phoneUsage": {"dailyLimitMin": 10_000}})
        assert exc_info.value.errors

    def test_unknown_version_rejected(self):
        with pytest.raises(InvalidSettingsError):
            parse_settings({"version": 2})

    def test_block_bounds_must_contain_default(self):
        with pytest.raises(InvalidSettingsError):
            parse_settings({"phoneUsage": {"minBlockMin": 40, "defaultBlockMin": 30}})

    def test_endurance_floor_below_ceiling(self):
        with pytest.raises(InvalidSettingsError):
            parse_settings({"xp": {"enduranceFloorMin": 120, "enduranceCeilingMin": 60}})

    def test_safe_parse_falls_back(self):
        assert safe_parse_settings({"phoneUsage": {"dailyLimitMin": -1}}) == DEFAULT_SETTINGS

    def test_settings_are_frozen(self):
        with pytest.raises(Exception):
            DEFAULT_SETTINGS.xp.xp_per_block_min = 99  # type: ignore[misc]


class TestMergeSettings:
    def test_partial_section_update(self):
        merged = merge_settings(DEFAULT_SETTINGS, {"phone_usage": {"daily_limit_min": 45}})
        assert merged.phone_usage.daily_limit_min == 45
        assert merged.phone_usage.default_block_min == DEFAULT_SETTINGS.phone_usage.default_block_min
        assert merged.xp == DEFAULT_SETTINGS.xp

    def test_invalid_merge_rejected(self):
        with pytest.raises(InvalidSettingsError):
            merge_settings(DEFAULT_SETTINGS, {"streaks": {"grace_days": 9}})


class TestPresets:
    def test_standard_is_default(self):
        assert SETTINGS_PRESETS["standard"] == DEFAULT_SETTINGS

    def test_hardcore_is_stricter(self):
        hardcore = SETTINGS_PRESETS["hardcore"]
        assert hardcore.phone_usage.daily_limit_min < DEFAULT_SETTINGS.phone_usage.daily_limit_min
        assert hardcore.xp.enable_decay is True

    def test_gentle_disables_build_mode(self):
        assert SETTINGS_PRESETS["gentle"].features.build_mode is False
