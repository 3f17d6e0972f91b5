"""
Stage configuration test suite: structural rules, warnings and helpers.

Run with full visibility:
    pytest tests/test_stage_config.py -v -s
"""

from __future__ import annotations

import dataclasses

import pytest

from portacount_tools.exceptions import ConfigValidationError, PortacountToolsError
from portacount_tools.stage_config import (
    AmbientStage,
    ExerciseStage,
    FitTestConfig,
    validate,
)


def _report(label, detail=""):
    # type: (str, str) -> None
    if detail:
        print(f"  [{label}] {detail}")
    else:
        print(f"  [{label}]")


def _rules(exc_info):
    # type: (pytest.ExceptionInfo) -> list
    return [issue.rule for issue in exc_info.value.errors]


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Structural Rules
# ═══════════════════════════════════════════════════════════════════════════

class TestValidate:
    """validate() reports every violated rule in one error."""

    def test_minimal_valid_config(self):
        # type: () -> None
        _report("TEST", "Ambient, exercise, ambient is the smallest valid test")
        config = validate(
            [AmbientStage(4, 5), ExerciseStage(11, 40, "Grimace"), AmbientStage(4, 5)],
            name="Minimal", short_name="minimal",
        )
        assert isinstance(config, FitTestConfig)
        assert isinstance(config.stages, tuple)
        assert config.warnings == ()
        _report("PASS", config.describe())

    def test_no_stages(self):
        # type: () -> None
        with pytest.raises(ConfigValidationError) as exc_info:
            validate([])
        assert _rules(exc_info) == ["no_stages"]
        assert isinstance(exc_info.value, PortacountToolsError)

    def test_single_ambient(self):
        # type: () -> None
        with pytest.raises(ConfigValidationError) as exc_info:
            validate([AmbientStage(4, 5)])
        assert _rules(exc_info) == ["no_exercise"]

    def test_every_violation_reported(self):
        # type: () -> None
        _report("TEST", "Validation never stops at the first problem")
        stages = [
            ExerciseStage(11, 40, "Starts wrong"),
            AmbientStage(300, 5),
            AmbientStage(4, 0),
            ExerciseStage(11, 70000, "Ends wrong"),
        ]
        with pytest.raises(ConfigValidationError) as exc_info:
            validate(stages, name="Broken")
        rules = _rules(exc_info)
        _report("CAUGHT", ", ".join(rules))
        assert rules == [
            "purge_count_out_of_range",
            "sample_count_out_of_range",
            "sample_count_out_of_range",
            "first_stage_not_ambient",
            "last_stage_not_ambient",
            "adjacent_ambient",
        ]
        stage_indices = [issue.stage_index for issue in exc_info.value.errors]
        assert stage_indices == [1, 2, 3, 0, 3, 2]
        assert "Broken" in str(exc_info.value)
        _report("PASS", "{} errors in one pass".format(len(rules)))

    def test_only_exercises(self):
        # type: () -> None
        with pytest.raises(ConfigValidationError) as exc_info:
            validate([ExerciseStage(0, 10, "a"), ExerciseStage(0, 10, "b")])
        assert _rules(exc_info) == ["first_stage_not_ambient", "last_stage_not_ambient"]

    def test_adjacent_ambient_stages(self):
        # type: () -> None
        with pytest.raises(ConfigValidationError) as exc_info:
            validate([
                AmbientStage(4, 5),
                AmbientStage(4, 5),
                ExerciseStage(11, 40, "Talking"),
                AmbientStage(4, 5),
            ])
        assert _rules(exc_info) == ["adjacent_ambient"]
        assert exc_info.value.errors[0].stage_index == 1

    def test_not_a_stage(self):
        # type: () -> None
        with pytest.raises(ConfigValidationError) as exc_info:
            validate([AmbientStage(4, 5), "EXERCISE,11,40,Talking", AmbientStage(4, 5)])
        assert "invalid_stage" in _rules(exc_info)
        assert "adjacent_ambient" not in _rules(exc_info)

    def test_count_boundaries(self):
        # type: () -> None
        _report("TEST", "Purge 0..255 and sample 1..65535 are accepted")
        validate([AmbientStage(0, 1), ExerciseStage(255, 65535, "x"), AmbientStage(255, 1)])
        with pytest.raises(ConfigValidationError) as exc_info:
            validate([AmbientStage(-1, 1), ExerciseStage(0, 65536, "x"), AmbientStage(256, 1)])
        assert _rules(exc_info) == [
            "purge_count_out_of_range",
            "sample_count_out_of_range",
            "purge_count_out_of_range",
        ]

    def test_fractional_counts_rejected(self):
        # type: () -> None
        _report("TEST", "4.5 purge readings is not a count")
        with pytest.raises(ConfigValidationError) as exc_info:
            validate([AmbientStage(4.5, 5), ExerciseStage(0, 2.5, "x"), AmbientStage(0, 1)])
        assert _rules(exc_info) == ["purge_count_out_of_range", "sample_count_out_of_range"]
        assert [e.stage_index for e in exc_info.value.errors] == [0, 1]
        _report("CAUGHT", str(exc_info.value))

    @pytest.mark.parametrize("purge_count, sample_count", [
        ("4", 5),
        (4, "5"),
        (True, 5),
        (4, None),
    ])
    def test_non_integer_counts_are_collected(self, purge_count, sample_count):
        # type: (object, object) -> None
        _report("TEST", f"AmbientStage({purge_count!r}, {sample_count!r}) is reported, not raised")
        with pytest.raises(ConfigValidationError) as exc_info:
            validate([
                AmbientStage(purge_count, sample_count),
                ExerciseStage(11, 40, "Talking"),
                AmbientStage(4, 5),
                AmbientStage(4, 5),
            ])
        rules = _rules(exc_info)
        assert rules[0] in ("purge_count_out_of_range", "sample_count_out_of_range")
        assert "whole number" in exc_info.value.errors[0].message
        assert rules[-1] == "adjacent_ambient"


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Warnings
# ═══════════════════════════════════════════════════════════════════════════

class TestWarnings:
    """Non-fatal findings are attached to the config."""

    def test_long_ambient_gap(self):
        # type: () -> None
        _report("TEST", "More than five minutes between ambient samples warns")
        config = validate([
            AmbientStage(4, 5),
            ExerciseStage(11, 200, "Long"),
            ExerciseStage(0, 100, "Longer"),
            AmbientStage(4, 5),
        ])
        codes = [w.code for w in config.warnings]
        assert codes == ["ambient_gap_exceeded"]
        assert config.warnings[0].stage_index == 3
        _report("PASS", config.warnings[0].message)

    def test_gap_threshold_is_configurable(self):
        # type: () -> None
        stages = [AmbientStage(4, 5), ExerciseStage(11, 49, "Talking"), AmbientStage(4, 5)]
        assert validate(stages).warnings == ()
        config = validate(stages, max_ambient_gap_s=60.0)
        assert [w.code for w in config.warnings] == ["ambient_gap_exceeded"]

    def test_ambient_without_purge_after_exercise(self):
        # type: () -> None
        config = validate([AmbientStage(0, 5), ExerciseStage(11, 40, "x"), AmbientStage(0, 5)])
        assert [(w.code, w.stage_index) for w in config.warnings] == [("ambient_purge_skipped", 2)]


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Config Helpers
# ═══════════════════════════════════════════════════════════════════════════

class TestFitTestConfig:
    """Derived properties of a validated config."""

    @pytest.fixture()
    def config(self):
        # type: () -> FitTestConfig
        return validate(
            [
                AmbientStage(4, 5),
                ExerciseStage(11, 30, "Bending Over"),
                ExerciseStage(0, 30, "Talking"),
                AmbientStage(4, 5),
                ExerciseStage(11, 30, "Grimace"),
                AmbientStage(4, 5),
            ],
            name="Helpers",
        )

    def test_exercise_indices(self, config):
        # type: (FitTestConfig) -> None
        assert config.exercise_stage_indices == (1, 2, 4)
        assert config.exercise_count == 3
        assert config.exercise_names == ("Bending Over", "Talking", "Grimace")
        assert config.exercise_index(4) == 2
        assert config.exercise_index(3) is None

    def test_total_datapoints(self, config):
        # type: (FitTestConfig) -> None
        assert config.total_datapoints == 3 * 9 + 41 + 30 + 41

    def test_describe(self, config):
        # type: (FitTestConfig) -> None
        assert config.describe() == "Helpers (6 stages, 3 exercises)"

    def test_config_is_immutable(self, config):
        # type: (FitTestConfig) -> None
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.name = "changed"  # type: ignore[misc]
        with pytest.raises(dataclasses.FrozenInstanceError):
            config.stages[0].purge_count = 0  # type: ignore[misc]
