"""Fit test stage sequences and their validation.

A fit test is an ordered list of stages.  Ambient stages sample room air;
exercise stages sample inside the respirator while the wearer performs an
exercise.  Every exercise must be bracketed by ambient stages, since the
final fit factor of an exercise is computed from the ambient averages on
either side of it.

``validate()`` is the only way to obtain a ``FitTestConfig``.  It never
fails fast: every violated rule is reported in one ``ConfigValidationError``
so a configuration can be fixed in a single pass.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import List, Optional, Sequence, Tuple, Union

from . import (
    AMBIENT_GAP_WARNING_S,
    STAGE_PURGE_COUNT_MAX,
    STAGE_SAMPLE_COUNT_MAX,
    STAGE_SAMPLE_COUNT_MIN,
)
from .exceptions import ConfigValidationError

logger = logging.getLogger("portacount_tools.stage_config")


@dataclasses.dataclass(frozen=True)
class AmbientStage:
    purge_count: int
    sample_count: int

    @property
    def total_count(self) -> int:
        return self.purge_count + self.sample_count


@dataclasses.dataclass(frozen=True)
class ExerciseStage:
    purge_count: int
    sample_count: int
    name: str

    @property
    def total_count(self) -> int:
        return self.purge_count + self.sample_count


Stage = Union[AmbientStage, ExerciseStage]


@dataclasses.dataclass(frozen=True)
class ValidationIssue:
    """One violated rule.  ``stage_index`` is ``None`` for whole-config rules."""
    rule: str
    message: str
    stage_index: Optional[int] = None


@dataclasses.dataclass(frozen=True)
class ConfigWarning:
    code: str
    message: str
    stage_index: Optional[int] = None


@dataclasses.dataclass(frozen=True)
class FitTestConfig:
    stages: Tuple[Stage, ...]
    name: str = ""
    short_name: str = ""
    warnings: Tuple[ConfigWarning, ...] = ()

    @property
    def exercise_stage_indices(self) -> Tuple[int, ...]:
        return tuple(
            i for i, stage in enumerate(self.stages) if isinstance(stage, ExerciseStage)
        )

    @property
    def exercise_count(self) -> int:
        return len(self.exercise_stage_indices)

    @property
    def exercise_names(self) -> Tuple[str, ...]:
        return tuple(self.stages[i].name for i in self.exercise_stage_indices)

    @property
    def total_datapoints(self) -> int:
        return sum(stage.total_count for stage in self.stages)

    def exercise_index(self, stage_index: int) -> Optional[int]:
        """Zero-based exercise number of the stage at *stage_index*."""
        try:
            return self.exercise_stage_indices.index(stage_index)
        except ValueError:
            return None

    def describe(self) -> str:
        label = self.name or self.short_name or "unnamed test"
        return f"{label} ({len(self.stages)} stages, {self.exercise_count} exercises)"


def _is_count(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_counts(index: int, stage: Stage, issues: List[ValidationIssue]) -> None:
    # A count that is not an int (bools included) is reported instead of compared.
    well_typed = True
    for field, rule in (
        ("purge_count", "purge_count_out_of_range"),
        ("sample_count", "sample_count_out_of_range"),
    ):
        value = getattr(stage, field)
        if not _is_count(value):
            issues.append(ValidationIssue(
                rule=rule,
                message=(
                    f"Stage {index}: {field.replace('_', ' ')} {value!r} is not "
                    f"a whole number"
                ),
                stage_index=index,
            ))
            well_typed = False
    if not well_typed:
        return

    if not (0 <= stage.purge_count <= STAGE_PURGE_COUNT_MAX):
        issues.append(ValidationIssue(
            rule="purge_count_out_of_range",
            message=(
                f"Stage {index}: purge count {stage.purge_count} is outside "
                f"0..{STAGE_PURGE_COUNT_MAX}"
            ),
            stage_index=index,
        ))
    if not (STAGE_SAMPLE_COUNT_MIN <= stage.sample_count <= STAGE_SAMPLE_COUNT_MAX):
        issues.append(ValidationIssue(
            rule="sample_count_out_of_range",
            message=(
                f"Stage {index}: sample count {stage.sample_count} is outside "
                f"{STAGE_SAMPLE_COUNT_MIN}..{STAGE_SAMPLE_COUNT_MAX}"
            ),
            stage_index=index,
        ))


def _collect_warnings(
    stages: Sequence[Stage],
    max_ambient_gap_s: float,
    sample_interval_s: float,
) -> List[ConfigWarning]:
    warnings: List[ConfigWarning] = []

    # Time from the end of one ambient sample phase to the start of the next.
    previous_ambient: Optional[int] = None
    elapsed_s = 0.0
    for index, stage in enumerate(stages):
        if isinstance(stage, AmbientStage):
            if previous_ambient is not None:
                gap_s = elapsed_s + stage.purge_count * sample_interval_s
                if gap_s > max_ambient_gap_s:
                    warnings.append(ConfigWarning(
                        code="ambient_gap_exceeded",
                        message=(
                            f"Stages {previous_ambient} and {index}: about {gap_s:.0f}s "
                            f"between ambient samples exceeds {max_ambient_gap_s:.0f}s; "
                            f"room concentration may drift in between"
                        ),
                        stage_index=index,
                    ))
            previous_ambient = index
            elapsed_s = 0.0
        else:
            elapsed_s += stage.total_count * sample_interval_s

    for index, stage in enumerate(stages):
        if isinstance(stage, AmbientStage) and index > 0 and stage.purge_count == 0:
            warnings.append(ConfigWarning(
                code="ambient_purge_skipped",
                message=(
                    f"Stage {index}: ambient stage without purge follows a specimen "
                    f"stage; its first samples may still contain specimen air"
                ),
                stage_index=index,
            ))
    return warnings


def validate(
    stages: Sequence[object],
    name: str = "",
    short_name: str = "",
    max_ambient_gap_s: float = AMBIENT_GAP_WARNING_S,
    sample_interval_s: float = 1.0,
) -> FitTestConfig:
    """Check *stages* and build an immutable ``FitTestConfig``.

    Args:
        stages: Ordered ``AmbientStage`` / ``ExerciseStage`` values.
        name: Human-readable protocol name.
        short_name: Identifier used on the command line.
        max_ambient_gap_s: Threshold for the ``ambient_gap_exceeded`` warning.
        sample_interval_s: Seconds per datapoint, used to estimate durations.

    Returns:
        The validated config, with non-fatal warnings attached.

    Raises:
        ConfigValidationError: With every violated rule in ``.errors``.
    """
    issues: List[ValidationIssue] = []

    if not stages:
        issues.append(ValidationIssue(rule="no_stages", message="No stages defined"))
        raise ConfigValidationError(
            "Invalid fit test configuration: no stages defined", errors=issues,
        )

    typed: List[Stage] = []
    for index, stage in enumerate(stages):
        if not isinstance(stage, (AmbientStage, ExerciseStage)):
            issues.append(ValidationIssue(
                rule="invalid_stage",
                message=f"Stage {index}: {stage!r} is neither an ambient nor an exercise stage",
                stage_index=index,
            ))
            continue
        _check_counts(index, stage, issues)
        typed.append(stage)

    if not isinstance(stages[0], AmbientStage):
        issues.append(ValidationIssue(
            rule="first_stage_not_ambient",
            message="The first stage must be an ambient stage",
            stage_index=0,
        ))
    if not isinstance(stages[-1], AmbientStage):
        issues.append(ValidationIssue(
            rule="last_stage_not_ambient",
            message="The last stage must be an ambient stage",
            stage_index=len(stages) - 1,
        ))
    for index in range(1, len(stages)):
        if isinstance(stages[index], AmbientStage) and isinstance(stages[index - 1], AmbientStage):
            issues.append(ValidationIssue(
                rule="adjacent_ambient",
                message=f"Stages {index - 1} and {index} are both ambient stages",
                stage_index=index,
            ))
    if not any(isinstance(stage, ExerciseStage) for stage in stages):
        issues.append(ValidationIssue(
            rule="no_exercise",
            message="At least one exercise stage is required",
        ))

    label = name or short_name or "fit test"
    if issues:
        summary = "; ".join(issue.message for issue in issues)
        logger.error("[CONFIG] %s rejected with %d error(s): %s", label, len(issues), summary)
        raise ConfigValidationError(
            f"Invalid fit test configuration {label!r}: {summary}", errors=issues,
        )

    warnings = _collect_warnings(typed, max_ambient_gap_s, sample_interval_s)
    for warning in warnings:
        logger.warning("[CONFIG] %s: %s", label, warning.message)

    return FitTestConfig(
        stages=tuple(typed),
        name=name,
        short_name=short_name,
        warnings=tuple(warnings),
    )
