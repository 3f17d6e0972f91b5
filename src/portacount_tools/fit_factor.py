"""Fit factor arithmetic.

Pure functions over immutable run snapshots and plain values; nothing here
keeps state or talks to the engine.

A fit factor is ambient concentration divided by specimen concentration.
Whenever the specimen mean is exactly zero the result is ``UNDEFINED``
instead of an exception.  Concentrations are used as reported, with no
clamping of small values.
"""

from __future__ import annotations

import math
from typing import Iterable, List, Sequence, Union

from .results import UNDEFINED, DataPoint, FitFactorValue, FitTestRun, UndefinedResult
from .stage_config import AmbientStage

# Sample flow through the 8020 optics.
SAMPLE_FLOW_CM3_PER_MIN = 100.0

# Seconds of flow behind one reported concentration, on every model.
READING_PERIOD_S = 1.0


def _values(datapoints: Iterable[Union[DataPoint, float]]) -> List[float]:
    return [dp.value if isinstance(dp, DataPoint) else float(dp) for dp in datapoints]


def _mean(values: Sequence[float]) -> FitFactorValue:
    if not values:
        return UNDEFINED
    return math.fsum(values) / len(values)


def _ratio(numerator: FitFactorValue, denominator: FitFactorValue) -> FitFactorValue:
    if isinstance(numerator, UndefinedResult) or isinstance(denominator, UndefinedResult):
        return UNDEFINED
    if denominator == 0:
        return UNDEFINED
    return numerator / denominator


def is_undefined(value: object) -> bool:
    return value is UNDEFINED


def ambient_average(run: FitTestRun, stage_index: int) -> FitFactorValue:
    """Arithmetic mean of the sample datapoints of an ambient stage.

    Returns ``UNDEFINED`` when the stage has no samples yet.

    Raises:
        ValueError: If *stage_index* does not name an ambient stage.
    """
    stages = run.config.stages
    if not (0 <= stage_index < len(stages)) or not isinstance(stages[stage_index], AmbientStage):
        raise ValueError(f"Stage {stage_index} is not an ambient stage")
    return _mean(run.samples(stage_index))


def live_ff(ambient_avg: FitFactorValue, datapoint: Union[DataPoint, float]) -> FitFactorValue:
    """Fit factor of one specimen reading against the last ambient average."""
    value = datapoint.value if isinstance(datapoint, DataPoint) else float(datapoint)
    return _ratio(ambient_avg, value)


def interim_ff(
    ambient_avg: FitFactorValue,
    exercise_datapoints: Sequence[Union[DataPoint, float]],
) -> FitFactorValue:
    """Fit factor of an exercise's readings so far against the last ambient average."""
    return _ratio(ambient_avg, _mean(_values(exercise_datapoints)))


def final_ff(
    ambient_before_avg: FitFactorValue,
    ambient_after_avg: FitFactorValue,
    exercise_datapoints: Sequence[Union[DataPoint, float]],
) -> FitFactorValue:
    """Fit factor of a complete exercise between its two ambient brackets.

    ``final_ff(10.0, 6.0, [2.0, 2.0, 2.0, 2.0]) == 4.0``
    """
    if isinstance(ambient_before_avg, UndefinedResult) or isinstance(ambient_after_avg, UndefinedResult):
        return UNDEFINED
    ambient = (ambient_before_avg + ambient_after_avg) / 2.0
    return _ratio(ambient, _mean(_values(exercise_datapoints)))


def _relative_counting_error(values: Sequence[float], sample_period_s: float) -> FitFactorValue:
    # Poisson: the relative error of N counted particles is 1/sqrt(N).
    counted = math.fsum(values) * sample_period_s * SAMPLE_FLOW_CM3_PER_MIN / 60.0
    if counted <= 0:
        return UNDEFINED
    return 1.0 / math.sqrt(counted)


def final_ff_error(
    fit_factor: FitFactorValue,
    ambient_datapoints: Sequence[Union[DataPoint, float]],
    exercise_datapoints: Sequence[Union[DataPoint, float]],
    sample_period_s: float = READING_PERIOD_S,
) -> FitFactorValue:
    """One standard deviation of a final fit factor from counting statistics.

    Args:
        fit_factor: The value returned by ``final_ff``.
        ambient_datapoints: Samples of both bracketing ambient stages.
        exercise_datapoints: Samples of the exercise.
        sample_period_s: Seconds of flow each reading represents.

    The estimate is poor when very few specimen particles were counted.
    """
    if isinstance(fit_factor, UndefinedResult):
        return UNDEFINED
    exercise_err = _relative_counting_error(_values(exercise_datapoints), sample_period_s)
    ambient_err = _relative_counting_error(_values(ambient_datapoints), sample_period_s)
    if isinstance(exercise_err, UndefinedResult) or isinstance(ambient_err, UndefinedResult):
        return UNDEFINED
    return fit_factor * math.sqrt(exercise_err ** 2 + ambient_err ** 2)


def overall_ff(fit_factors: Sequence[FitFactorValue]) -> FitFactorValue:
    """Harmonic mean of per-exercise final fit factors.

    An undefined exercise result (no specimen particles at all) contributes
    nothing to the sum of reciprocals.  Returns ``UNDEFINED`` for an empty
    sequence or when every exercise is undefined.
    """
    if not fit_factors:
        return UNDEFINED
    defined = [ff for ff in fit_factors if not isinstance(ff, UndefinedResult)]
    if any(ff == 0 for ff in defined):
        return 0.0
    reciprocal_sum = math.fsum(1.0 / ff for ff in defined)
    if reciprocal_sum == 0:
        return UNDEFINED
    return len(fit_factors) / reciprocal_sum
