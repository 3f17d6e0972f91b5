"""Run state and the events the engine emits.

``FitTestRun`` is an immutable snapshot; the engine builds a new one
whenever an observer needs it, so nothing outside the engine ever sees a
half-updated run.  Events are plain frozen dataclasses and carry values, not
references into the engine.
"""

from __future__ import annotations

import dataclasses
import enum
from typing import Mapping, Optional, Tuple, Union

from .stage_config import FitTestConfig
from .types import Concentration


class UndefinedResult:
    """Fit factor whose specimen concentration was exactly zero.

    Not an error: the run continues and the result is simply flagged.  Use
    the ``UNDEFINED`` singleton and compare with ``is``.
    """

    _instance: Optional[UndefinedResult] = None

    def __new__(cls) -> UndefinedResult:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __str__(self) -> str:
        return "undefined"

    def __reduce__(self):
        return (UndefinedResult, ())


UNDEFINED = UndefinedResult()

FitFactorValue = Union[float, UndefinedResult]


class EngineState(enum.Enum):
    IDLE = "idle"
    AMBIENT_PURGE = "ambient_purge"
    AMBIENT_SAMPLE = "ambient_sample"
    SPECIMEN_PURGE = "specimen_purge"
    SPECIMEN_SAMPLE = "specimen_sample"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (EngineState.COMPLETED, EngineState.ABORTED)


class Phase(enum.Enum):
    PURGE = "purge"
    SAMPLE = "sample"


@dataclasses.dataclass(frozen=True)
class DataPoint:
    """One classified reading.

    Attributes:
        value: Particle concentration (particles/cm3).
        stage_index: Stage the reading was attributed to.
        phase: Purge or sample phase of that stage.
        index: Position within the phase, from 0.
        sequence: Position among all classified readings of the run, from 0.
    """
    value: Concentration
    stage_index: int
    phase: Phase
    index: int
    sequence: int


@dataclasses.dataclass(frozen=True)
class FitTestRun:
    config: FitTestConfig
    state: EngineState
    stage_index: Optional[int]
    phase: Optional[Phase]
    purges_consumed: int
    samples_consumed: int
    datapoints: Tuple[DataPoint, ...]
    ambient_averages: Mapping[int, FitFactorValue]
    final_fit_factors: Mapping[int, FitFactorValue]
    discarded_count: int = 0
    error: Optional[Exception] = None

    def stage_datapoints(self, stage_index: int, phase: Optional[Phase] = None) -> Tuple[DataPoint, ...]:
        return tuple(
            dp for dp in self.datapoints
            if dp.stage_index == stage_index and (phase is None or dp.phase is phase)
        )

    def samples(self, stage_index: int) -> Tuple[float, ...]:
        """Sample-phase values of one stage, in arrival order."""
        return tuple(dp.value for dp in self.stage_datapoints(stage_index, Phase.SAMPLE))

    @property
    def is_finished(self) -> bool:
        return self.state.is_terminal

    @property
    def completed(self) -> bool:
        return self.state is EngineState.COMPLETED


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class StateChanged:
    state: EngineState
    stage_index: Optional[int]


@dataclasses.dataclass(frozen=True)
class StageStarted:
    stage_index: int
    exercise_index: Optional[int]  # None for ambient stages
    name: str


@dataclasses.dataclass(frozen=True)
class ExerciseStarted:
    """The device display now shows ``exercise_index + 1``."""
    exercise_index: int
    name: str


@dataclasses.dataclass(frozen=True)
class DataPointCaptured:
    datapoint: DataPoint


@dataclasses.dataclass(frozen=True)
class SampleDiscarded:
    """A reading that arrived before the valve switch was acknowledged."""
    value: Concentration
    stage_index: int


@dataclasses.dataclass(frozen=True)
class LiveFitFactor:
    exercise_index: int
    stage_index: int
    sample_index: int
    value: FitFactorValue


@dataclasses.dataclass(frozen=True)
class InterimFitFactor:
    exercise_index: int
    stage_index: int
    value: FitFactorValue


@dataclasses.dataclass(frozen=True)
class FinalFitFactor:
    exercise_index: int
    stage_index: int
    value: FitFactorValue
    error: FitFactorValue  # one standard deviation, from counting statistics


@dataclasses.dataclass(frozen=True)
class RunFinished:
    run: FitTestRun
    overall_fit_factor: Optional[FitFactorValue] = None


RunEvent = Union[
    StateChanged, StageStarted, ExerciseStarted, DataPointCaptured,
    SampleDiscarded, LiveFitFactor, InterimFitFactor, FinalFitFactor, RunFinished,
]
