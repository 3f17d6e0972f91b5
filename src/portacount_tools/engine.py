"""Fit test execution engine.

``FitTestEngine`` walks a validated ``FitTestConfig`` stage by stage.  For
each stage it switches the sampling valve if needed, then attributes every
reading the device sends to the active purge or sample phase until the
phase's quota is met.  There is no sequence numbering on the link, so one
received reading is exactly one datapoint of whatever phase is active.

Progress is reported as an ordered stream of events (see
:mod:`portacount_tools.results`) ending with ``RunFinished``, which carries
the final immutable ``FitTestRun``.  Transport failures and stalled phases
end the run in ``ABORTED`` state with every captured datapoint preserved;
they are stored on the run instead of being raised.

Example::

    with SerialConnectionManager(port) as mgr:
        transport = Transport(mgr)
        transport.identify(context="connect")
        engine = FitTestEngine(transport)
        for event in engine.run(load_builtin("osha_fast_ffp")):
            print(event)

The engine never re-sends a command on its own; bounded retries live in the
transport.
"""

from __future__ import annotations

import logging
import math
import queue
import threading
import time
import types
from typing import Dict, Iterator, List, Optional, Type

from typeguard import typechecked

from . import ENGINE_ABORT_POLL_S, PHASE_TIMEOUT_GRACE_S
from .exceptions import PortacountToolsError, StageTimeoutError, TransportError
from .fit_factor import (
    READING_PERIOD_S,
    UNDEFINED,
    ambient_average,
    final_ff,
    final_ff_error,
    interim_ff,
    live_ff,
    overall_ff,
)
from .protocol import (
    Beep,
    ClearDisplay,
    Command,
    DisplayExercise,
    EnterExternalControl,
    Indicator,
    Response,
    SetIndicator,
    ValveAmbient,
    ValveSpecimen,
)
from .results import (
    DataPoint,
    DataPointCaptured,
    EngineState,
    ExerciseStarted,
    FinalFitFactor,
    FitFactorValue,
    FitTestRun,
    InterimFitFactor,
    LiveFitFactor,
    Phase,
    RunEvent,
    RunFinished,
    SampleDiscarded,
    StageStarted,
    StateChanged,
)
from .stage_config import AmbientStage, ExerciseStage, FitTestConfig, Stage
from .transport import Acknowledgement, Transport

logger = logging.getLogger("portacount_tools.engine")

# Beep durations, in tenths of a second
BEEP_TEST_START = 40
BEEP_EXERCISE_END = 10
BEEP_TEST_END = 50

# The exercise display has two digits and wraps after 19
DISPLAY_EXERCISE_MODULUS = 20


class _AbortRequested(Exception):
    pass


def _state_for(stage: Stage, phase: Phase) -> EngineState:
    if isinstance(stage, AmbientStage):
        return EngineState.AMBIENT_PURGE if phase is Phase.PURGE else EngineState.AMBIENT_SAMPLE
    return EngineState.SPECIMEN_PURGE if phase is Phase.PURGE else EngineState.SPECIMEN_SAMPLE


def _valve_for(stage: Stage) -> Type[Command]:
    return ValveAmbient if isinstance(stage, AmbientStage) else ValveSpecimen


class _RunRecorder:
    """Mutable run state, owned by the engine for the duration of one run."""

    def __init__(self, config: FitTestConfig) -> None:
        self.config = config
        self.state = EngineState.IDLE
        self.stage_index: Optional[int] = None
        self.phase: Optional[Phase] = None
        self.purges_consumed = 0
        self.samples_consumed = 0
        self.datapoints: List[DataPoint] = []
        self.ambient_averages: Dict[int, FitFactorValue] = {}
        self.final_fit_factors: Dict[int, FitFactorValue] = {}
        self.last_ambient_index: Optional[int] = None
        self.discarded_count = 0
        self.error: Optional[Exception] = None
        self._samples: Dict[int, List[float]] = {}

    def begin_stage(self, stage_index: int) -> None:
        self.stage_index = stage_index
        self.phase = None
        self.purges_consumed = 0
        self.samples_consumed = 0

    def consumed(self, phase: Phase) -> int:
        return self.purges_consumed if phase is Phase.PURGE else self.samples_consumed

    def record(self, value: float) -> DataPoint:
        datapoint = DataPoint(
            value=value,
            stage_index=self.stage_index,
            phase=self.phase,
            index=self.consumed(self.phase),
            sequence=len(self.datapoints),
        )
        self.datapoints.append(datapoint)
        if self.phase is Phase.PURGE:
            self.purges_consumed += 1
        else:
            self.samples_consumed += 1
            values = self._samples.setdefault(self.stage_index, [])
            values.append(value)
            if isinstance(self.config.stages[self.stage_index], AmbientStage):
                # Running mean; last_ambient_index only moves once the stage completes.
                self.ambient_averages[self.stage_index] = math.fsum(values) / len(values)
        return datapoint

    def samples(self, stage_index: int) -> List[float]:
        return list(self._samples.get(stage_index, ()))

    def snapshot(self) -> FitTestRun:
        return FitTestRun(
            config=self.config,
            state=self.state,
            stage_index=self.stage_index,
            phase=self.phase,
            purges_consumed=self.purges_consumed,
            samples_consumed=self.samples_consumed,
            datapoints=tuple(self.datapoints),
            ambient_averages=types.MappingProxyType(dict(self.ambient_averages)),
            final_fit_factors=types.MappingProxyType(dict(self.final_fit_factors)),
            discarded_count=self.discarded_count,
            error=self.error,
        )


@typechecked
class FitTestEngine:
    """Runs fit tests over an exclusively owned ``Transport``.

    One engine runs one test at a time.  ``request_abort()`` may be called
    from any thread; it takes effect before the next datapoint is
    classified.
    """

    def __init__(
        self,
        transport: Transport,
        phase_timeout_grace_s: float = PHASE_TIMEOUT_GRACE_S,
        abort_poll_s: float = ENGINE_ABORT_POLL_S,
    ) -> None:
        """Initialize the engine.

        Args:
            transport: Transport of an open, identified connection.
            phase_timeout_grace_s: Added to every phase deadline on top of
                ``count * sample interval``.
            abort_poll_s: Longest single wait before an abort request is
                noticed while the device is silent.
        """
        self.transport = transport
        self.phase_timeout_grace_s = phase_timeout_grace_s
        self.abort_poll_s = abort_poll_s
        self.last_run: Optional[FitTestRun] = None
        self._abort_event = threading.Event()
        self._lock = threading.Lock()
        self._running = False
        self._valve: Optional[Type[Command]] = None
        self._awaiting_valve: Optional[Type[Command]] = None

    # ---- Control ----

    def request_abort(self) -> None:
        """Ask the running test to stop at the next datapoint boundary."""
        logger.info("[ENGINE] Abort requested")
        self._abort_event.set()

    @property
    def abort_requested(self) -> bool:
        return self._abort_event.is_set()

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def run_in_background(self, config: FitTestConfig) -> BackgroundRun:
        """Start ``run(config)`` on a daemon thread and return its handle."""
        background = BackgroundRun(self, config)
        background.start()
        return background

    # ---- Run ----

    def run(self, config: FitTestConfig) -> Iterator[RunEvent]:
        """Run *config* and yield its events, ending with ``RunFinished``.

        Raises:
            PortacountToolsError: If this engine is already running a test.
        """
        with self._lock:
            if self._running:
                raise PortacountToolsError(
                    f"A fit test is already running on {self.transport.connection_manager.port}"
                )
            self._running = True

        self._abort_event.clear()
        self._valve = None
        self._awaiting_valve = None
        recorder = _RunRecorder(config)
        context = config.short_name or config.name or "fit-test"

        logger.info(
            "[ENGINE] [%s] Starting %s on %s (model %s)",
            context, config.describe(), self.transport.connection_manager.port,
            self.transport.model,
        )
        try:
            try:
                yield from self._execute(recorder, context)
            except (TransportError, StageTimeoutError) as exc:
                logger.error("[ENGINE] [%s] Run aborted: %s", context, exc)
                recorder.error = exc
                yield self._transition(recorder, EngineState.ABORTED, context)
            except _AbortRequested:
                logger.warning(
                    "[ENGINE] [%s] Run aborted on request after %d datapoints",
                    context, len(recorder.datapoints),
                )
                yield self._transition(recorder, EngineState.ABORTED, context)

            run = recorder.snapshot()
            self.last_run = run
            overall: Optional[FitFactorValue] = None
            if run.completed:
                ordered = [run.final_fit_factors[i] for i in sorted(run.final_fit_factors)]
                overall = overall_ff(ordered)
                logger.info("[ENGINE] [%s] Completed, overall fit factor %s", context, overall)
            yield RunFinished(run=run, overall_fit_factor=overall)
        finally:
            if not recorder.state.is_terminal:
                # The consumer stopped iterating before the run ended.
                recorder.state = EngineState.ABORTED
                self.last_run = recorder.snapshot()
            with self._lock:
                self._running = False

    def _execute(self, recorder: _RunRecorder, context: str) -> Iterator[RunEvent]:
        config = recorder.config
        last_index = len(config.stages) - 1

        self._start_test(context)
        yield ExerciseStarted(exercise_index=0, name=config.exercise_names[0])

        for stage_index, stage in enumerate(config.stages):
            self._check_abort()
            yield from self._run_stage(recorder, stage_index, stage, context)
            if isinstance(stage, AmbientStage):
                yield from self._finish_ambient(recorder, stage_index, context)
            elif stage_index != last_index:
                yield from self._finish_exercise(recorder, stage_index, context)

        self._send(ClearDisplay(), context)
        self._send(Beep(duration_deciseconds=BEEP_TEST_END), context)
        yield self._transition(recorder, EngineState.COMPLETED, context)

    # ---- Device commands ----

    def _send(self, command: Command, context: str) -> None:
        self.transport.send(command, context)

    def _switch_valve(self, valve: Type[Command], context: str) -> None:
        self._send(valve(), context)
        self._valve = valve
        self._awaiting_valve = valve

    def _start_test(self, context: str) -> None:
        self._send(EnterExternalControl(), context)
        self._switch_valve(ValveAmbient, context)
        self._send(ClearDisplay(), context)
        self._send(SetIndicator(Indicator(in_progress=True)), context)
        self._send(DisplayExercise(exercise=1), context)
        self._send(Beep(duration_deciseconds=BEEP_TEST_START), context)

    # ---- Stages ----

    def _transition(self, recorder: _RunRecorder, state: EngineState, context: str) -> StateChanged:
        recorder.state = state
        logger.info(
            "[ENGINE] [%s] → %s (stage %s)", context, state.value, recorder.stage_index,
        )
        return StateChanged(state=state, stage_index=recorder.stage_index)

    def _check_abort(self) -> None:
        if self._abort_event.is_set():
            raise _AbortRequested()

    def _run_stage(
        self,
        recorder: _RunRecorder,
        stage_index: int,
        stage: Stage,
        context: str,
    ) -> Iterator[RunEvent]:
        config = recorder.config
        recorder.begin_stage(stage_index)
        exercise_index = config.exercise_index(stage_index)
        name = stage.name if isinstance(stage, ExerciseStage) else "Ambient"
        yield StageStarted(stage_index=stage_index, exercise_index=exercise_index, name=name)

        valve = _valve_for(stage)
        if self._valve is not valve:
            self._switch_valve(valve, context)

        for phase, count in ((Phase.PURGE, stage.purge_count), (Phase.SAMPLE, stage.sample_count)):
            if count == 0:
                continue
            recorder.phase = phase
            yield self._transition(recorder, _state_for(stage, phase), context)
            yield from self._consume_phase(recorder, stage, phase, count, context)

    def _consume_phase(
        self,
        recorder: _RunRecorder,
        stage: Stage,
        phase: Phase,
        count: int,
        context: str,
    ) -> Iterator[RunEvent]:
        stage_index = recorder.stage_index
        timeout_s = count * self.transport.sample_interval_s + self.phase_timeout_grace_s
        deadline = time.monotonic() + timeout_s

        while recorder.consumed(phase) < count:
            self._check_abort()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                received = recorder.consumed(phase)
                msg = (
                    f"[{context}] Stage {stage_index} {phase.value} phase received "
                    f"{received} of {count} datapoints within {timeout_s:.1f}s. "
                    f"Check that the device is sampling and the tubes are connected."
                )
                raise StageTimeoutError(
                    msg, stage_index=stage_index, phase=phase.value,
                    expected=count, received=received,
                )

            event = self.transport.poll_event(min(remaining, self.abort_poll_s), context)
            if event is None:
                continue

            if isinstance(event, Acknowledgement):
                self._handle_acknowledgement(event, context)
                continue

            if self._awaiting_valve is not None:
                # Still sampling through the previous valve position.
                recorder.discarded_count += 1
                logger.debug(
                    "[ENGINE] [%s] Discarding %s received before %s was acknowledged",
                    context, event.raw, self._awaiting_valve.__name__,
                )
                yield SampleDiscarded(value=event.value, stage_index=stage_index)
                continue

            datapoint = recorder.record(event.value)
            yield DataPointCaptured(datapoint=datapoint)
            if phase is Phase.SAMPLE and isinstance(stage, ExerciseStage):
                yield from self._exercise_fit_factors(recorder, datapoint)

    def _handle_acknowledgement(self, event: Acknowledgement, context: str) -> None:
        message = event.message
        if (
            self._awaiting_valve is not None
            and isinstance(message, Response)
            and type(message.command) is self._awaiting_valve
        ):
            logger.debug("[ENGINE] [%s] Valve switch acknowledged (%s)", context, event.raw)
            self._awaiting_valve = None
        else:
            logger.debug("[ENGINE] [%s] Acknowledgement %s", context, event.raw)

    def _exercise_fit_factors(self, recorder: _RunRecorder, datapoint: DataPoint) -> Iterator[RunEvent]:
        stage_index = datapoint.stage_index
        exercise_index = recorder.config.exercise_index(stage_index)
        ambient_avg: FitFactorValue = UNDEFINED
        if recorder.last_ambient_index is not None:
            ambient_avg = recorder.ambient_averages[recorder.last_ambient_index]

        yield LiveFitFactor(
            exercise_index=exercise_index,
            stage_index=stage_index,
            sample_index=datapoint.index,
            value=live_ff(ambient_avg, datapoint),
        )
        yield InterimFitFactor(
            exercise_index=exercise_index,
            stage_index=stage_index,
            value=interim_ff(ambient_avg, recorder.samples(stage_index)),
        )

    def _finish_ambient(self, recorder: _RunRecorder, stage_index: int, context: str) -> Iterator[RunEvent]:
        average = ambient_average(recorder.snapshot(), stage_index)
        previous = recorder.last_ambient_index
        recorder.ambient_averages[stage_index] = average
        recorder.last_ambient_index = stage_index
        logger.info("[ENGINE] [%s] Ambient stage %d average %s", context, stage_index, average)
        if previous is None:
            return

        before = recorder.ambient_averages[previous]
        ambient_values = recorder.samples(previous) + recorder.samples(stage_index)
        for exercise_stage in range(previous + 1, stage_index):
            values = recorder.samples(exercise_stage)
            value = final_ff(before, average, values)
            error = final_ff_error(
                value, ambient_values, values, sample_period_s=READING_PERIOD_S,
            )
            recorder.final_fit_factors[exercise_stage] = value
            exercise_index = recorder.config.exercise_index(exercise_stage)
            logger.info(
                "[ENGINE] [%s] Exercise %d (%s): FF=%s ± %s", context, exercise_index + 1,
                recorder.config.stages[exercise_stage].name, value, error,
            )
            yield FinalFitFactor(
                exercise_index=exercise_index,
                stage_index=exercise_stage,
                value=value,
                error=error,
            )

    def _finish_exercise(self, recorder: _RunRecorder, stage_index: int, context: str) -> Iterator[RunEvent]:
        config = recorder.config
        # The valve moves before the display and beep commands.
        next_valve = _valve_for(config.stages[stage_index + 1])
        if self._valve is not next_valve:
            self._switch_valve(next_valve, context)
        completed = config.exercise_index(stage_index) + 1
        self._send(DisplayExercise(exercise=(completed + 1) % DISPLAY_EXERCISE_MODULUS), context)
        self._send(Beep(duration_deciseconds=BEEP_EXERCISE_END), context)
        if completed < config.exercise_count:
            yield ExerciseStarted(exercise_index=completed, name=config.exercise_names[completed])


# ---------------------------------------------------------------------------
# Background runner
# ---------------------------------------------------------------------------

_FINISHED = object()


class BackgroundRun:
    """A fit test running on a daemon thread.

    Iterating yields the same events as ``FitTestEngine.run`` in the same
    order.  An unexpected exception on the worker thread is re-raised in the
    iterating thread.
    """

    def __init__(self, engine: FitTestEngine, config: FitTestConfig) -> None:
        self.engine = engine
        self.config = config
        self.result: Optional[FitTestRun] = None
        self._events: queue.Queue = queue.Queue()
        self._thread = threading.Thread(
            target=self._worker,
            name="FitTestEngine",
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()
        logger.debug("[ENGINE] Started background run of %s", self.config.describe())

    def _worker(self) -> None:
        try:
            for event in self.engine.run(self.config):
                if isinstance(event, RunFinished):
                    self.result = event.run
                self._events.put(event)
        except Exception as exc:
            logger.exception("[ENGINE] Background run failed")
            self._events.put(exc)
        finally:
            self._events.put(_FINISHED)

    def __iter__(self) -> Iterator[RunEvent]:
        while True:
            item = self._events.get()
            if item is _FINISHED:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    def abort(self) -> None:
        self.engine.request_abort()

    def join(self, timeout: Optional[float] = None) -> Optional[FitTestRun]:
        """Wait for the worker thread and return the final run, if any."""
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("[ENGINE] Background run still active after %.1fs", timeout or 0.0)
        return self.result

    @property
    def is_alive(self) -> bool:
        return self._thread.is_alive()
