"""Command/response transport with quirk normalisation.

The PortaCount link is half-duplex in spirit but not in practice: while the
host waits for a command to be acknowledged, the device keeps sending one
concentration sample per second.  ``Transport`` keeps strict turn-taking on
the command side (exactly one outstanding command, a minimum delay between
commands, bounded re-sends on timeout) and hands everything it receives to
the caller as an ordered stream of events:

- ``Acknowledgement`` — a response or settings line, already normalised
  through the device model's alias table;
- ``UnsolicitedData`` — a concentration sample.

Lines received while waiting for an acknowledgement are queued, so
``poll_event`` / ``next_event`` return them in exact arrival order followed by
the acknowledgement itself.

Example::

    with SerialConnectionManager("/dev/ttyUSB0") as mgr:
        transport = Transport(mgr)
        settings = transport.identify(context="connect")
        transport.send(Beep(duration_deciseconds=10), context="hello")
"""

from __future__ import annotations

import collections
import dataclasses
import logging
import time
from typing import Deque, List, Optional, Sequence, Tuple, Union

from typeguard import typechecked

from . import (
    SERIAL_COMMAND_RETRIES,
    SERIAL_COMMAND_TERMINATOR,
    SERIAL_ENCODING,
    SETTINGS_QUIET_PERIOD_S,
)
from .exceptions import DeviceError, TransportTimeoutError
from .protocol import (
    AmbientPurgeTime,
    AmbientSampleTime,
    Command,
    DateLastServiced,
    ErrorResponse,
    ExitExternalControl,
    FitFactorPassLevel,
    MaskSamplePurgeTime,
    MaskSampleTime,
    OpaqueSetting,
    RequestSettings,
    Response,
    RunTimeSinceService,
    Sample,
    SerialNumber,
    Setting,
    SettingMessage,
    parse_message,
)
from .quirks import DEFAULT_QUIRK_TABLE, DeviceProfile, QuirkTable
from .serial_comm import SerialConnectionManager, SerialLineReader

logger = logging.getLogger("portacount_tools.transport")


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class Acknowledgement:
    """A command response or settings line.

    Attributes:
        message: The parsed, canonical message.
        raw: The line exactly as received (before alias normalisation).
    """
    message: Union[Response, Setting]
    raw: str


@dataclasses.dataclass(frozen=True)
class UnsolicitedData:
    """A concentration sample the device sent on its own schedule."""
    value: float
    raw: str


Event = Union[Acknowledgement, UnsolicitedData]


# ---------------------------------------------------------------------------
# Device settings
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class DeviceSettings:
    """The device's answer to the settings request.

    These settings describe tests run directly on the device; they are
    reported for diagnostics only.  ``opaque`` holds settings lines whose
    meaning is unknown (some variants send extra fields), verbatim and
    uninterpreted.
    """
    ambient_purge_s: Optional[int] = None
    ambient_sample_s: Optional[int] = None
    mask_purge_s: Optional[int] = None
    mask_sample_s: Tuple[Tuple[int, int], ...] = ()  # (exercise, seconds)
    pass_levels: Tuple[Tuple[int, int], ...] = ()  # (exercise, fit factor)
    serial_number: Optional[str] = None
    run_time_since_service_decaminutes: Optional[int] = None
    last_serviced: Optional[Tuple[int, int]] = None  # (month, year % 100)
    opaque: Tuple[str, ...] = ()

    @property
    def run_time_since_service_hours(self) -> Optional[float]:
        if self.run_time_since_service_decaminutes is None:
            return None
        return self.run_time_since_service_decaminutes / 6.0

    @classmethod
    def from_messages(cls, messages: Sequence[SettingMessage]) -> DeviceSettings:
        fields = {}
        mask_sample: List[Tuple[int, int]] = []
        pass_levels: List[Tuple[int, int]] = []
        opaque: List[str] = []
        for message in messages:
            if isinstance(message, AmbientPurgeTime):
                fields["ambient_purge_s"] = message.seconds
            elif isinstance(message, AmbientSampleTime):
                fields["ambient_sample_s"] = message.seconds
            elif isinstance(message, MaskSamplePurgeTime):
                fields["mask_purge_s"] = message.seconds
            elif isinstance(message, MaskSampleTime):
                mask_sample.append((message.exercise, message.seconds))
            elif isinstance(message, FitFactorPassLevel):
                pass_levels.append((message.exercise, message.fit_factor))
            elif isinstance(message, SerialNumber):
                fields["serial_number"] = message.value
            elif isinstance(message, RunTimeSinceService):
                fields["run_time_since_service_decaminutes"] = message.decaminutes
            elif isinstance(message, DateLastServiced):
                fields["last_serviced"] = (message.month, message.year)
            elif isinstance(message, OpaqueSetting):
                opaque.append(message.raw)
        return cls(
            mask_sample_s=tuple(mask_sample),
            pass_levels=tuple(pass_levels),
            opaque=tuple(opaque),
            **fields,
        )


def _acknowledges(command: Command, message: Union[Response, Setting]) -> bool:
    if isinstance(command, RequestSettings):
        return isinstance(message, Setting)
    return isinstance(message, Response) and type(message.command) is type(command)


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


@typechecked
class Transport:
    """Strict turn-taking command transport over an open serial connection.

    The transport is an exclusively owned resource: one caller, one
    outstanding command.  It never interprets samples; it only classifies
    and orders them.
    """

    def __init__(
        self,
        connection_manager: SerialConnectionManager,
        quirk_table: QuirkTable = DEFAULT_QUIRK_TABLE,
        model: Optional[str] = None,
        max_retries: int = SERIAL_COMMAND_RETRIES,
        settings_quiet_period_s: float = SETTINGS_QUIET_PERIOD_S,
    ) -> None:
        """Initialize the transport.

        Args:
            connection_manager: An **open** ``SerialConnectionManager``.
            quirk_table: Per-model quirks.  Default: the built-in table.
            model: Device model, if already known.  Otherwise the documented
                defaults apply until ``identify()`` is called.
            max_retries: Re-sends after a command's first attempt times out.
            settings_quiet_period_s: Silence after which the settings dump is
                considered complete.
        """
        self.connection_manager = connection_manager
        self.quirk_table = quirk_table
        self.max_retries = max_retries
        self.settings_quiet_period_s = settings_quiet_period_s
        self.device_settings: Optional[DeviceSettings] = None
        self._reader = SerialLineReader(connection_manager)
        self._profile = quirk_table.profile(model)
        self._pending: Deque[Event] = collections.deque()
        self._outstanding: Optional[Command] = None
        self._last_send: Optional[float] = None

    # ---- Model-dependent constants ----

    @property
    def profile(self) -> DeviceProfile:
        return self._profile

    @property
    def model(self) -> str:
        return self._profile.model

    @property
    def command_interval_s(self) -> float:
        return self.quirk_table.command_interval(self._profile)

    @property
    def response_timeout_s(self) -> float:
        return self.quirk_table.response_timeout(self._profile)

    @property
    def sample_interval_s(self) -> float:
        return self.quirk_table.sample_interval(self._profile)

    # ---- Receiving ----

    def normalize_line(self, raw: bytes) -> Event:
        """Classify one framed line from the device.

        This is the entry point fuzzers drive with arbitrary bytes; it
        either returns an event or raises a ``TransportError`` subclass.

        Raises:
            MalformedMessageError: If the line matches no known grammar.
            DeviceError: If the line signals a device-side fault.
        """
        text = raw.decode(SERIAL_ENCODING, errors="replace").strip()
        canonical = self._profile.normalize(text)
        if canonical != text:
            logger.debug(
                "[PC-QUIRK] %s sent %r, normalised to %r", self.model, text, canonical,
            )
        message = parse_message(canonical)
        if isinstance(message, Sample):
            return UnsolicitedData(value=message.value, raw=text)
        if isinstance(message, ErrorResponse):
            outstanding = self._outstanding.describe() if self._outstanding else "none"
            msg = (
                f"Device reported error {message.code!r} (line {text!r}, "
                f"outstanding command: {outstanding})."
            )
            logger.error("[PC-RECV] DEVICE ERROR — %s", msg)
            raise DeviceError(msg, code=message.code)
        return Acknowledgement(message=message, raw=text)

    def _receive(self, timeout_s: float, context: str) -> Optional[Event]:
        line = self._reader.read_line(timeout_s, context)
        if line is None:
            return None
        return self.normalize_line(line)

    def poll_event(self, timeout_s: float, context: str) -> Optional[Event]:
        """Return the next event, or ``None`` if nothing arrives within
        *timeout_s* seconds.  Queued events are returned first."""
        if self._pending:
            return self._pending.popleft()
        return self._receive(timeout_s, context)

    def next_event(self, timeout_s: float, context: str) -> Event:
        """Like ``poll_event`` but raises ``TransportTimeoutError`` on silence."""
        event = self.poll_event(timeout_s, context)
        if event is None:
            msg = (
                f"[{context}] No data from {self.connection_manager.port} within "
                f"{timeout_s:.2f}s. Is the device powered on and in external control?"
            )
            logger.warning("[PC-RECV] TIMEOUT — %s", msg)
            raise TransportTimeoutError(msg)
        return event

    # ---- Sending ----

    def _respect_command_interval(self) -> None:
        if self._last_send is None:
            return
        wait = self.command_interval_s - (time.monotonic() - self._last_send)
        if wait > 0:
            time.sleep(wait)

    def _await_acknowledgement(self, command: Command, context: str) -> Optional[Acknowledgement]:
        deadline = time.monotonic() + self.response_timeout_s
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            event = self._receive(remaining, context)
            if event is None:
                return None
            if isinstance(event, Acknowledgement) and _acknowledges(command, event.message):
                return event
            self._pending.append(event)

    def send(self, command: Command, context: str) -> Acknowledgement:
        """Send *command* and block until the device acknowledges it.

        The acknowledgement is returned and also queued behind any samples
        that arrived first, so the event stream stays in arrival order.

        Raises:
            CommandRejectedError: A bounded field exceeds the model limit;
                nothing was written.
            TransportTimeoutError: No acknowledgement after all re-sends.
            DeviceError: The device answered with an error line.
            MalformedMessageError: An unparseable line arrived.
            SerialCommunicationError: The port failed.
        """
        self._profile.check_command(command)
        wire = command.to_wire()
        record = (wire + SERIAL_COMMAND_TERMINATOR).encode(SERIAL_ENCODING)
        port_name = self.connection_manager.port
        attempts = 1 + self.max_retries

        try:
            for attempt in range(1, attempts + 1):
                self._respect_command_interval()
                logger.debug(
                    "[PC-SEND] [%s] %s → %r (attempt %d/%d)",
                    context, port_name, wire, attempt, attempts,
                )
                self._outstanding = command
                self._reader.write_record(record, context)
                self._last_send = time.monotonic()

                ack = self._await_acknowledgement(command, context)
                if ack is not None:
                    self._pending.append(ack)
                    return ack

                logger.warning(
                    "[PC-SEND] [%s] No acknowledgement for %r from %s within %.2fs "
                    "(attempt %d/%d)",
                    context, wire, port_name, self.response_timeout_s, attempt, attempts,
                )
        finally:
            self._outstanding = None

        msg = (
            f"[{context}] {command.describe()} ({wire!r}) was not acknowledged by "
            f"{port_name} after {attempts} attempts of {self.response_timeout_s:.2f}s each. "
            f"Check the cable, the baud rate ({self.connection_manager.baud_rate}) "
            f"and that the device is in external control."
        )
        logger.error("[PC-SEND] TIMEOUT — %s", msg)
        raise TransportTimeoutError(msg, command=command, attempts=attempts)

    # ---- Connection-level exchanges ----

    def identify(self, context: str) -> DeviceSettings:
        """Request the device settings and select the quirk profile.

        Settings lines are collected until the date-last-serviced line (the
        last one sent) or until the line goes quiet.  Samples received in
        between stay queued for the caller.  Bytes already waiting on the
        line when it is called are dropped first.
        """
        self._reader.flush(context)
        self.send(RequestSettings(), context)

        messages: List[SettingMessage] = []
        kept: List[Event] = []
        while self._pending:
            event = self._pending.popleft()
            if isinstance(event, Acknowledgement) and isinstance(event.message, Setting):
                messages.append(event.message.setting)
            else:
                kept.append(event)

        while not any(isinstance(m, DateLastServiced) for m in messages):
            event = self._receive(self.settings_quiet_period_s, context)
            if event is None:
                break
            if isinstance(event, Acknowledgement) and isinstance(event.message, Setting):
                messages.append(event.message.setting)
            else:
                kept.append(event)
        self._pending.extend(kept)

        settings = DeviceSettings.from_messages(messages)
        model = (
            self.quirk_table.model_for_serial(settings.serial_number)
            if settings.serial_number is not None
            else self.quirk_table.default_model
        )
        self._profile = self.quirk_table.profile(model)
        self.device_settings = settings

        logger.info(
            "[PC-IDENTIFY] [%s] %s: serial=%s model=%s (%d settings, %d opaque)",
            context, self.connection_manager.port, settings.serial_number,
            self.model, len(messages), len(settings.opaque),
        )
        return settings

    def release(self, context: str) -> None:
        """Leave external control."""
        self.send(ExitExternalControl(), context)
        logger.info("[PC-RELEASE] [%s] Released %s from external control",
                    context, self.connection_manager.port)
