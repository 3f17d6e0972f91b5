"""PortaCount 8020 external-control wire protocol.

Commands are short ASCII records terminated by a carriage return.  The device
answers most commands by mirroring them, sends one concentration sample per
second while in external control, and answers the settings request with a
burst of ``S...`` lines.  See the *PortaCount Plus Model 8020 Technical
Addendum* for the documented grammar; deviations observed on real devices are
not handled here but in :mod:`portacount_tools.quirks`.

``parse_message`` is the single entry point for incoming lines and never
raises anything other than ``MalformedMessageError``.
"""

from __future__ import annotations

import dataclasses
import math
import re
from typing import Optional, Tuple, Union

from .exceptions import MalformedMessageError

_UINT_RE = re.compile(r"[0-9]+")
_SAMPLE_RE = re.compile(r"[0-9]+\.?[0-9]*(?:[eE][+-]?[0-9]+)?")
_DECIMAL_RE = re.compile(r"(?:[0-9]+\.?[0-9]*|\.[0-9]+)")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class Indicator:
    """Front-panel indicator lamps, in wire order."""
    in_progress: bool = False
    fit_factor: bool = False
    service: bool = False
    low_particle: bool = False
    low_battery: bool = False
    fail: bool = False
    passed: bool = False

    def bits(self) -> str:
        flags = (
            self.in_progress, self.fit_factor, self.service, self.low_particle,
            self.low_battery, self.fail, self.passed,
        )
        return "".join("1" if flag else "0" for flag in flags)


class Command:
    """Base class for everything the host can send."""

    def to_wire(self) -> str:
        raise NotImplementedError

    def bounded_field(self) -> Optional[Tuple[str, float]]:
        """Return ``(field_name, value)`` when the command carries a value the
        device only accepts within a model-specific range."""
        return None

    def describe(self) -> str:
        return type(self).__name__


@dataclasses.dataclass(frozen=True)
class EnterExternalControl(Command):
    def to_wire(self) -> str:
        return "J"


@dataclasses.dataclass(frozen=True)
class ExitExternalControl(Command):
    def to_wire(self) -> str:
        return "G"


@dataclasses.dataclass(frozen=True)
class Beep(Command):
    """Beep for ``duration_deciseconds`` tenths of a second."""
    duration_deciseconds: int

    def to_wire(self) -> str:
        return "B{:02d}".format(self.duration_deciseconds)

    def bounded_field(self) -> Optional[Tuple[str, float]]:
        return ("beep_duration", self.duration_deciseconds)


@dataclasses.dataclass(frozen=True)
class ValveAmbient(Command):
    """Sample through the ambient tube (valve ON)."""

    def to_wire(self) -> str:
        return "VN"


@dataclasses.dataclass(frozen=True)
class ValveSpecimen(Command):
    """Sample through the specimen tube (valve OFF)."""

    def to_wire(self) -> str:
        return "VF"


@dataclasses.dataclass(frozen=True)
class DisplayExercise(Command):
    exercise: int

    def to_wire(self) -> str:
        return "N{:02d}".format(self.exercise)

    def bounded_field(self) -> Optional[Tuple[str, float]]:
        return ("display_exercise", self.exercise)


@dataclasses.dataclass(frozen=True)
class DisplayConcentration(Command):
    value: float

    def to_wire(self) -> str:
        # Nine characters either way: two decimals below 100, integers above.
        if self.value < 100.0:
            return "D{:09.2f}".format(self.value)
        return "D{:09d}".format(int(math.floor(self.value + 0.5)))

    def bounded_field(self) -> Optional[Tuple[str, float]]:
        return ("display_concentration", self.value)


@dataclasses.dataclass(frozen=True)
class SetIndicator(Command):
    indicator: Indicator = Indicator()

    def to_wire(self) -> str:
        return "I0" + self.indicator.bits()


@dataclasses.dataclass(frozen=True)
class ClearDisplay(Command):
    def to_wire(self) -> str:
        return "K"


@dataclasses.dataclass(frozen=True)
class RequestSettings(Command):
    def to_wire(self) -> str:
        return "S"


# ---------------------------------------------------------------------------
# Settings (answers to RequestSettings)
# ---------------------------------------------------------------------------
#
# These describe tests run directly on the device and are orthogonal to the
# stage configurations used here.  Values are not range-checked.


@dataclasses.dataclass(frozen=True)
class AmbientPurgeTime:
    seconds: int


@dataclasses.dataclass(frozen=True)
class AmbientSampleTime:
    seconds: int


@dataclasses.dataclass(frozen=True)
class MaskSamplePurgeTime:
    seconds: int


@dataclasses.dataclass(frozen=True)
class MaskSampleTime:
    exercise: int
    seconds: int


@dataclasses.dataclass(frozen=True)
class FitFactorPassLevel:
    exercise: int
    fit_factor: int


@dataclasses.dataclass(frozen=True)
class SerialNumber:
    # Documented as five characters, real devices send more (e.g. 8024XXXX).
    value: str


@dataclasses.dataclass(frozen=True)
class RunTimeSinceService:
    decaminutes: int


@dataclasses.dataclass(frozen=True)
class DateLastServiced:
    month: int
    year: int  # modulo 100


@dataclasses.dataclass(frozen=True)
class OpaqueSetting:
    """A settings line whose meaning is unknown, kept verbatim."""
    raw: str


SettingMessage = Union[
    AmbientPurgeTime, AmbientSampleTime, MaskSamplePurgeTime, MaskSampleTime,
    FitFactorPassLevel, SerialNumber, RunTimeSinceService, DateLastServiced,
    OpaqueSetting,
]


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class Response:
    """The device acknowledged (usually by mirroring) a command."""
    command: Command


@dataclasses.dataclass(frozen=True)
class ErrorResponse:
    """An ``E...`` line; ``code`` is everything after the ``E``."""
    code: str


@dataclasses.dataclass(frozen=True)
class Sample:
    """One particle concentration reading."""
    value: float


@dataclasses.dataclass(frozen=True)
class Setting:
    setting: SettingMessage


Message = Union[Response, ErrorResponse, Sample, Setting]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _malformed(raw: str, reason: str) -> MalformedMessageError:
    return MalformedMessageError(
        "Unable to parse device message {!r}: {}".format(raw, reason),
        raw=raw,
        reason=reason,
    )


def _parse_uint(text: str) -> Optional[int]:
    text = text.strip()
    if _UINT_RE.fullmatch(text) is None:
        return None
    return int(text)


def _split_two_digit_prefix(text: str) -> Optional[Tuple[int, int]]:
    """``"0100010"`` → ``(1, 10)``: used by the STM and SP settings, which
    pack an exercise number in front of their value."""
    text = text.strip()
    if len(text) <= 2:
        return None
    head = _parse_uint(text[:2])
    tail = _parse_uint(text[2:])
    if head is None or tail is None:
        return None
    return head, tail


def _parse_command(message: str) -> Command:
    if message == "VN":
        return ValveAmbient()
    if message == "VO":
        return ValveSpecimen()
    # The command to enter external control ("J") is answered with "OK".
    if message == "OK":
        return EnterExternalControl()
    if message == "G":
        return ExitExternalControl()
    if message == "K":
        return ClearDisplay()
    if message.startswith("B"):
        duration = _parse_uint(message[1:])
        if duration is None:
            raise _malformed(message, "unable to parse beep duration")
        return Beep(duration_deciseconds=duration)
    if message.startswith("N"):
        exercise = _parse_uint(message[1:])
        if exercise is None:
            raise _malformed(message, "unable to parse exercise number")
        return DisplayExercise(exercise=exercise)
    if message.startswith("D"):
        body = message[1:]
        if _DECIMAL_RE.fullmatch(body) is None:
            raise _malformed(message, "unable to parse display-concentration command")
        return DisplayConcentration(value=float(body))
    if message.startswith("I"):
        if len(message) != 9:
            raise _malformed(message, "unable to parse indicator with unexpected length")
        flags = [c == "1" for c in message[2:]]
        return SetIndicator(Indicator(*flags))
    raise _malformed(message, "unknown or unsupported command")


def _parse_setting(message: str) -> SettingMessage:
    # Documented as nine characters with padding in the middle; none of that
    # matters once the prefix is stripped.
    if message.startswith("STPA"):
        seconds = _parse_uint(message[4:])
        if seconds is None:
            raise _malformed(message, "unable to parse ambient purge time")
        return AmbientPurgeTime(seconds=seconds)
    if message.startswith("STPM"):
        seconds = _parse_uint(message[4:])
        if seconds is None:
            raise _malformed(message, "unable to parse mask sample purge time")
        return MaskSamplePurgeTime(seconds=seconds)
    if message.startswith("STA"):
        seconds = _parse_uint(message[3:])
        if seconds is None:
            raise _malformed(message, "unable to parse ambient sample time")
        return AmbientSampleTime(seconds=seconds)
    if message.startswith("STM"):
        pair = _split_two_digit_prefix(message[3:])
        if pair is None:
            raise _malformed(message, "unable to parse mask sample time")
        return MaskSampleTime(exercise=pair[0], seconds=pair[1])
    if message.startswith("SP"):
        pair = _split_two_digit_prefix(message[2:])
        if pair is None:
            raise _malformed(message, "unable to parse fit factor pass level")
        return FitFactorPassLevel(exercise=pair[0], fit_factor=pair[1])
    if message.startswith("SS"):
        return SerialNumber(value=message[2:].strip())
    if message.startswith("SR"):
        decaminutes = _parse_uint(message[2:])
        if decaminutes is None:
            raise _malformed(message, "unable to parse run time since last service")
        return RunTimeSinceService(decaminutes=decaminutes)
    if message.startswith("SD"):
        packed = _parse_uint(message[2:])
        if packed is None or packed > 9999 or packed // 100 > 12:
            raise _malformed(message, "unable to parse date last serviced")
        return DateLastServiced(month=packed // 100, year=packed % 100)
    return OpaqueSetting(raw=message)


def parse_message(message: str) -> Message:
    """Parse one line received from the device (terminators already removed).

    Raises:
        MalformedMessageError: If the line matches no known grammar.  This
            does not indicate a device problem, only that the line was not
            understood.
    """
    if not message:
        raise _malformed(message, "received empty message")

    # Samples are by far the most common message, check them first.
    if message[0].isascii() and message[0].isdigit():
        if _SAMPLE_RE.fullmatch(message) is None:
            raise _malformed(message, "unable to parse sample")
        return Sample(value=float(message))
    if message.startswith("E"):
        return ErrorResponse(code=message[1:])
    if message.startswith("S"):
        return Setting(_parse_setting(message))
    return Response(_parse_command(message))
