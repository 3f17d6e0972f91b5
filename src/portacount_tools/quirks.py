"""Per-model device quirks.

Every known deviation between the documented protocol and what a given
PortaCount model actually does lives in one table:

- **response aliases** — raw literal → canonical literal, applied to each
  received line before it is parsed;
- **field limits** — inclusive ranges for bounded command fields, checked
  before a command is transmitted;
- **timing multiplier** — scales the base inter-command delay, response
  timeout and per-sample period for slower devices.

The model is inferred once per connection from the serial number returned by
the settings request.  Unknown models get the documented defaults.
"""

from __future__ import annotations

import dataclasses
import logging
import types
from typing import Mapping, Optional, Tuple

from .exceptions import CommandRejectedError
from .protocol import Command
from .types import FieldRange

logger = logging.getLogger("portacount_tools.quirks")

DEFAULT_MODEL = "8020"


@dataclasses.dataclass(frozen=True)
class TimingConstants:
    """Base timing, before the per-model multiplier is applied.

    Attributes:
        min_command_interval_s: Minimum pause between two outgoing commands.
        response_timeout_s: How long to wait for an acknowledgement before
            re-sending a command.
        sample_interval_s: Nominal period between two samples, used to size
            phase deadlines.  The multiplier stretches the deadline only; every
            reading still stands for one second of flow (see
            ``fit_factor.READING_PERIOD_S``).
    """
    min_command_interval_s: float = 0.5
    response_timeout_s: float = 3.0
    sample_interval_s: float = 1.0


@dataclasses.dataclass(frozen=True)
class DeviceProfile:
    model: str
    response_aliases: Mapping[str, str]
    field_limits: Mapping[str, FieldRange]
    timing_multiplier: float = 1.0

    def normalize(self, line: str) -> str:
        """Map a raw response literal to its canonical form."""
        return self.response_aliases.get(line, line)

    def check_command(self, command: Command) -> None:
        """Raise ``CommandRejectedError`` if *command* exceeds a model limit."""
        bounded = command.bounded_field()
        if bounded is None:
            return
        field, value = bounded
        allowed = self.field_limits.get(field)
        if allowed is None:
            return
        low, high = allowed
        if not (low <= value <= high):
            msg = (
                f"{command.describe()} rejected for model {self.model}: "
                f"{field}={value!r} is outside the accepted range "
                f"{low!r}..{high!r}. The command was not sent."
            )
            logger.error("[QUIRKS] %s", msg)
            raise CommandRejectedError(msg, command=command, field=field, allowed=allowed)


@dataclasses.dataclass(frozen=True)
class QuirkTable:
    profiles: Mapping[str, DeviceProfile]
    serial_prefixes: Tuple[Tuple[str, str], ...]  # (serial number prefix, model)
    timing: TimingConstants = TimingConstants()
    default_model: str = DEFAULT_MODEL

    def profile(self, model: Optional[str]) -> DeviceProfile:
        if model is not None and model in self.profiles:
            return self.profiles[model]
        if model is not None:
            logger.warning(
                "[QUIRKS] Unknown device model %r — falling back to documented "
                "defaults (%s)", model, self.default_model,
            )
        return self.profiles[self.default_model]

    def model_for_serial(self, serial_number: str) -> str:
        for prefix, model in self.serial_prefixes:
            if serial_number.startswith(prefix):
                return model
        return self.default_model

    def command_interval(self, profile: DeviceProfile) -> float:
        return self.timing.min_command_interval_s * profile.timing_multiplier

    def response_timeout(self, profile: DeviceProfile) -> float:
        return self.timing.response_timeout_s * profile.timing_multiplier

    def sample_interval(self, profile: DeviceProfile) -> float:
        return self.timing.sample_interval_s * profile.timing_multiplier


def _frozen(mapping: dict) -> Mapping:
    return types.MappingProxyType(mapping)


# The documented acknowledgement of the specimen valve command is "VO"; the
# 8020A answers "VF".  Accepting "VF" can't be confused with anything else,
# so the documented profile accepts it as well.
_VALVE_SPECIMEN_ALIASES = {"VF": "VO"}

_DOCUMENTED_LIMITS = {
    "beep_duration": (1, 99),
    "display_exercise": (0, 19),
    "display_concentration": (0, 999_999_999),
}

DEFAULT_QUIRK_TABLE = QuirkTable(
    profiles=_frozen({
        "8020": DeviceProfile(
            model="8020",
            response_aliases=_frozen(dict(_VALVE_SPECIMEN_ALIASES)),
            field_limits=_frozen(dict(_DOCUMENTED_LIMITS)),
            timing_multiplier=1.0,
        ),
        "8020A": DeviceProfile(
            model="8020A",
            response_aliases=_frozen(dict(_VALVE_SPECIMEN_ALIASES)),
            # Beeps above 60 are answered with an error despite the
            # documented 99.
            field_limits=_frozen(dict(_DOCUMENTED_LIMITS, beep_duration=(1, 60))),
            # Swallows commands when driven at the documented pace.
            timing_multiplier=2.0,
        ),
    }),
    serial_prefixes=(("8024", "8020A"),),
)
