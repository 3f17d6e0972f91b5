"""Custom exceptions for PortaCount transport, configuration and test runs."""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional, Tuple

if TYPE_CHECKING:
    from .protocol import Command
    from .stage_config import ValidationIssue


class PortacountToolsError(Exception):
    """Common base exception for all portacount_tools errors."""
    pass


class ConfigValidationError(PortacountToolsError):
    """A stage sequence violates one or more structural rules.

    Attributes:
        errors: Every violated rule, in stage order.  Validation never stops
            at the first problem so a configuration can be fixed in one pass.
    """

    def __init__(self, message: str, *, errors: List[ValidationIssue]) -> None:
        super().__init__(message)
        self.errors = errors


class ConfigParseError(PortacountToolsError):
    """Exception for unreadable textual stage configurations.

    Attributes:
        line_number: 1-based line of the offending row, or ``None`` when the
            problem is not tied to a single line (e.g. a missing header).
    """

    def __init__(self, message: str, *, line_number: Optional[int] = None) -> None:
        super().__init__(message)
        self.line_number = line_number


class TransportError(PortacountToolsError):
    """Base exception for everything that goes wrong on the device link."""
    pass


class SerialCommunicationError(TransportError):
    """Exception for serial port failures.

    Raised when the serial port cannot be opened, configured, read from,
    written to, or when any unexpected I/O failure occurs.
    """
    pass


class TransportTimeoutError(TransportError):
    """No answer arrived in time.

    When raised by ``Transport.send`` the command was re-sent the maximum
    number of times; ``.command`` and ``.attempts`` describe what was tried.
    When raised by ``Transport.next_event`` no command was outstanding and
    ``.command`` is ``None``.
    """

    def __init__(
        self,
        message: str,
        *,
        command: Optional[Command] = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.command = command
        self.attempts = attempts


class MalformedMessageError(TransportError):
    """A received line matches no known grammar.

    Attributes:
        raw: The offending line, after framing (terminators removed).
        reason: Short description of why parsing failed.
    """

    def __init__(self, message: str, *, raw: str, reason: str) -> None:
        super().__init__(message)
        self.raw = raw
        self.reason = reason


class DeviceError(TransportError):
    """The device explicitly signalled a fault (an ``E...`` line).

    Attributes:
        code: Everything after the leading ``E``, verbatim.
    """

    def __init__(self, message: str, *, code: str) -> None:
        super().__init__(message)
        self.code = code


class CommandRejectedError(TransportError):
    """A command was refused locally because a field exceeds the device bound.

    Nothing is written to the port when this is raised.

    Attributes:
        command: The rejected command.
        field: Name of the bounded field (e.g. ``"beep_duration"``).
        allowed: Inclusive ``(low, high)`` range accepted by the device model.
    """

    def __init__(
        self,
        message: str,
        *,
        command: Command,
        field: str,
        allowed: Tuple[float, float],
    ) -> None:
        super().__init__(message)
        self.command = command
        self.field = field
        self.allowed = allowed


class StageTimeoutError(PortacountToolsError):
    """A purge or sample phase did not receive its quota before its deadline.

    Attributes:
        stage_index: Index of the stalled stage in the configuration.
        phase: ``"purge"`` or ``"sample"``.
        expected: Configured datapoint count for the phase.
        received: Datapoints attributed to the phase before the deadline.
    """

    def __init__(
        self,
        message: str,
        *,
        stage_index: int,
        phase: str,
        expected: int,
        received: int,
    ) -> None:
        super().__init__(message)
        self.stage_index = stage_index
        self.phase = phase
        self.expected = expected
        self.received = received
