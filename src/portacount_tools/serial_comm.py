"""Serial link to the PortaCount: port lifecycle and CR/LF line framing.

Provides ``SerialConnectionManager`` (open/configure/close a pyserial port as
a context manager) and ``SerialLineReader`` (write whole records, poll for
complete lines with a deadline).  Protocol meaning is layered on top by
:mod:`portacount_tools.transport`.

Cross-platform: works on both Windows (COMx) and Linux (/dev/ttyUSB*,
/dev/ttyS*).  Any pyserial URL (``loop://``, ``socket://host:port``,
``rfc2217://…``) is accepted as the port.

Default line settings: 1200 8N1 with RTS/CTS flow control.
"""

from __future__ import annotations

import logging
import platform
import time
from typing import Any, List, Optional

import serial
import serial.tools.list_ports
from typeguard import typechecked

from . import (
    SERIAL_BAUD_RATE,
    SERIAL_BYTESIZE,
    SERIAL_PARITY,
    SERIAL_STOPBITS,
    SERIAL_RTSCTS,
    SERIAL_READ_TIMEOUT,
    SERIAL_WRITE_TIMEOUT,
    SERIAL_POLL_INTERVAL_S,
)
from .exceptions import SerialCommunicationError
from .types import SerialFactory

logger = logging.getLogger("portacount_tools.serial_comm")

_IS_WINDOWS = platform.system() == "Windows"

_POLL_INTERVAL_S = SERIAL_POLL_INTERVAL_S

_LINE_TERMINATORS = (b"\r", b"\n")

# Map string parity values to pyserial constants
_PARITY_MAP = {
    "N": serial.PARITY_NONE,
    "E": serial.PARITY_EVEN,
    "O": serial.PARITY_ODD,
    "M": serial.PARITY_MARK,
    "S": serial.PARITY_SPACE,
}

# Map integer stopbits to pyserial constants
_STOPBITS_MAP = {
    1: serial.STOPBITS_ONE,
    2: serial.STOPBITS_TWO,
}

# Map integer bytesize to pyserial constants
_BYTESIZE_MAP = {
    5: serial.FIVEBITS,
    6: serial.SIXBITS,
    7: serial.SEVENBITS,
    8: serial.EIGHTBITS,
}


def _write_all(
    ser: Any,
    data: bytes,
    port_name: str,
    context: str = "",
) -> int:
    """Write *all* bytes to the serial port and flush the OS transmit buffer.

    Does **not** catch exceptions — lets ``serial.SerialException`` and
    ``OSError`` propagate to the caller's exception handlers.

    Raises:
        SerialCommunicationError: If a short write is detected.
    """
    n = ser.write(data)
    if n != len(data):
        raise SerialCommunicationError(
            f"[{context}] Short write on {port_name}: "
            f"wrote {n}/{len(data)} bytes. "
            f"This usually means write_timeout is 0 (non-blocking) "
            f"and the kernel buffer is full."
        )
    ser.flush()
    logger.debug(
        "[SERIAL-WRITE-ALL] [%s] Wrote %d bytes to %s",
        context, n, port_name,
    )
    return n


def _split_line(buffer: bytearray) -> Optional[bytes]:
    """Pop the first complete line off *buffer*, terminators stripped.

    Runs of CR/LF count as one terminator so CR+LF devices don't produce
    empty lines.  Returns ``None`` if no terminator has arrived yet.
    """
    positions = [buffer.find(t) for t in _LINE_TERMINATORS]
    positions = [p for p in positions if p >= 0]
    if not positions:
        return None
    end = min(positions)
    line = bytes(buffer[:end])
    rest = end
    while rest < len(buffer) and buffer[rest:rest + 1] in _LINE_TERMINATORS:
        rest += 1
    del buffer[:rest]
    return line


class SerialConnectionManager:
    """Manages a serial port connection with automatic resource cleanup.

    Example::

        with SerialConnectionManager("/dev/ttyUSB0") as mgr:
            transport = Transport(mgr)
            transport.identify(context="connect")
    """

    def __init__(
        self,
        port: str,
        baud_rate: int = SERIAL_BAUD_RATE,
        bytesize: int = SERIAL_BYTESIZE,
        parity: str = SERIAL_PARITY,
        stopbits: int = SERIAL_STOPBITS,
        read_timeout: float = SERIAL_READ_TIMEOUT,
        write_timeout: Optional[float] = SERIAL_WRITE_TIMEOUT,
        xonxoff: bool = False,
        rtscts: bool = SERIAL_RTSCTS,
        poll_interval_s: float = SERIAL_POLL_INTERVAL_S,
        serial_factory: Optional[SerialFactory] = None,
    ) -> None:
        """Initialize serial connection manager.

        Args:
            port: Serial port path or pyserial URL — e.g. ``/dev/ttyUSB0``
                  (Linux), ``COM3`` (Windows) or ``socket://host:4001``.
            baud_rate: Baud rate (default: 1200, the device default).
            bytesize: Number of data bits (5, 6, 7, or 8; default: 8).
            parity: ``"N"``, ``"E"``, ``"O"``, ``"M"`` or ``"S"``.  Default: ``"N"``.
            stopbits: Number of stop bits (1 or 2; default: 1).
            read_timeout: Per-read driver timeout; 0 (non-blocking) because
                          timing is managed by the poll loop.
            write_timeout: Write timeout in seconds.  Default: 10.
            xonxoff: Enable software flow control (XON/XOFF).
            rtscts: Enable hardware (RTS/CTS) flow control.  Default: ``True``.
            poll_interval_s: Poll loop sleep granularity in seconds.
            serial_factory: Callable building the port object; receives the
                            port as first argument and pyserial keyword
                            settings.  Default: ``serial.serial_for_url``.

        Raises:
            SerialCommunicationError: If any parameter value is invalid.
        """
        self.port = port
        self.baud_rate = baud_rate
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.xonxoff = xonxoff
        self.rtscts = rtscts
        self.poll_interval_s = poll_interval_s
        self.serial_factory = serial_factory if serial_factory is not None else serial.serial_for_url
        self._serial: Optional[Any] = None

        if bytesize not in _BYTESIZE_MAP:
            valid = ", ".join(str(k) for k in sorted(_BYTESIZE_MAP))
            raise SerialCommunicationError(
                f"Invalid bytesize {bytesize!r} for port {port}. "
                f"Must be one of: {valid}. "
                f"The PortaCount uses 8 data bits (bytesize=8)."
            )
        self.bytesize = _BYTESIZE_MAP[bytesize]

        parity_upper = parity.upper()
        if parity_upper not in _PARITY_MAP:
            valid = ", ".join(f'"{k}"' for k in sorted(_PARITY_MAP))
            raise SerialCommunicationError(
                f"Invalid parity {parity!r} for port {port}. "
                f"Must be one of: {valid}. "
                f'The PortaCount uses no parity (parity="N").'
            )
        self.parity = _PARITY_MAP[parity_upper]

        if stopbits not in _STOPBITS_MAP:
            valid = ", ".join(str(k) for k in sorted(_STOPBITS_MAP))
            raise SerialCommunicationError(
                f"Invalid stopbits {stopbits!r} for port {port}. "
                f"Must be one of: {valid}. "
                f"The PortaCount uses 1 stop bit (stopbits=1)."
            )
        self.stopbits = _STOPBITS_MAP[stopbits]

        if baud_rate <= 0:
            raise SerialCommunicationError(
                f"Invalid baud rate {baud_rate!r} for port {port}. "
                f"Baud rate must be a positive integer. "
                f"The PortaCount supports 300, 600, 1200 (default), 2400, 4800 and 9600."
            )

        if write_timeout is not None and write_timeout < 0:
            raise SerialCommunicationError(
                f"Invalid write_timeout {write_timeout!r} for port {port}. "
                f"Must be None (blocking), 0 (non-blocking), or a positive number."
            )

        logger.info(
            "[SERIAL-INIT] Configured %s — %d %d%s%s (write_timeout=%s, "
            "flow=%s, poll=%.3fs)",
            port, baud_rate, bytesize, parity, stopbits,
            f"{write_timeout:.2f}s" if write_timeout is not None else "None (blocking)",
            "+".join(f for f, on in (("XON/XOFF", xonxoff), ("RTS/CTS", rtscts)) if on) or "none",
            poll_interval_s,
        )

    def open(self, context: str) -> None:
        """Open the serial port.

        Args:
            context: Description of the purpose, embedded into error messages.

        Raises:
            SerialCommunicationError: If the port cannot be opened.  The error
                message includes the OS-level reason, the port path, and
                platform-specific troubleshooting hints.
        """
        if self._serial is not None and self._serial.is_open:
            logger.debug("[SERIAL-OPEN] [%s] Port %s is already open — skipping", context, self.port)
            return

        logger.info(
            "[SERIAL-OPEN] [%s] Opening %s at %d baud ...", context, self.port, self.baud_rate,
        )

        try:
            self._serial = self.serial_factory(
                self.port,
                baudrate=self.baud_rate,
                bytesize=self.bytesize,
                parity=self.parity,
                stopbits=self.stopbits,
                timeout=self.read_timeout,
                write_timeout=self.write_timeout,
                xonxoff=self.xonxoff,
                rtscts=self.rtscts,
            )
            logger.info("[SERIAL-OPEN] [%s] Successfully opened %s", context, self.port)

        except serial.SerialException as exc:
            hint = self._platform_hint()
            msg = (
                f"[{context}] Failed to open serial port {self.port} at {self.baud_rate} baud: {exc}. "
                f"{hint}"
            )
            logger.error("[SERIAL-OPEN] FAILED — %s", msg)
            raise SerialCommunicationError(msg) from exc
        except OSError as exc:
            hint = self._platform_hint()
            msg = (
                f"[{context}] OS error opening serial port {self.port}: {exc}. "
                f"{hint}"
            )
            logger.error("[SERIAL-OPEN] OS ERROR — %s", msg)
            raise SerialCommunicationError(msg) from exc

    def is_open(self) -> bool:
        """Check whether the serial port is currently open."""
        return self._serial is not None and self._serial.is_open

    def close(self) -> None:
        """Close the serial port if open."""
        was_open = self.is_open()

        if self._serial is not None:
            try:
                self._serial.close()
            except (serial.SerialException, OSError) as exc:
                logger.warning(
                    "[SERIAL-CLOSE] Error closing port %s: %s", self.port, exc,
                )
            finally:
                self._serial = None

        if was_open:
            logger.info("[SERIAL-CLOSE] Closed %s", self.port)
        else:
            logger.debug(
                "[SERIAL-CLOSE] close() called on already-closed port %s", self.port,
            )

    def get_serial(self) -> Any:
        """Return the underlying port object.

        Raises:
            SerialCommunicationError: If the port is not open.
        """
        if self._serial is None or not self._serial.is_open:
            raise SerialCommunicationError(
                f"Cannot access serial port {self.port}: port is not open. "
                f"Call open() or use the context manager first."
            )
        return self._serial

    # ---- Context manager ----

    def __enter__(self) -> SerialConnectionManager:
        """Context manager entry — opens the serial port."""
        self.open(context=f"Opening {self.port}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        """Context manager exit — ensures the port is closed."""
        self.close()

    # ---- Helpers ----

    @staticmethod
    def list_available_ports() -> List[str]:
        """Return ``"<device> — <description>"`` for every serial port the
        operating system reports."""
        descriptions = []
        for p in serial.tools.list_ports.comports():
            descriptions.append(f"{p.device} — {p.description}")
            logger.debug("[SERIAL-LIST] Found port: %s (%s)", p.device, p.description)
        return descriptions

    def _platform_hint(self) -> str:
        """Return a platform-specific troubleshooting hint."""
        available = ", ".join(p.device for p in serial.tools.list_ports.comports())
        if _IS_WINDOWS:
            return (
                "On Windows: verify the COM port number in Device Manager "
                "(Ports → COM & LPT) and that no other application has the "
                f"port open. Available ports: {available}."
            )
        return (
            "On Linux: verify the device path exists (ls /dev/ttyUSB* /dev/ttyS*), "
            "that your user is in the 'dialout' group, and that no other process "
            f"has the port open. Available ports: {available}."
        )


@typechecked
class SerialLineReader:
    """Line-oriented access to an open ``SerialConnectionManager``.

    Bytes are accumulated across polls; ``read_line`` hands out one complete
    CR/LF-terminated record at a time and keeps any partial line buffered for
    the next call.
    """

    def __init__(self, connection_manager: SerialConnectionManager) -> None:
        self.connection_manager = connection_manager
        self._buffer = bytearray()

    def _assert_open(self, operation: str, context: str) -> Any:
        port_name = self.connection_manager.port
        if not self.connection_manager.is_open():
            msg = (
                f"[{context}] Cannot {operation} on serial port {port_name}: port is not "
                f"open. Did you forget to call open() or use a context manager?"
            )
            logger.error("[SERIAL-LINE] %s", msg)
            raise SerialCommunicationError(msg)
        return self.connection_manager.get_serial()

    def flush(self, context: str) -> int:
        """Discard buffered and pending input.  Returns the number of bytes dropped."""
        port_name = self.connection_manager.port
        ser = self._assert_open("flush", context)
        discarded = len(self._buffer)
        self._buffer.clear()
        try:
            waiting = ser.in_waiting
            if waiting > 0:
                discarded += len(ser.read(waiting))
            ser.reset_input_buffer()
        except (serial.SerialException, OSError) as exc:
            msg = (
                f"[{context}] Error flushing serial port {port_name}: {exc}. "
                f"The port may have been disconnected or the USB cable unplugged."
            )
            logger.error("[SERIAL-FLUSH] ERROR — %s", msg)
            raise SerialCommunicationError(msg) from exc
        if discarded:
            logger.info(
                "[SERIAL-FLUSH] [%s] Discarded %d stale bytes from %s",
                context, discarded, port_name,
            )
        return discarded

    def write_record(self, data: bytes, context: str) -> int:
        """Write one complete record (terminator included by the caller)."""
        port_name = self.connection_manager.port
        ser = self._assert_open("write", context)
        try:
            return _write_all(ser, data, port_name, context=context)
        except (serial.SerialException, OSError) as exc:
            msg = (
                f"[{context}] Failed to write to serial port {port_name}: {exc}. "
                f"Attempted to send {len(data)} bytes: {data!r}. "
                f"The device may have been disconnected."
            )
            logger.error("[SERIAL-WRITE] ERROR — %s", msg)
            raise SerialCommunicationError(msg) from exc

    def read_line(self, timeout_s: float, context: str) -> Optional[bytes]:
        """Return the next complete line, or ``None`` if none arrives within
        *timeout_s* seconds.  Blank lines are skipped."""
        port_name = self.connection_manager.port
        ser = self._assert_open("read", context)
        poll_interval_s = self.connection_manager.poll_interval_s
        deadline = time.monotonic() + max(timeout_s, 0.0)

        while True:
            line = _split_line(self._buffer)
            while line is not None and not line:
                line = _split_line(self._buffer)
            if line:
                logger.debug("[SERIAL-LINE] [%s] %s → %r", context, port_name, line)
                return line

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None

            try:
                waiting = ser.in_waiting
                chunk = ser.read(waiting) if waiting > 0 else b""
            except (serial.SerialException, OSError) as exc:
                msg = (
                    f"[{context}] Serial read error on {port_name}: {exc}. "
                    f"The device may have been disconnected during the read."
                )
                logger.error("[SERIAL-LINE] READ ERROR — %s", msg)
                raise SerialCommunicationError(msg) from exc

            if chunk:
                self._buffer.extend(chunk)
                continue

            # Nothing waiting (or in_waiting lied)
            time.sleep(min(poll_interval_s, remaining))
