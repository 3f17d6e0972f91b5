"""
PortaCount Tools - fit-test client for TSI PortaCount 8020-family particle counters

This package drives a PortaCount over its serial "external control" interface
and turns the stream of particle concentrations into respirator fit factors.
It includes:

- **Serial transport** with strict command/response turn-taking, retries and
  per-model quirk normalisation
- **Stage configuration** validation with complete error reporting, plus a
  CSV-like loader and built-in OSHA / CRASH protocols
- **Execution engine** that runs ambient and exercise stages and emits live,
  interim and final fit factors as an ordered event stream
- **Fit factor calculator** made of pure functions over run snapshots

All device deviations (response literals, field limits, timing) live in one
quirk table keyed by device model.
"""

import logging
import os

logging.getLogger("portacount_tools").addHandler(logging.NullHandler())

__version__ = "0.1.0"

# Default serial device path.
# On Windows this is a COM port (COM3, COM4, …), on Linux /dev/ttyUSB* or
# /dev/ttyS*.  Override via the PORTACOUNT_PORT environment variable.
DEFAULT_PORTACOUNT_PORT = os.environ.get("PORTACOUNT_PORT", "/dev/ttyUSB0")

# Serial line settings.  Baud is configurable on the device itself, 1200 is
# the factory default.
SERIAL_BAUD_RATE = 1200
SERIAL_BYTESIZE = 8       # 8 data bits
SERIAL_PARITY = "N"       # No parity
SERIAL_STOPBITS = 1       # 1 stop bit
SERIAL_RTSCTS = True      # hardware flow control
SERIAL_READ_TIMEOUT = 0  # seconds, non-blocking; timing is managed by the poll loop
SERIAL_WRITE_TIMEOUT = 10  # seconds, blocking with an upper bound
SERIAL_POLL_INTERVAL_S = 0.01  # poll loop sleep granularity
SERIAL_ENCODING = "ascii"
SERIAL_COMMAND_TERMINATOR = "\r"

# Command/response settings
SERIAL_COMMAND_RETRIES = 2  # re-sends after the first attempt times out
SETTINGS_QUIET_PERIOD_S = 2.0  # settings dump is considered complete after this much silence

# Stage configuration bounds
STAGE_PURGE_COUNT_MAX = 255
STAGE_SAMPLE_COUNT_MIN = 1
STAGE_SAMPLE_COUNT_MAX = 65535
AMBIENT_GAP_WARNING_S = 300.0  # five minutes between ambient stages

# Engine settings
PHASE_TIMEOUT_GRACE_S = 5.0  # added to every phase deadline
ENGINE_ABORT_POLL_S = 0.25  # longest wait before an abort request is looked at
