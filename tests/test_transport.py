"""
Transport and quirk-table test suite.

Drives ``Transport`` against the scripted in-memory PortaCount from
``portacount_sim`` (injected through ``serial_factory``), so no hardware or
virtual serial port is needed and nothing depends on wall-clock timing.

Run with full visibility:
    pytest tests/test_transport.py -v -s
"""

from __future__ import annotations

import dataclasses
import platform
import sys
from typing import List

import pytest

# ---------------------------------------------------------------------------
# Dependency gate — report clearly if anything is missing
# ---------------------------------------------------------------------------
_MISSING: List[str] = []

try:
    import serial  # noqa: F401
except ImportError:
    _MISSING.append("pyserial")

try:
    from typeguard import typechecked  # noqa: F401
except ImportError:
    _MISSING.append("typeguard")

# typeguard 4.x raises TypeCheckError (extends Exception, not TypeError).
try:
    from typeguard import TypeCheckError
    _TYPEGUARD_ERRORS = (TypeError, TypeCheckError)
except ImportError:
    _TYPEGUARD_ERRORS = (TypeError,)

if _MISSING:
    print(
        "\n"
        "=" * 72 + "\n"
        "  MISSING REQUIRED LIBRARIES\n"
        "=" * 72 + "\n"
        f"  The following packages are not installed: {', '.join(_MISSING)}\n"
        f"  Install them with:  pip install {' '.join(_MISSING)}\n"
        "=" * 72 + "\n",
        file=sys.stderr,
    )
    pytest.skip(
        f"Required libraries missing: {', '.join(_MISSING)}",
        allow_module_level=True,
    )

from portacount_tools.exceptions import (
    CommandRejectedError,
    DeviceError,
    MalformedMessageError,
    PortacountToolsError,
    TransportError,
    TransportTimeoutError,
)
from portacount_tools.protocol import (
    Beep,
    ClearDisplay,
    DisplayConcentration,
    DisplayExercise,
    EnterExternalControl,
    OpaqueSetting,
    Response,
    ValveAmbient,
    ValveSpecimen,
)
from portacount_tools.quirks import DEFAULT_QUIRK_TABLE, QuirkTable, TimingConstants
from portacount_tools.serial_comm import SerialConnectionManager
from portacount_tools.transport import Acknowledgement, Transport, UnsolicitedData

from portacount_sim import SETTINGS_8020A, FakePortaCount

# ---------------------------------------------------------------------------
# Report environment
# ---------------------------------------------------------------------------
print(
    "\n"
    "+" * 72 + "\n"
    f"  Platform : {platform.system()} {platform.release()}\n"
    f"  Python   : {sys.version.split()[0]}\n"
    "+" * 72
)

FAST_QUIRK_TABLE = dataclasses.replace(
    DEFAULT_QUIRK_TABLE,
    timing=TimingConstants(
        min_command_interval_s=0.0,
        response_timeout_s=0.05,
        sample_interval_s=0.001,
    ),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _report(label, detail=""):
    # type: (str, str) -> None
    if detail:
        print(f"  [{label}] {detail}")
    else:
        print(f"  [{label}]")


def _open(device, model=None):
    # type: (FakePortaCount, object) -> Transport
    mgr = SerialConnectionManager("sim://portacount", serial_factory=device)
    mgr.open(context="test open simulator")
    return Transport(
        mgr,
        quirk_table=FAST_QUIRK_TABLE,
        model=model,
        settings_quiet_period_s=0.05,
    )


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Quirk Table
# ═══════════════════════════════════════════════════════════════════════════

class TestQuirkTable:
    """Model lookup, fallbacks and timing scaling."""

    def test_model_from_serial_prefix(self):
        # type: () -> None
        _report("TEST", "8024… serial numbers identify an 8020A")
        assert DEFAULT_QUIRK_TABLE.model_for_serial("80245678") == "8020A"
        assert DEFAULT_QUIRK_TABLE.model_for_serial("8020123") == "8020"
        assert DEFAULT_QUIRK_TABLE.model_for_serial("") == "8020"

    def test_unknown_model_falls_back_to_documented_defaults(self):
        # type: () -> None
        _report("TEST", "Unknown models do not fail closed")
        profile = DEFAULT_QUIRK_TABLE.profile("8030")
        assert profile.model == "8020"
        assert DEFAULT_QUIRK_TABLE.profile(None).model == "8020"

    def test_timing_multiplier(self):
        # type: () -> None
        _report("TEST", "The 8020A doubles every timing constant")
        base = DEFAULT_QUIRK_TABLE.profile("8020")
        slow = DEFAULT_QUIRK_TABLE.profile("8020A")
        assert DEFAULT_QUIRK_TABLE.command_interval(slow) == 2 * DEFAULT_QUIRK_TABLE.command_interval(base)
        assert DEFAULT_QUIRK_TABLE.response_timeout(slow) == 2 * DEFAULT_QUIRK_TABLE.response_timeout(base)
        assert DEFAULT_QUIRK_TABLE.sample_interval(slow) == 2 * DEFAULT_QUIRK_TABLE.sample_interval(base)

    def test_field_limits(self):
        # type: () -> None
        _report("TEST", "Beep ceiling is 99 documented, 60 on the 8020A")
        documented = DEFAULT_QUIRK_TABLE.profile("8020")
        slow = DEFAULT_QUIRK_TABLE.profile("8020A")
        documented.check_command(Beep(duration_deciseconds=99))
        slow.check_command(Beep(duration_deciseconds=60))
        with pytest.raises(CommandRejectedError) as exc_info:
            slow.check_command(Beep(duration_deciseconds=61))
        assert exc_info.value.field == "beep_duration"
        assert exc_info.value.allowed == (1, 60)
        with pytest.raises(CommandRejectedError):
            documented.check_command(DisplayExercise(exercise=20))
        with pytest.raises(CommandRejectedError):
            documented.check_command(DisplayConcentration(value=1e9))
        _report("PASS", "Limits enforced per model")

    def test_table_is_read_only(self):
        # type: () -> None
        _report("TEST", "The shared table cannot be mutated")
        with pytest.raises(TypeError):
            DEFAULT_QUIRK_TABLE.profiles["9999"] = DEFAULT_QUIRK_TABLE.profile(None)  # type: ignore[index]
        with pytest.raises(dataclasses.FrozenInstanceError):
            DEFAULT_QUIRK_TABLE.default_model = "8020A"  # type: ignore[misc]


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Normalisation
# ═══════════════════════════════════════════════════════════════════════════

class TestNormalizeLine:
    """normalize_line classifies raw bytes into events."""

    def test_specimen_valve_alias(self):
        # type: () -> None
        _report("TEST", "'VF' is normalised to the canonical specimen acknowledgement")
        transport = _open(FakePortaCount(), model="8020A")
        event = transport.normalize_line(b"VF")
        assert isinstance(event, Acknowledgement)
        assert event.message == Response(ValveSpecimen())
        assert event.raw == "VF"
        assert transport.normalize_line(b"VO").message == Response(ValveSpecimen())
        _report("PASS", "Both literals reach the caller as the same acknowledgement")

    def test_sample_line(self):
        # type: () -> None
        transport = _open(FakePortaCount())
        event = transport.normalize_line(b" 1234 \r")
        assert event == UnsolicitedData(value=1234.0, raw="1234")

    def test_error_line_raises_device_error(self):
        # type: () -> None
        _report("TEST", "E-lines surface as DeviceError with the code")
        transport = _open(FakePortaCount())
        with pytest.raises(DeviceError) as exc_info:
            transport.normalize_line(b"E07")
        assert exc_info.value.code == "07"

    def test_garbage_raises_malformed(self):
        # type: () -> None
        transport = _open(FakePortaCount())
        for raw in (b"\xff\xfe", b"?!", b"B1x"):
            with pytest.raises(MalformedMessageError):
                transport.normalize_line(raw)


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Sending Commands
# ═══════════════════════════════════════════════════════════════════════════

class TestSend:
    """Turn-taking, local rejection and retries."""

    def test_acknowledged_command(self):
        # type: () -> None
        device = FakePortaCount()
        transport = _open(device)
        ack = transport.send(EnterExternalControl(), context="test enter")
        assert ack.message == Response(EnterExternalControl())
        assert ack.raw == "OK"
        assert bytes(device.written) == b"J\r"

    def test_beep_above_ceiling_sends_nothing(self):
        # type: () -> None
        _report("TEST", "B61 on an 8020A is rejected before any byte is written")
        device = FakePortaCount()
        transport = _open(device, model="8020A")
        with pytest.raises(CommandRejectedError):
            transport.send(Beep(duration_deciseconds=61), context="test beep 61")
        assert bytes(device.written) == b""
        _report("STEP", "Nothing written")

        transport.send(Beep(duration_deciseconds=60), context="test beep 60")
        assert bytes(device.written) == b"B60\r"
        _report("PASS", "Ceiling itself is accepted")

    def test_specimen_valve_acknowledged_with_quirk_literal(self):
        # type: () -> None
        device = FakePortaCount(valve_specimen_reply="VF")
        transport = _open(device, model="8020A")
        ack = transport.send(ValveSpecimen(), context="test valve")
        assert ack.message == Response(ValveSpecimen())

    def test_retry_resends_identical_record(self):
        # type: () -> None
        _report("TEST", "An unanswered command is re-sent verbatim")
        device = FakePortaCount(ignore_commands={"K": 1})
        transport = _open(device)
        transport.send(ClearDisplay(), context="test retry")
        assert device.commands == ["K", "K"]
        assert bytes(device.written) == b"K\rK\r"
        _report("PASS", "Second attempt acknowledged")

    def test_retries_exhausted(self):
        # type: () -> None
        _report("TEST", "TransportTimeoutError after 1 + max_retries attempts")
        device = FakePortaCount(ignore_commands={"K": 10})
        transport = _open(device)
        with pytest.raises(TransportTimeoutError) as exc_info:
            transport.send(ClearDisplay(), context="test retry exhausted")
        assert exc_info.value.attempts == 3
        assert exc_info.value.command == ClearDisplay()
        assert device.commands == ["K", "K", "K"]
        assert "test retry exhausted" in str(exc_info.value)

    def test_device_error_response(self):
        # type: () -> None
        device = FakePortaCount(responses={"B10": ["E03"]})
        transport = _open(device)
        with pytest.raises(DeviceError) as exc_info:
            transport.send(Beep(duration_deciseconds=10), context="test device error")
        assert exc_info.value.code == "03"

    def test_samples_queued_in_arrival_order(self):
        # type: () -> None
        _report("TEST", "Samples received while waiting stay ahead of the acknowledgement")
        device = FakePortaCount(samples_before_ack={"VN": 2}, pre_ack_value=42.0)
        transport = _open(device)
        ack = transport.send(ValveAmbient(), context="test ordering")

        first = transport.next_event(0.1, context="test ordering")
        second = transport.next_event(0.1, context="test ordering")
        third = transport.next_event(0.1, context="test ordering")
        assert first == UnsolicitedData(value=42.0, raw="42.00")
        assert second == UnsolicitedData(value=42.0, raw="42.00")
        assert third is ack
        _report("PASS", "sample, sample, acknowledgement")

    def test_next_event_timeout(self):
        # type: () -> None
        transport = _open(FakePortaCount())
        assert transport.poll_event(0.02, context="test poll") is None
        with pytest.raises(TransportTimeoutError) as exc_info:
            transport.next_event(0.02, context="test silence")
        assert exc_info.value.command is None

    def test_unsolicited_samples(self):
        # type: () -> None
        transport = _open(FakePortaCount(samples=[1.5, 2500.0]))
        assert transport.next_event(0.1, context="t").value == 1.5
        assert transport.next_event(0.1, context="t").value == 2500.0


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Identification
# ═══════════════════════════════════════════════════════════════════════════

class TestIdentify:
    """The settings exchange selects the quirk profile."""

    def test_identify_8020(self):
        # type: () -> None
        transport = _open(FakePortaCount())
        settings = transport.identify(context="test identify")
        assert transport.model == "8020"
        assert settings.serial_number == "8020123"
        assert settings.ambient_purge_s == 4
        assert settings.ambient_sample_s == 5
        assert settings.mask_purge_s == 11
        assert settings.mask_sample_s == ((1, 49),)
        assert settings.pass_levels == ((1, 100),)
        assert settings.run_time_since_service_hours == 60.0
        assert settings.last_serviced == (7, 23)
        assert settings.opaque == ()
        assert transport.device_settings is settings

    def test_identify_8020a(self):
        # type: () -> None
        _report("TEST", "An 8024… serial number selects the 8020A profile")
        transport = _open(FakePortaCount(settings=SETTINGS_8020A))
        transport.identify(context="test identify 8020A")
        assert transport.model == "8020A"
        assert transport.profile.field_limits["beep_duration"] == (1, 60)

    def test_unknown_settings_carried_opaque(self):
        # type: () -> None
        _report("TEST", "Unknown settings lines are kept verbatim, not interpreted")
        settings_lines = ("STPA004", "SX0042", "SQABC", "SS8020123", "SD0723")
        transport = _open(FakePortaCount(settings=settings_lines))
        settings = transport.identify(context="test opaque")
        assert settings.opaque == ("SX0042", "SQABC")
        assert settings.serial_number == "8020123"

    def test_settings_without_service_date_end_on_quiet_period(self):
        # type: () -> None
        transport = _open(FakePortaCount(settings=("STPA004", "SS80241111")))
        settings = transport.identify(context="test quiet")
        assert settings.last_serviced is None
        assert transport.model == "8020A"

    def test_stale_input_dropped_before_settings_request(self):
        # type: () -> None
        _report("TEST", "Lines left over from before identify() never reach the caller")
        device = FakePortaCount()
        transport = _open(device)
        device.inject("1200")
        device.inject("garbage")
        settings = transport.identify(context="test stale")
        assert settings.serial_number == "8020123"
        assert device.commands == ["S"]
        assert transport.poll_event(0.02, context="test stale") is None
        _report("PASS", "Stale sample and noise discarded")

    def test_release(self):
        # type: () -> None
        device = FakePortaCount()
        transport = _open(device)
        transport.release(context="test release")
        assert device.commands == ["G"]


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Exception Hierarchy and Type Enforcement
# ═══════════════════════════════════════════════════════════════════════════

class TestTransportErrors:
    """Every transport failure shares one base."""

    def test_hierarchy(self):
        # type: () -> None
        for exc in (CommandRejectedError, DeviceError, MalformedMessageError, TransportTimeoutError):
            assert issubclass(exc, TransportError)
            assert issubclass(exc, PortacountToolsError)

    def test_transport_rejects_wrong_type(self):
        # type: () -> None
        with pytest.raises(_TYPEGUARD_ERRORS):
            Transport("not_a_manager")  # type: ignore[arg-type]

    def test_opaque_setting_type(self):
        # type: () -> None
        assert OpaqueSetting(raw="SX1").raw == "SX1"
