"""
Command-line interface test suite (commands that need no device).

Run with full visibility:
    pytest tests/test_cli.py -v -s
"""

from __future__ import annotations

import sys
from typing import List

import pytest

_MISSING: List[str] = []

try:
    import tqdm  # noqa: F401
except ImportError:
    _MISSING.append("tqdm")

try:
    import serial  # noqa: F401
except ImportError:
    _MISSING.append("pyserial")

if _MISSING:
    print(
        f"  Required libraries missing: {', '.join(_MISSING)}",
        file=sys.stderr,
    )
    pytest.skip(
        f"Required libraries missing: {', '.join(_MISSING)}",
        allow_module_level=True,
    )

from portacount_tools import __version__
from portacount_tools.cli import build_parser, load_config, main


def _report(label, detail=""):
    # type: (str, str) -> None
    if detail:
        print(f"  [{label}] {detail}")
    else:
        print(f"  [{label}]")


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Parser
# ═══════════════════════════════════════════════════════════════════════════

class TestParser:
    """Argument parsing."""

    def test_subcommand_required(self):
        # type: () -> None
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_serial_defaults(self):
        # type: () -> None
        args = build_parser().parse_args(["run", "osha", "--serial-port", "COM3"])
        assert args.serial_port == "COM3"
        assert args.baud_rate == 1200
        assert args.quiet is False

    def test_version(self, capsys):
        # type: (pytest.CaptureFixture) -> None
        with pytest.raises(SystemExit):
            main(["--version"])
        assert __version__ in capsys.readouterr().out


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Offline Commands
# ═══════════════════════════════════════════════════════════════════════════

class TestOfflineCommands:
    """configs and validate work without a device."""

    def test_configs(self, capsys):
        # type: (pytest.CaptureFixture) -> None
        assert main(["configs", "--exercises"]) == 0
        out = capsys.readouterr().out
        _report("OUTPUT", out.splitlines()[0])
        assert "osha_fast_ffp" in out
        assert "Head Up-and-Down" in out

    def test_validate_builtin_with_warning(self, capsys):
        # type: (pytest.CaptureFixture) -> None
        assert main(["validate", "osha"]) == 0
        out = capsys.readouterr().out
        assert out.startswith("OK: ")
        assert "ambient_gap_exceeded" in out

    def test_validate_dump(self, capsys):
        # type: (pytest.CaptureFixture) -> None
        assert main(["validate", "osha_fast_ffp", "--dump"]) == 0
        out = capsys.readouterr().out
        assert "TEST,OSHA Fast FFP (Modified Filtering Facepiece protocol),osha_fast_ffp" in out
        assert "EXERCISE,11,30,Bending Over" in out

    def test_validate_file_reports_every_error(self, tmp_path, capsys):
        # type: (object, pytest.CaptureFixture) -> None
        path = tmp_path / "broken.csv"
        path.write_text("TEST,Broken,broken\nEXERCISE,11,40,x\nAMBIENT,4,5\nAMBIENT,4,5\n")
        assert main(["validate", str(path)]) == 1
        err = capsys.readouterr().err
        _report("STDERR", err.replace("\n", " | "))
        assert "[first_stage_not_ambient]" in err
        assert "[adjacent_ambient]" in err

    def test_validate_parse_error(self, tmp_path, capsys):
        # type: (object, pytest.CaptureFixture) -> None
        path = tmp_path / "bad.csv"
        path.write_text("TEST,Bad,bad\nWAIT,5\n")
        assert main(["validate", str(path)]) == 1
        assert "Line 2" in capsys.readouterr().err

    def test_validate_missing_file(self, tmp_path, capsys):
        # type: (object, pytest.CaptureFixture) -> None
        assert main(["validate", str(tmp_path / "missing.csv")]) == 1
        assert "Error:" in capsys.readouterr().err

    def test_load_config_from_file(self, tmp_path):
        # type: (object) -> None
        path = tmp_path / "mine.csv"
        path.write_text("TEST,Mine,mine\nAMBIENT,4,5\nEXERCISE,11,40,Talking\nAMBIENT,4,5\n")
        config = load_config(str(path))
        assert config.short_name == "mine"
        assert load_config("crash_2_5").short_name == "crash_2_5"
