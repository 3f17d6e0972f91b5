"""Textual (CSV-like) fit test configurations.

The format is line based::

    # comment
    TEST,OSHA Fast FFP,osha_fast_ffp
    AMBIENT,4,5
    EXERCISE,11,30,Bending Over
    EXERCISE,0,30,Talking
    AMBIENT,4,5

- ``TEST,name,short_name`` is required exactly once (the last one wins);
- ``AMBIENT,purge_count,sample_count`` declares an ambient stage;
- ``EXERCISE,purge_count,sample_count,name`` declares an exercise stage, an
  empty name becomes ``<no name>``;
- blank lines and lines starting with ``#`` are ignored, additional columns
  are ignored, unknown row types are rejected.

This is deliberately not full RFC 4180: spaces around tokens are kept, a
quoted token must start right after a separator and end right before one,
and an unquoted ``#`` is an error.  Parsing only produces raw stages; the
result is handed to :func:`portacount_tools.stage_config.validate`.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from .exceptions import ConfigParseError
from .stage_config import (
    AmbientStage,
    ExerciseStage,
    FitTestConfig,
    Stage,
    validate,
)

logger = logging.getLogger("portacount_tools.config_csv")

NO_NAME = "<no name>"

_BAD_LEADING_QUOTATION = (
    "Quotation marks must occur immediately after a separator "
    "('foo,\"bar\"' is OK, 'foo, \"bar\"' and 'foo,b\"bar\"' are not)"
)
_BAD_TRAILING_QUOTATION = (
    "A separator must occur immediately after a closing quotation mark "
    "('\"foo\",...' is OK, '\"foo\" ,...' and '\"foo\"bar,' are not)"
)
_UNCLOSED_QUOTATION = "All quotations must be closed"
_UNQUOTED_HASH = (
    "Raw hash symbols (#) are not allowed inline, enclose the cell in quotes "
    "if necessary, e.g. \"#ok\" or \"also #ok\""
)


def tokenise_line(line: str, line_number: Optional[int] = None) -> List[str]:
    """Split one line into cells.

    A line starting with ``#`` is returned untouched as a single token.

    Raises:
        ConfigParseError: On quoting errors or an unquoted ``#``.
    """
    if line.startswith("#"):
        return [line]

    tokens = [""]
    in_quote = False
    i = 0
    while i < len(line):
        char = line[i]
        nxt = line[i + 1] if i + 1 < len(line) else None
        if char == ",":
            if in_quote:
                tokens[-1] += ","
            else:
                tokens.append("")
        elif char == '"':
            if not in_quote:
                if tokens[-1]:
                    raise ConfigParseError(_BAD_LEADING_QUOTATION, line_number=line_number)
                in_quote = True
            elif nxt == '"':
                tokens[-1] += '"'
                i += 1
            elif nxt is None or nxt == ",":
                in_quote = False
            else:
                raise ConfigParseError(_BAD_TRAILING_QUOTATION, line_number=line_number)
        elif char == "#":
            if not in_quote:
                raise ConfigParseError(_UNQUOTED_HASH, line_number=line_number)
            tokens[-1] += "#"
        else:
            tokens[-1] += char
        i += 1

    if in_quote:
        raise ConfigParseError(_UNCLOSED_QUOTATION, line_number=line_number)
    return tokens


def _parse_count(text: str, low: int, high: int, what: str, line_number: int) -> int:
    # Range checks beyond the type width belong to the validator.
    if not text.isdigit() or not text.isascii() or not (low <= int(text) <= high):
        raise ConfigParseError(
            f"Line {line_number}: {what} must be an integer between {low} and {high}, "
            f"got {text!r}",
            line_number=line_number,
        )
    return int(text)


def parse_stages(text: str) -> Tuple[List[Stage], Optional[Tuple[str, str]]]:
    """Parse *text* into raw stages and the ``(name, short_name)`` header.

    No structural validation happens here.
    """
    stages: List[Stage] = []
    header: Optional[Tuple[str, str]] = None

    for line_number, line in enumerate(text.splitlines(), start=1):
        data = line.strip()
        if not data or data.startswith("#"):
            continue

        cols = tokenise_line(data, line_number)
        kind = cols[0]
        if kind == "TEST":
            if len(cols) < 3:
                raise ConfigParseError(
                    f"Line {line_number}: test header (TEST line) must contain >= 3 fields",
                    line_number=line_number,
                )
            header = (cols[1], cols[2])
        elif kind == "AMBIENT":
            if len(cols) < 3:
                raise ConfigParseError(
                    f"Line {line_number}: ambient stage must contain >= 3 fields",
                    line_number=line_number,
                )
            stages.append(AmbientStage(
                purge_count=_parse_count(cols[1], 0, 255, "ambient purge count", line_number),
                sample_count=_parse_count(cols[2], 0, 65535, "ambient sample count", line_number),
            ))
        elif kind == "EXERCISE":
            if len(cols) < 4:
                raise ConfigParseError(
                    f"Line {line_number}: exercise stage must contain >= 4 fields",
                    line_number=line_number,
                )
            stages.append(ExerciseStage(
                purge_count=_parse_count(cols[1], 0, 255, "exercise purge count", line_number),
                sample_count=_parse_count(cols[2], 0, 65535, "exercise sample count", line_number),
                name=cols[3] or NO_NAME,
            ))
        else:
            # Skipping a row we don't understand could silently run a
            # different test than the user wrote.
            raise ConfigParseError(
                f"Line {line_number}: unsupported stage/command {kind!r}",
                line_number=line_number,
            )

    return stages, header


def parse_config_csv(text: str) -> FitTestConfig:
    """Parse and validate a textual fit test configuration.

    Raises:
        ConfigParseError: If the text cannot be read or lacks a TEST header.
        ConfigValidationError: If the stages violate the structural rules.
    """
    stages, header = parse_stages(text)
    if header is None:
        raise ConfigParseError("test header (TEST line) not found")
    name, short_name = header
    logger.debug("[CONFIG] Parsed %r with %d stages", short_name, len(stages))
    return validate(stages, name=name, short_name=short_name)


def _quote(token: str) -> str:
    if token == "" or any(c in token for c in ',"#') or token.startswith(" ") \
            or token.endswith(" "):
        return '"' + token.replace('"', '""') + '"'
    return token


def config_to_csv(config: FitTestConfig) -> str:
    """Serialise *config* in the format read by ``parse_config_csv``."""
    lines = [",".join(("TEST", _quote(config.name), _quote(config.short_name)))]
    for stage in config.stages:
        if isinstance(stage, AmbientStage):
            lines.append(f"AMBIENT,{stage.purge_count},{stage.sample_count}")
        else:
            lines.append(
                f"EXERCISE,{stage.purge_count},{stage.sample_count},{_quote(stage.name)}"
            )
    return "\n".join(lines) + "\n"
