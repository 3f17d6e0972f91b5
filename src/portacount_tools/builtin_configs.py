"""Built-in fit test protocols, in the textual configuration format.

Counts are datapoints, i.e. seconds at the device's one-sample-per-second
rate.
"""

from __future__ import annotations

import functools
from typing import Dict, Tuple

from .config_csv import parse_config_csv
from .stage_config import FitTestConfig

OSHA = """\
# 29 CFR 1910.134 Appendix A quantitative fit test, one ambient bracket.
TEST,OSHA (29 CFR 1910.134),osha
AMBIENT,4,5
EXERCISE,11,49,Normal Breathing
EXERCISE,11,49,Deep Breathing
EXERCISE,11,49,Head Side-to-Side
EXERCISE,11,49,Head Up-and-Down
EXERCISE,11,49,Talking
EXERCISE,11,4,Grimace
EXERCISE,11,49,Bending Over
EXERCISE,11,49,Normal Breathing
AMBIENT,4,5
"""

OSHA_LEGACY = """\
# Same exercises as OSHA, with an ambient sample between every exercise.
TEST,OSHA Legacy (ambient between exercises),osha_legacy
AMBIENT,4,5
EXERCISE,11,49,Normal Breathing
AMBIENT,4,5
EXERCISE,11,49,Deep Breathing
AMBIENT,4,5
EXERCISE,11,49,Head Side-to-Side
AMBIENT,4,5
EXERCISE,11,49,Head Up-and-Down
AMBIENT,4,5
EXERCISE,11,49,Talking
AMBIENT,4,5
EXERCISE,11,4,Grimace
AMBIENT,4,5
EXERCISE,11,49,Bending Over
AMBIENT,4,5
EXERCISE,11,49,Normal Breathing
AMBIENT,4,5
"""

OSHA_FAST_FFP = """\
TEST,OSHA Fast FFP (Modified Filtering Facepiece protocol),osha_fast_ffp
AMBIENT,4,5
EXERCISE,11,30,Bending Over
EXERCISE,0,30,Talking
EXERCISE,0,30,Head Side-to-Side
EXERCISE,0,30,Head Up-and-Down
AMBIENT,4,5
"""

OSHA_FAST_ELASTO = """\
TEST,OSHA Fast Elastomeric (Modified Elastomeric protocol),osha_fast_elasto
AMBIENT,4,5
EXERCISE,11,20,Bending Over
EXERCISE,0,20,Jogging
EXERCISE,0,20,Head Side-to-Side
EXERCISE,0,20,Head Up-and-Down
AMBIENT,4,5
"""

CRASH_2_5 = """\
# Short screening protocol, 2.5 minutes of specimen sampling.
TEST,CRASH 2.5,crash_2_5
AMBIENT,4,5
EXERCISE,11,19,Normal Breathing
EXERCISE,0,30,Heavy Breathing
EXERCISE,0,30,Head Side-to-Side
EXERCISE,0,30,Head Up-and-Down
EXERCISE,0,30,Talking
EXERCISE,0,11,Bending Over
AMBIENT,4,5
"""

BUILTIN_CONFIGS: Tuple[str, ...] = (
    OSHA,
    OSHA_LEGACY,
    OSHA_FAST_FFP,
    OSHA_FAST_ELASTO,
    CRASH_2_5,
)


@functools.lru_cache(maxsize=None)
def _parsed_builtins() -> Tuple[FitTestConfig, ...]:
    # Parsed and validated once per process; configs are immutable.
    return tuple(parse_config_csv(text) for text in BUILTIN_CONFIGS)


def builtin_configs() -> Dict[str, FitTestConfig]:
    """All built-in protocols keyed by short name, in definition order."""
    return {config.short_name: config for config in _parsed_builtins()}


def load_builtin(short_name: str) -> FitTestConfig:
    """Return the built-in protocol called *short_name*.

    Raises:
        KeyError: If no built-in protocol has that short name.
    """
    configs = builtin_configs()
    if short_name not in configs:
        raise KeyError(
            f"No built-in fit test named {short_name!r}. "
            f"Available: {', '.join(configs)}"
        )
    return configs[short_name]
