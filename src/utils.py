"""
Small helpers shared across the operator.
"""

import random
import re
import secrets
from typing import Dict, Optional, Union

# Characters allowed in Kubernetes-style object names
VALID_OBJECT_CHARS = "0123456789abcdefghijklmnopqrstuvwxyz"

DURATION_PATTERN = re.compile(r"(\d+)(h|m|s)")
DURATION_UNITS = {"h": 3600, "m": 60, "s": 1}


def random_object_safe_string(n: int, rng: Optional[random.Random] = None) -> str:
    """
    Return a random string that is safe to use as an object name.

    Args:
        n: Length of the string.
        rng: Random source. Defaults to the OS secure source; tests may pass
            a seeded ``random.Random`` for determinism.

    Returns:
        A string of ``n`` lowercase alphanumeric characters.
    """
    if n < 0:
        raise ValueError("length must not be negative")
    source = rng if rng is not None else secrets.SystemRandom()
    return "".join(source.choice(VALID_OBJECT_CHARS) for _ in range(n))


def merge_maps(
    base: Dict[str, bytes], overrides: Dict[str, bytes]
) -> Dict[str, bytes]:
    """Return a new map with ``overrides`` applied on top of ``base``."""
    merged = dict(base)
    merged.update(overrides)
    return merged


def parse_duration(value: Union[int, float, str, None]) -> Optional[int]:
    """
    Parse a refresh interval into seconds.

    Accepts plain numbers (seconds) or duration strings such as
    ``"1h"``, ``"15m"``, ``"30s"`` and ``"1h30m"``.

    Returns:
        Number of seconds, or None if value is None.

    Raises:
        ValueError: If the value cannot be parsed or is negative.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration cannot be negative: {value}")
        return int(value)

    text = value.strip()
    if text.isdigit():
        return int(text)

    pos = 0
    total = 0
    for match in DURATION_PATTERN.finditer(text):
        if match.start() != pos:
            raise ValueError(f"Invalid duration: {value!r}")
        total += int(match.group(1)) * DURATION_UNITS[match.group(2)]
        pos = match.end()

    if pos == 0 or pos != len(text):
        raise ValueError(f"Invalid duration: {value!r}")
    return total
