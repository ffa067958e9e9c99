"""Calibration of raw impact scores.

A static breakpoint table ``{"x": [...], "y": [...]}`` (fitted offline with
isotonic regression, see ``scripts/fit_calibration.py``) maps raw scores on
the -5..+5 impact scale to calibrated scores.

Lookup is piece-wise constant, never interpolated:

- below the first breakpoint: ``y[0]``
- above the last breakpoint: ``y[-1]``
- exactly on a breakpoint: that breakpoint's ``y``
- between two breakpoints: the ``y`` of the lower one

The table is validated on load and cached for the process lifetime. A missing
or malformed table raises ``CalibrationConfigError`` so the service fails at
boot instead of serving silently wrong scores.
"""

import json
import math
from bisect import bisect_left
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple, Union

import structlog

logger = structlog.get_logger("calibration")

DEFAULT_CALIBRATION_PATH = "calibration/calibration.json"


class CalibrationConfigError(Exception):
    """Raised when the calibration table is missing or malformed."""
    pass


@dataclass(frozen=True)
class CalibrationMapping:
    x: Tuple[float, ...]
    y: Tuple[float, ...]
    source: Optional[str] = None


def _as_numbers(values, name: str) -> Tuple[float, ...]:
    if not isinstance(values, list) or not values:
        raise CalibrationConfigError(f"Calibration '{name}' must be a non-empty list")
    numbers = []
    for value in values:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise CalibrationConfigError(f"Calibration '{name}' holds a non-numeric value: {value!r}")
        numbers.append(float(value))
    return tuple(numbers)


def load_calibration(path: Union[str, Path] = DEFAULT_CALIBRATION_PATH) -> CalibrationMapping:
    """Read and validate a breakpoint table."""
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise CalibrationConfigError(f"Calibration table not found: {path}") from e
    except (OSError, ValueError) as e:
        raise CalibrationConfigError(f"Calibration table unreadable: {path}: {e}") from e

    if not isinstance(data, dict):
        raise CalibrationConfigError("Calibration table must be a JSON object")

    x = _as_numbers(data.get("x"), "x")
    y = _as_numbers(data.get("y"), "y")
    if len(x) != len(y):
        raise CalibrationConfigError(
            f"Calibration 'x' and 'y' differ in length ({len(x)} != {len(y)})"
        )
    if any(later <= earlier for earlier, later in zip(x, x[1:])):
        raise CalibrationConfigError("Calibration 'x' must be strictly ascending")

    mapping = CalibrationMapping(x=x, y=y, source=data.get("source"))
    logger.info("Calibration table loaded", path=str(path), breakpoints=len(x), source=mapping.source)
    return mapping


@lru_cache(maxsize=None)
def get_calibration(path: str = DEFAULT_CALIBRATION_PATH) -> CalibrationMapping:
    """Load a table once per path and keep it for the process lifetime."""
    return load_calibration(path)


def calibrate(raw: float, mapping: Optional[CalibrationMapping] = None) -> float:
    """Map a raw score through the breakpoint table.

    Raises ValueError for NaN or infinite scores.
    """
    if not math.isfinite(raw):
        raise ValueError(f"Raw score must be finite, got {raw}")
    mapping = mapping or get_calibration()
    x, y = mapping.x, mapping.y

    idx = bisect_left(x, raw)
    if idx == len(x):
        return y[-1]
    if idx == 0 or x[idx] == raw:
        return y[idx]
    return y[idx - 1]
