#!/usr/bin/env python3
"""Fit the impact score calibration table from a gold set.

Reads a CSV with ``raw`` (model score) and ``gold`` (reviewed score) columns,
fits an isotonic regression of gold on raw, and writes the fitted values at
each breakpoint to ``calibration/calibration.json``.

Usage
    python scripts/fit_calibration.py gold.csv --output calibration/calibration.json
"""

import argparse
import json
import sys
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import structlog
from sklearn.isotonic import IsotonicRegression

from libs.common.logging import configure_logging
from service_search.app.ranking.calibration import DEFAULT_CALIBRATION_PATH, load_calibration

logger = structlog.get_logger("fit_calibration")

DEFAULT_BREAKPOINTS = [float(v) for v in range(-5, 6)]
SOURCE_TAG = "isotonic_v1"


def fit_calibration(
    frame: pd.DataFrame,
    breakpoints: Sequence[float] = DEFAULT_BREAKPOINTS,
    min_rows: int = 10
) -> Dict[str, Any]:
    """Fit gold ~ raw and evaluate the fit at ``breakpoints``."""
    missing = {"raw", "gold"} - set(frame.columns)
    if missing:
        raise ValueError(f"Gold set is missing columns: {sorted(missing)}")

    data = frame[["raw", "gold"]].apply(pd.to_numeric, errors="coerce").dropna()
    if len(data) < min_rows:
        raise ValueError(f"Need at least {min_rows} usable rows, got {len(data)}")

    x = np.array(sorted(set(float(b) for b in breakpoints)), dtype=float)
    model = IsotonicRegression(increasing=True, out_of_bounds="clip")
    model.fit(data["raw"].to_numpy(dtype=float), data["gold"].to_numpy(dtype=float))
    y = model.predict(x)

    return {
        "x": [round(float(v), 4) for v in x],
        "y": [round(float(v), 4) for v in y],
        "source": SOURCE_TAG,
        "updated_on": date.today().isoformat(),
        "rows": int(len(data)),
    }


def write_calibration(mapping: Dict[str, Any], output: Path) -> None:
    """Write the table and read it back through the runtime validator."""
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(json.dumps(mapping, indent=2) + "\n", encoding="utf-8")
    load_calibration(output)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Fit the impact score calibration table")
    parser.add_argument("gold_csv", type=Path, help="CSV with raw and gold columns")
    parser.add_argument("--output", type=Path, default=Path(DEFAULT_CALIBRATION_PATH))
    parser.add_argument(
        "--breakpoints",
        type=float,
        nargs="+",
        default=DEFAULT_BREAKPOINTS,
        help="Raw score breakpoints to evaluate (default: -5..5)"
    )
    args = parser.parse_args(argv)

    configure_logging("fit-calibration", "INFO", "console")

    try:
        mapping = fit_calibration(pd.read_csv(args.gold_csv), args.breakpoints)
        write_calibration(mapping, args.output)
    except Exception as e:
        logger.error("Calibration fitting failed", error=str(e))
        return 1

    logger.info("Calibration table written", output=str(args.output), breakpoints=len(mapping["x"]), rows=mapping["rows"])
    return 0


if __name__ == "__main__":
    sys.exit(main())
