import math
from typing import Any, Dict, List, Optional, Tuple


Series = List[Tuple[float, float]]


def values_from_series(series: Series) -> List[float]:
    """Extract numeric values from a list of (timestamp, value) tuples.
    Drops NaNs and non-finite values.
    """
    vals: List[float] = []
    for _, v in series:
        if v is None:
            continue
        try:
            fv = float(v)
        except (TypeError, ValueError):
            continue
        if not math.isfinite(fv):
            continue
        vals.append(fv)
    return vals


def percentile(samples: List[float], percent: float) -> float:
    """Linear-interpolated percentile over a non-empty sample list."""
    if not samples:
        raise ValueError("samples must not be empty")
    if not (0 <= percent <= 100):
        raise ValueError("percent must be between 0 and 100")
    s = sorted(samples)
    idx = (percent / 100.0) * (len(s) - 1)
    lower = int(math.floor(idx))
    upper = int(math.ceil(idx))
    if lower == upper:
        return float(s[lower])
    return float(s[lower] + (idx - lower) * (s[upper] - s[lower]))


def window_seconds(series: Series) -> float:
    if not series:
        return 0.0
    timestamps = [ts for ts, _ in series]
    return float(max(timestamps) - min(timestamps))


def summarize(series: Series) -> Optional[Dict[str, Any]]:
    """Condense a series into the statistics handed back to the oracle.

    Returns None when the series holds no usable values.
    """
    vals = values_from_series(series)
    if not vals:
        return None
    return {
        "samples": len(vals),
        "min": min(vals),
        "avg": sum(vals) / len(vals),
        "p95": percentile(vals, 95.0),
        "peak": max(vals),
        "latest": vals[-1],
        "window_seconds": window_seconds(series),
    }
