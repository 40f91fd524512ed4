"""Kubernetes resource quantity parsing, formatting and recommendation rounding.

CPU is normalised to millicores and memory to MiB throughout the pipeline.
"""
import math
import re
from typing import Optional


CPU_STEP_MILLICORES = 10
MEMORY_STEP_MI = 128
CPU_FLOOR_MILLICORES = 50
MEMORY_FLOOR_MI = 128
SAFETY_MULTIPLIER = 1.5

# Tolerance for float noise before rounding up (e.g. 20 * 1.5 * 1.0000000001)
_EPSILON = 1e-9

_MEMORY_MULTIPLIERS_MI = {
    'Ki': 1.0 / 1024,
    'Mi': 1.0,
    'Gi': 1024.0,
    'Ti': 1024.0 ** 2,
    'K': 1000.0 / 1024 ** 2,
    'k': 1000.0 / 1024 ** 2,
    'M': 1000.0 ** 2 / 1024 ** 2,
    'G': 1000.0 ** 3 / 1024 ** 2,
    'T': 1000.0 ** 4 / 1024 ** 2,
}


def parse_cpu(quantity: Optional[str]) -> Optional[float]:
    """Parse a CPU quantity ('250m', '0.5', '2', '1500000n') into millicores.

    Returns None for values that cannot be parsed.
    """
    if quantity is None:
        return None
    q = str(quantity).strip()
    if not q:
        return None
    try:
        if q.endswith('m'):
            return float(q[:-1])
        if q.endswith('u'):
            return float(q[:-1]) / 1000.0
        if q.endswith('n'):
            return float(q[:-1]) / 1_000_000.0
        return float(q) * 1000.0
    except ValueError:
        return None


def parse_memory(quantity: Optional[str]) -> Optional[float]:
    """Parse a memory quantity ('512Mi', '1Gi', '134217728') into MiB."""
    if quantity is None:
        return None
    q = str(quantity).strip()
    if not q:
        return None
    m = re.match(r'^([0-9]*\.?[0-9]+(?:[eE][-+]?[0-9]+)?)\s*([A-Za-z]*)$', q)
    if not m:
        return None
    number, suffix = m.group(1), m.group(2)
    try:
        value = float(number)
    except ValueError:
        return None
    if not suffix:
        return value / (1024.0 ** 2)
    mult = _MEMORY_MULTIPLIERS_MI.get(suffix)
    if mult is None:
        return None
    return value * mult


def format_cpu(millicores: float) -> str:
    return f"{int(round(millicores))}m"


def format_memory(mi: float) -> str:
    return f"{int(round(mi))}Mi"


def _round_up(value: float, step: int) -> int:
    if value <= 0:
        return 0
    return int(math.ceil(value / step - _EPSILON)) * step


def round_cpu_millicores(value: float) -> int:
    """Round up to the nearest 10m. Idempotent: rounding a rounded value is a no-op."""
    return _round_up(value, CPU_STEP_MILLICORES)


def round_memory_mi(value: float) -> int:
    """Round up to the nearest 128Mi. Idempotent."""
    return _round_up(value, MEMORY_STEP_MI)


def recommend_cpu(peak_millicores: float) -> int:
    """Apply the safety multiplier, rounding and floor to a CPU peak."""
    return max(round_cpu_millicores(peak_millicores * SAFETY_MULTIPLIER), CPU_FLOOR_MILLICORES)


def recommend_memory(peak_mi: float) -> int:
    """Apply the safety multiplier, rounding and floor to a memory peak."""
    return max(round_memory_mi(peak_mi * SAFETY_MULTIPLIER), MEMORY_FLOOR_MI)
