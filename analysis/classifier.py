"""
Classifier & Recommendation Validator

Re-derives the status of an extracted payload from numbers instead of
trusting the oracle's own classification, computes the recommendation from
peak usage, and checks the post-conditions on the final values. A payload
whose recommendation cannot be made safe raises ValidationFailed.
"""
import logging
import math
import re
from typing import Any, Dict, List, Optional, Tuple

from analysis.models import (
    AnalysisResult, OPTIMIZABLE, WELL_SIZED, INSUFFICIENT_DATA,
)
from cluster.descriptor import ResourceDescriptor
from errors import ValidationFailed
from normalize.quantity import (
    CPU_FLOOR_MILLICORES, CPU_STEP_MILLICORES, MEMORY_FLOOR_MI, MEMORY_STEP_MI,
    format_cpu, format_memory, recommend_cpu, recommend_memory,
)

logger = logging.getLogger(__name__)


OPTIMIZABLE_RATIO = 2.0
WELL_SIZED_RATIO = 1.2

CPU = 'cpu'
MEMORY = 'memory'

_CPU_RE = re.compile(
    r'(\d+(?:\.\d+)?)\s*(millicores?|m(?![A-Za-z\])])|cores?|vcpus?|cpus?)', re.IGNORECASE)
_MEMORY_RE = re.compile(
    r'(\d+(?:\.\d+)?)\s*(KiB|MiB|GiB|Ki|Mi|Gi|KB|MB|GB|bytes?|B)\b', re.IGNORECASE)
_PEAK_RE = re.compile(r'\b(?:peak|max(?:imum)?)\b', re.IGNORECASE)

# "60m" is also a duration: "over the last 60m", "now-60m", "[5m]", "5m window"
_DURATION_BEFORE = re.compile(r'(?:\b(?:last|past|over|window|every|within)\s+|[\[\-])$', re.IGNORECASE)
_DURATION_AFTER = re.compile(r'\s*(?:window|range|ago|interval|rate)\b', re.IGNORECASE)

# How far back a peak/max word may sit before the quantity it labels
_PEAK_LOOKBACK = 60

_MEMORY_UNIT_MI = {
    'ki': 1.0 / 1024, 'kib': 1.0 / 1024,
    'mi': 1.0, 'mib': 1.0,
    'gi': 1024.0, 'gib': 1024.0,
    'kb': 1e3 / 1024 ** 2, 'mb': 1e6 / 1024 ** 2, 'gb': 1e9 / 1024 ** 2,
    'b': 1.0 / 1024 ** 2, 'byte': 1.0 / 1024 ** 2, 'bytes': 1.0 / 1024 ** 2,
}


def normalize_status(value: Any) -> Optional[str]:
    """Map the oracle's declared status onto a known status, or None"""
    if not isinstance(value, str):
        return None
    s = value.strip().lower().replace('-', '_').replace(' ', '_')
    if s in (OPTIMIZABLE, WELL_SIZED, INSUFFICIENT_DATA):
        return s
    return None


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _cpu_millicores(number: str, unit: str) -> float:
    value = float(number)
    unit = unit.lower()
    if unit == 'm' or unit.startswith('millicore'):
        return value
    return value * 1000.0


def _memory_mi(number: str, unit: str) -> float:
    return float(number) * _MEMORY_UNIT_MI[unit.lower()]


def _is_duration(text: str, match) -> bool:
    if match.group(2).lower() != 'm':
        return False
    before = text[max(0, match.start() - 12):match.start()]
    return bool(_DURATION_BEFORE.search(before) or _DURATION_AFTER.match(text, match.end()))


def _peak_from_text(text: Any, quantity_re, convert, allow_any: bool) -> Optional[float]:
    """Largest quantity labelled peak/max in text

    A quantity is labelled when a peak word appears between it and the
    previous usage quantity. Durations are skipped.
    """
    if not isinstance(text, str) or not text:
        return None
    peaks, others = [], []
    last_end = 0
    for m in quantity_re.finditer(text):
        if _is_duration(text, m):
            continue
        value = convert(m.group(1), m.group(2))
        gap = text[max(last_end, m.start() - _PEAK_LOOKBACK):m.start()]
        (peaks if _PEAK_RE.search(gap) else others).append(value)
        last_end = m.end()
    if peaks:
        return max(peaks)
    if allow_any and others:
        # No explicit peak: take the largest quantity mentioned
        return max(others)
    return None


def estimate_peaks(payload: Dict[str, Any]) -> Dict[str, Optional[float]]:
    """Peak CPU (millicores) and memory (MiB) implied by the payload

    Numeric metrics_summary fields win; otherwise quantities are read out of
    the cpu_data / memory_data summaries and then the reasoning text.
    """
    ms = payload.get('metrics_summary') or {}
    reasoning = payload.get('reasoning')

    cpu = _number(ms.get('peak_cpu_millicores'))
    if cpu is None:
        cpu = _peak_from_text(ms.get('cpu_data'), _CPU_RE, _cpu_millicores, True)
    if cpu is None:
        cpu = _peak_from_text(reasoning, _CPU_RE, _cpu_millicores, False)

    memory = _number(ms.get('peak_memory_mi'))
    if memory is None:
        memory = _peak_from_text(ms.get('memory_data'), _MEMORY_RE, _memory_mi, True)
    if memory is None:
        memory = _peak_from_text(reasoning, _MEMORY_RE, _memory_mi, False)

    return {CPU: cpu, MEMORY: memory}


def classify_ratio(ratio: float) -> str:
    """Status implied by a single current/peak ratio"""
    if ratio >= OPTIMIZABLE_RATIO:
        return OPTIMIZABLE
    return WELL_SIZED


def validate_recommendation(
    recommended: Dict[str, float],
    peaks: Dict[str, float],
    current: Dict[str, float],
) -> Tuple[bool, List[str]]:
    """Check recommendation post-conditions

    1. Values are finite
    2. Never below observed peak usage
    3. At or above the floor (50m CPU, 128Mi memory)
    4. Resized values sit on the rounding grid (10m, 128Mi)

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    errors = []
    floors = {CPU: CPU_FLOOR_MILLICORES, MEMORY: MEMORY_FLOOR_MI}
    steps = {CPU: CPU_STEP_MILLICORES, MEMORY: MEMORY_STEP_MI}

    for key, value in recommended.items():
        if not math.isfinite(value):
            errors.append(f'{key}: recommended value is not finite')
            continue
        peak = peaks.get(key)
        if peak is not None and value < peak:
            errors.append(f'{key}: recommended {value:g} is below peak usage {peak:g}')
        if value == current.get(key):
            continue
        if value < floors[key]:
            errors.append(f'{key}: recommended {value:g} is below floor {floors[key]}')
        if value % steps[key] != 0:
            errors.append(f'{key}: recommended {value:g} is not a multiple of {steps[key]}')

    return len(errors) == 0, errors


def _savings(current: float, recommended: float) -> float:
    if current <= 0:
        return 0.0
    return round((current - recommended) / current * 100.0, 1)


def classify(payload: Dict[str, Any], descriptor: ResourceDescriptor,
             raw: Optional[str] = None) -> AnalysisResult:
    """Derive the final AnalysisResult for an extracted payload

    Raises:
        ValidationFailed: peak usage is unusable or a post-condition is violated
    """
    ms = dict(payload.get('metrics_summary') or {})
    declared = normalize_status(payload.get('status'))
    ms['declared_status'] = payload.get('status')

    result = AnalysisResult(
        workload_id=descriptor.workload_id,
        status=INSUFFICIENT_DATA,
        current=descriptor.as_current(),
        reasoning=payload.get('reasoning', ''),
        metrics_summary=ms,
    )

    samples = _number(ms.get('samples_found'))
    if samples is not None and samples <= 0:
        return result

    peaks = estimate_peaks(payload)
    for key, peak in peaks.items():
        if peak is not None and (not math.isfinite(peak) or peak < 0):
            raise ValidationFailed(f'{key}: invalid peak usage estimate {peak}', raw=raw)
    ms['peak_cpu_millicores'] = peaks[CPU]
    ms['peak_memory_mi'] = peaks[MEMORY]

    current_values = {CPU: descriptor.cpu_millicores, MEMORY: descriptor.memory_mi}
    usable = {k: v for k, v in peaks.items() if v is not None and v > 0}
    ratios = {k: current_values[k] / v for k, v in usable.items() if current_values[k] > 0}

    if not ratios:
        return _declared_fallback(result, declared, raw)

    ms['allocation_ratios'] = {k: round(v, 2) for k, v in ratios.items()}
    under = sorted(k for k, r in ratios.items() if r < WELL_SIZED_RATIO)
    if under:
        ms['under_provisioned'] = under

    over = [k for k, r in ratios.items() if classify_ratio(r) == OPTIMIZABLE]
    if not over:
        result.status = WELL_SIZED
        return result

    recommenders = {CPU: recommend_cpu, MEMORY: recommend_memory}
    recommended_values = dict(current_values)
    shrunk = []
    for key, peak in usable.items():
        candidate = float(recommenders[key](peak))
        if key in over and candidate < current_values[key]:
            recommended_values[key] = candidate
            shrunk.append(key)
        elif current_values[key] < peak:
            recommended_values[key] = candidate

    if not shrunk:
        # Floors and rounding left nothing to reclaim
        result.status = WELL_SIZED
        return result

    is_valid, errors = validate_recommendation(
        {k: recommended_values[k] for k in usable},
        usable,
        current_values,
    )
    if not is_valid:
        raise ValidationFailed('; '.join(errors), raw=raw)

    result.status = OPTIMIZABLE
    result.recommended = {
        'cpu': format_cpu(recommended_values[CPU]) if recommended_values[CPU] != current_values[CPU] else descriptor.cpu_request,
        'memory': format_memory(recommended_values[MEMORY]) if recommended_values[MEMORY] != current_values[MEMORY] else descriptor.memory_request,
        'replicas': descriptor.replica_count,
    }
    result.savings = {
        'cpu_percent': _savings(current_values[CPU], recommended_values[CPU]),
        'memory_percent': _savings(current_values[MEMORY], recommended_values[MEMORY]),
    }
    logger.info(
        f"[{descriptor.workload_id}] optimizable: CPU {descriptor.cpu_request} -> {result.recommended['cpu']}, "
        f"Memory {descriptor.memory_request} -> {result.recommended['memory']}"
    )
    return result


def _declared_fallback(result: AnalysisResult, declared: Optional[str],
                       raw: Optional[str]) -> AnalysisResult:
    """No usable peak/allocation pair: fall back to the oracle's declared status"""
    if declared in (None, INSUFFICIENT_DATA):
        if declared is None:
            logger.warning(f"[{result.workload_id}] Unrecognised status "
                           f"{result.metrics_summary.get('declared_status')!r} without usable metrics")
        result.status = INSUFFICIENT_DATA
        return result
    if declared == WELL_SIZED:
        result.status = WELL_SIZED
        return result
    raise ValidationFailed(
        'optimizable recommendation cannot be verified against observed peak usage',
        raw=raw,
    )
