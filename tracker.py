"""Append-only run history for completed cycles.
Each cycle adds one compact record; existing records are never rewritten.
"""
import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _atomic_write(path: str, data: str) -> None:
    dirp = os.path.dirname(path) or '.'
    os.makedirs(dirp, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix='.tmp_history_', dir=dirp)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(data)
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            try:
                os.remove(tmp)
            except OSError:
                pass


def cycle_record(summary: Dict[str, Any]) -> Dict[str, Any]:
    """Compact history entry for a CycleSummary.to_dict() payload"""
    return {
        'timestamp': summary.get('finished_at') or _now_iso(),
        'duration_seconds': summary.get('duration_seconds'),
        'total': summary.get('total', 0),
        'counts': summary.get('counts', {}),
        'optimizable': [e.get('workload_id') for e in summary.get('optimizable', [])],
        'errors': summary.get('errors', []),
    }


def append_cycle(summary: Dict[str, Any], history_path: str = '.history.json') -> bool:
    """Append a cycle record to history_path in an append-only manner.

    Returns True on success, False on failure.
    """
    try:
        if not os.path.exists(history_path):
            base = {'last_updated': _now_iso(), 'cycles': []}
        else:
            with open(history_path, 'r', encoding='utf-8') as f:
                base = json.load(f)

        cycles = base.get('cycles') or []
        cycles.append(cycle_record(summary))
        base['cycles'] = cycles
        base['last_updated'] = _now_iso()

        _atomic_write(history_path, json.dumps(base, indent=2))
        return True
    except (OSError, ValueError, AttributeError):
        return False
