"""Result types for one analysis cycle."""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from errors import excerpt


OPTIMIZABLE = 'optimizable'
WELL_SIZED = 'well_sized'
INSUFFICIENT_DATA = 'insufficient_data'
ERROR = 'error'

STATUSES = (OPTIMIZABLE, WELL_SIZED, INSUFFICIENT_DATA, ERROR)

# Placeholder stored when the report pass fails for an optimizable result
REPORT_ERROR_PLACEHOLDER = 'Error generating report: {error}'


def _zero_savings() -> Dict[str, float]:
    return {'cpu_percent': 0.0, 'memory_percent': 0.0}


@dataclass
class AnalysisResult:
    workload_id: str
    status: str
    current: Dict[str, Any] = field(default_factory=dict)
    recommended: Optional[Dict[str, Any]] = None
    reasoning: str = ''
    metrics_summary: Dict[str, Any] = field(default_factory=dict)
    savings: Dict[str, float] = field(default_factory=_zero_savings)
    error: Optional[str] = None
    raw_response: Optional[str] = None

    @classmethod
    def failed(cls, workload_id: str, error: str, current: Optional[Dict[str, Any]] = None,
               raw_response: Optional[str] = None) -> 'AnalysisResult':
        return cls(
            workload_id=workload_id,
            status=ERROR,
            current=current or {},
            error=error,
            raw_response=excerpt(raw_response) or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            'workload_id': self.workload_id,
            'status': self.status,
            'current': self.current,
            'recommended': self.recommended,
            'reasoning': self.reasoning,
            'metrics_summary': self.metrics_summary,
            'savings': self.savings,
        }
        if self.error is not None:
            out['error'] = self.error
        if self.raw_response:
            out['raw_response'] = self.raw_response
        return out


@dataclass
class CycleSummary:
    """Derived view over the results of one cycle, in input order"""
    results: List[AnalysisResult]
    reports: Dict[str, str] = field(default_factory=dict)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    duration_seconds: float = 0.0

    def __len__(self) -> int:
        return len(self.results)

    def by_status(self, status: str) -> List[AnalysisResult]:
        return [r for r in self.results if r.status == status]

    @property
    def counts(self) -> Dict[str, int]:
        counts = {s: 0 for s in STATUSES}
        for r in self.results:
            counts[r.status] = counts.get(r.status, 0) + 1
        return counts

    @property
    def optimizable(self) -> List[Dict[str, Any]]:
        return [
            {
                'workload_id': r.workload_id,
                'current': r.current,
                'recommended': r.recommended,
                'savings': r.savings,
            }
            for r in self.by_status(OPTIMIZABLE)
        ]

    @property
    def errors(self) -> List[Dict[str, str]]:
        return [
            {'workload_id': r.workload_id, 'error': r.error or 'Unknown error'}
            for r in self.by_status(ERROR)
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'started_at': self.started_at,
            'finished_at': self.finished_at,
            'duration_seconds': round(self.duration_seconds, 3),
            'total': len(self.results),
            'counts': self.counts,
            'optimizable': self.optimizable,
            'errors': self.errors,
            'results': [r.to_dict() for r in self.results],
            'reports': dict(self.reports),
        }
