"""
Metric Query Gateway - read-only access to Prometheus data through Grafana
Every call is an independent HTTP request, so one client can be shared by
concurrent workload analyses.
"""
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import requests

from errors import TelemetryError, PreconditionError

logger = logging.getLogger(__name__)


_RELATIVE_TIME = re.compile(r'^now(?:-(\d+)([smhd]))?$')
_UNIT_SECONDS = {'s': 1, 'm': 60, 'h': 3600, 'd': 86400}


@dataclass
class MetricSample:
    """One series returned by a range query"""
    metric_name: str
    instance_label: str
    time_range: Tuple[float, float]
    series: List[Tuple[float, float]] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)


def _now() -> float:
    return time.time()


def resolve_time(value: Any, now: Optional[float] = None) -> float:
    """Resolve epoch seconds, RFC3339 strings or 'now-<n><unit>' to epoch seconds"""
    if now is None:
        now = _now()
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str) or not value.strip():
        raise TelemetryError(f"invalid time value: {value!r}")
    v = value.strip()
    m = _RELATIVE_TIME.match(v)
    if m:
        if m.group(1) is None:
            return now
        return now - int(m.group(1)) * _UNIT_SECONDS[m.group(2)]
    try:
        return float(v)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(v.replace('Z', '+00:00')).timestamp()
    except ValueError:
        raise TelemetryError(f"invalid time value: {value!r}")


def parse_matrix_values(matrix: Dict[str, Any]) -> List[Tuple[float, float]]:
    """
    Parse a Prometheus matrix result (single timeseries) into list of (timestamp, value).
    Unparseable points are skipped.
    """
    values = matrix.get("values") or []
    parsed: List[Tuple[float, float]] = []
    for point in values:
        try:
            ts_str, val_str = point
            ts = float(ts_str)
            val = float(val_str)
        except (TypeError, ValueError):
            continue
        parsed.append((ts, val))
    return parsed


class GrafanaClient:
    """Grafana HTTP API client limited to the telemetry tool contract

    Args:
        base_url: Grafana base URL (e.g. http://localhost:3000)
        token: Service account token sent as a bearer credential
        timeout: Per-request timeout in seconds
    """

    def __init__(self, base_url: str, token: str, timeout: int = 30):
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {'Accept': 'application/json'}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        return headers

    def _timeout(self, timeout: Optional[float]) -> float:
        """Per-call timeout, never longer than the client's own"""
        if timeout is None:
            return self.timeout
        return min(self.timeout, timeout)

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None,
             timeout: Optional[float] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            r = requests.get(url, params=params, headers=self._headers(), timeout=self._timeout(timeout))
        except requests.RequestException as e:
            raise TelemetryError(f"request to {path} failed: {e}") from e
        if r.status_code != 200:
            raise TelemetryError(f"grafana returned status {r.status_code} for {path}: {r.text[:200]}")
        try:
            return r.json()
        except ValueError as e:
            raise TelemetryError(f"invalid JSON from {path}: {e}") from e

    def health(self) -> Dict[str, Any]:
        """GET /api/health; raises PreconditionError when Grafana is unreachable"""
        try:
            data = self._get('/api/health')
        except TelemetryError as e:
            raise PreconditionError(f"Grafana not reachable at {self.base_url}: {e}") from e
        if isinstance(data, dict) and data.get('database') not in (None, 'ok'):
            raise PreconditionError(f"Grafana unhealthy: {data}")
        return data

    def list_datasources(self, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        data = self._get('/api/datasources', timeout=timeout)
        if not isinstance(data, list):
            raise TelemetryError(f"unexpected datasource listing: {str(data)[:200]}")
        return [
            {
                'uid': ds.get('uid'),
                'name': ds.get('name'),
                'type': ds.get('type'),
                'is_default': bool(ds.get('isDefault', False)),
            }
            for ds in data if isinstance(ds, dict)
        ]

    def _prometheus(self, datasource_uid: str, path: str, params: Optional[Dict[str, Any]] = None,
                    timeout: Optional[float] = None) -> Any:
        if not datasource_uid:
            raise TelemetryError("datasource_uid is required")
        data = self._get(f"/api/datasources/proxy/uid/{datasource_uid}/api/v1/{path}", params, timeout=timeout)
        if not isinstance(data, dict) or data.get('status') != 'success':
            raise TelemetryError(f"prometheus error: {str(data)[:200]}")
        return data.get('data')

    def list_metric_names(self, datasource_uid: str, regex: Optional[str] = None, limit: int = 200,
                          timeout: Optional[float] = None) -> List[str]:
        names = self._prometheus(datasource_uid, 'label/__name__/values', timeout=timeout) or []
        if regex:
            try:
                pattern = re.compile(regex)
            except re.error as e:
                raise TelemetryError(f"invalid regex {regex!r}: {e}") from e
            names = [n for n in names if pattern.search(n)]
        return list(names)[:limit]

    def query_range(
        self,
        datasource_uid: str,
        expr: str,
        start: Any = 'now-1h',
        end: Any = 'now',
        step: Any = 60,
        timeout: Optional[float] = None,
    ) -> List[MetricSample]:
        """Run a PromQL range query and return one MetricSample per series"""
        if not expr:
            raise TelemetryError("query expression is required")
        now = _now()
        start_ts = resolve_time(start, now)
        end_ts = resolve_time(end, now)
        if end_ts <= start_ts:
            raise TelemetryError(f"time range is empty: start={start} end={end}")

        params = {
            'query': expr,
            'start': str(start_ts),
            'end': str(end_ts),
            'step': str(step),
        }
        data = self._prometheus(datasource_uid, 'query_range', params, timeout=timeout) or {}
        samples: List[MetricSample] = []
        for res in data.get('result', []):
            metric = res.get('metric', {}) or {}
            samples.append(MetricSample(
                metric_name=metric.get('__name__') or expr,
                instance_label=metric.get('instance') or metric.get('pod') or '<unknown>',
                time_range=(start_ts, end_ts),
                series=parse_matrix_values(res),
                labels=dict(metric),
            ))
        logger.debug(f"query_range {expr!r} returned {len(samples)} series")
        return samples
