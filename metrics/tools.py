"""
Telemetry tool contract offered to the oracle.

A closed allow-list of three read-only tools. Definitions use the
OpenAI/Ollama function-calling schema; TelemetryTools dispatches a call
to the Grafana gateway and returns (content, is_error).
"""
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from errors import TelemetryError
from metrics.grafana_client import GrafanaClient
from normalize.series import summarize

logger = logging.getLogger(__name__)


LIST_DATASOURCES = 'list_datasources'
LIST_METRIC_NAMES = 'list_prometheus_metric_names'
QUERY_PROMETHEUS = 'query_prometheus'

ALLOWED_TOOLS: Tuple[str, ...] = (LIST_DATASOURCES, LIST_METRIC_NAMES, QUERY_PROMETHEUS)

# Upper bound on a tool result fed back into the session
MAX_TOOL_RESULT_CHARS = 8000
MAX_SERIES_PER_RESULT = 20


TOOL_DEFINITIONS: Dict[str, Dict[str, Any]] = {
    LIST_DATASOURCES: {
        'type': 'function',
        'function': {
            'name': LIST_DATASOURCES,
            'description': 'List the Grafana datasources (uid, name, type).',
            'parameters': {'type': 'object', 'properties': {}, 'required': []},
        },
    },
    LIST_METRIC_NAMES: {
        'type': 'function',
        'function': {
            'name': LIST_METRIC_NAMES,
            'description': 'List metric names available in a Prometheus datasource, optionally filtered by regex.',
            'parameters': {
                'type': 'object',
                'properties': {
                    'datasource_uid': {'type': 'string', 'description': 'Datasource uid'},
                    'regex': {'type': 'string', 'description': 'Optional regex filter on metric names'},
                },
                'required': ['datasource_uid'],
            },
        },
    },
    QUERY_PROMETHEUS: {
        'type': 'function',
        'function': {
            'name': QUERY_PROMETHEUS,
            'description': (
                'Run a PromQL range query over a datasource. Returns per-series '
                'statistics (samples, min, avg, p95, peak, latest).'
            ),
            'parameters': {
                'type': 'object',
                'properties': {
                    'datasource_uid': {'type': 'string', 'description': 'Datasource uid'},
                    'expr': {'type': 'string', 'description': 'PromQL expression'},
                    'start': {'type': 'string', 'description': "Range start, e.g. 'now-1h'"},
                    'end': {'type': 'string', 'description': "Range end, e.g. 'now'"},
                    'step': {'type': 'integer', 'description': 'Step in seconds'},
                },
                'required': ['datasource_uid', 'expr'],
            },
        },
    },
}


def tool_definitions(allowed_tools) -> List[Dict[str, Any]]:
    """Definitions for the allowed subset, in allow-list order"""
    return [TOOL_DEFINITIONS[name] for name in allowed_tools if name in TOOL_DEFINITIONS]


def _truncate(text: str) -> str:
    if len(text) <= MAX_TOOL_RESULT_CHARS:
        return text
    return text[:MAX_TOOL_RESULT_CHARS] + '... [truncated]'


class TelemetryTools:
    """Executes allow-listed tool calls against a GrafanaClient"""

    def __init__(self, gateway: GrafanaClient, window_minutes: int = 60):
        self.gateway = gateway
        self.window_minutes = window_minutes

    def __call__(self, name: str, arguments: Dict[str, Any],
                 timeout: Optional[float] = None) -> Tuple[str, bool]:
        """Run one tool call; timeout caps each gateway request"""
        if name not in ALLOWED_TOOLS:
            return json.dumps({'error': f'unknown tool: {name}'}), True
        if not isinstance(arguments, dict):
            return json.dumps({'error': 'arguments must be an object'}), True
        try:
            if name == LIST_DATASOURCES:
                result: Any = {'datasources': self.gateway.list_datasources(timeout=timeout)}
            elif name == LIST_METRIC_NAMES:
                names = self.gateway.list_metric_names(
                    arguments.get('datasource_uid', ''),
                    regex=arguments.get('regex'),
                    timeout=timeout,
                )
                result = {'count': len(names), 'metric_names': names}
            else:
                result = self._query(arguments, timeout)
        except TelemetryError as e:
            logger.warning(f"Tool {name} failed: {e}")
            return json.dumps({'error': str(e)}), True
        return _truncate(json.dumps(result, default=str)), False

    def _query(self, arguments: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        samples = self.gateway.query_range(
            arguments.get('datasource_uid', ''),
            arguments.get('expr', ''),
            start=arguments.get('start') or f'now-{self.window_minutes}m',
            end=arguments.get('end') or 'now',
            step=arguments.get('step') or 60,
            timeout=timeout,
        )
        series = []
        for sample in samples[:MAX_SERIES_PER_RESULT]:
            series.append({
                'metric': sample.metric_name,
                'instance': sample.instance_label,
                'labels': sample.labels,
                'stats': summarize(sample.series),
            })
        return {
            'expr': arguments.get('expr'),
            'series_count': len(samples),
            'series': series,
        }
