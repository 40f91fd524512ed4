"""
Tests for the telemetry tool contract
"""
import json
from unittest.mock import MagicMock

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from errors import TelemetryError
from metrics.grafana_client import MetricSample
from metrics.tools import (
    TelemetryTools, tool_definitions, ALLOWED_TOOLS,
    LIST_DATASOURCES, LIST_METRIC_NAMES, QUERY_PROMETHEUS, MAX_TOOL_RESULT_CHARS,
)


def test_tool_definitions_follow_allow_list():
    defs = tool_definitions(ALLOWED_TOOLS)
    assert [d['function']['name'] for d in defs] == list(ALLOWED_TOOLS)
    assert tool_definitions(('shell_exec', QUERY_PROMETHEUS))[0]['function']['name'] == QUERY_PROMETHEUS
    assert tool_definitions(()) == []


class TestTelemetryTools:

    def test_list_datasources(self):
        gateway = MagicMock()
        gateway.list_datasources.return_value = [{'uid': 'prom1', 'name': 'Prometheus'}]
        content, is_error = TelemetryTools(gateway)(LIST_DATASOURCES, {})
        assert not is_error
        assert json.loads(content) == {'datasources': [{'uid': 'prom1', 'name': 'Prometheus'}]}

    def test_list_metric_names(self):
        gateway = MagicMock()
        gateway.list_metric_names.return_value = ['process_cpu_usage']
        content, is_error = TelemetryTools(gateway)(LIST_METRIC_NAMES, {'datasource_uid': 'prom1', 'regex': 'cpu'})
        assert not is_error
        assert json.loads(content)['count'] == 1
        gateway.list_metric_names.assert_called_once_with('prom1', regex='cpu', timeout=None)

    def test_query_returns_series_stats(self):
        gateway = MagicMock()
        gateway.query_range.return_value = [
            MetricSample('process_cpu_usage', 'pod-1', (0.0, 120.0),
                         series=[(0.0, 0.02), (60.0, 0.08), (120.0, 0.05)]),
        ]
        content, is_error = TelemetryTools(gateway, window_minutes=30)(
            QUERY_PROMETHEUS, {'datasource_uid': 'prom1', 'expr': 'process_cpu_usage'})

        assert not is_error
        result = json.loads(content)
        assert result['series_count'] == 1
        assert result['series'][0]['stats']['peak'] == 0.08
        assert result['series'][0]['stats']['samples'] == 3
        gateway.query_range.assert_called_once_with(
            'prom1', 'process_cpu_usage', start='now-30m', end='now', step=60, timeout=None)

    def test_timeout_reaches_gateway(self):
        gateway = MagicMock()
        gateway.list_datasources.return_value = []
        gateway.query_range.return_value = []
        tools = TelemetryTools(gateway)
        tools(LIST_DATASOURCES, {}, timeout=4.5)
        tools(QUERY_PROMETHEUS, {'datasource_uid': 'prom1', 'expr': 'up'}, timeout=2.0)
        gateway.list_datasources.assert_called_once_with(timeout=4.5)
        assert gateway.query_range.call_args[1]['timeout'] == 2.0

    def test_gateway_failure_is_error_result(self):
        gateway = MagicMock()
        gateway.query_range.side_effect = TelemetryError('grafana returned status 502')
        content, is_error = TelemetryTools(gateway)(QUERY_PROMETHEUS, {'datasource_uid': 'p', 'expr': 'up'})
        assert is_error
        assert '502' in json.loads(content)['error']

    def test_unknown_tool_rejected(self):
        gateway = MagicMock()
        content, is_error = TelemetryTools(gateway)('delete_dashboard', {})
        assert is_error
        assert 'unknown tool' in json.loads(content)['error']
        assert gateway.method_calls == []

    def test_non_object_arguments_rejected(self):
        content, is_error = TelemetryTools(MagicMock())(QUERY_PROMETHEUS, ['up'])
        assert is_error

    def test_large_result_truncated(self):
        gateway = MagicMock()
        gateway.list_metric_names.return_value = [f'metric_{i:05d}' for i in range(5000)]
        content, is_error = TelemetryTools(gateway)(LIST_METRIC_NAMES, {'datasource_uid': 'prom1'})
        assert not is_error
        assert len(content) <= MAX_TOOL_RESULT_CHARS + len('... [truncated]')
        assert content.endswith('[truncated]')
