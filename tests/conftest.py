"""
Test fixtures and configuration for pytest
"""
import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from cluster.descriptor import ResourceDescriptor
from config import OptimizerConfig
from oracle.session import (
    SessionEvent, SessionTranscript, ASSISTANT_TEXT, SESSION_RESULT, SYSTEM_EVENT,
)


def transcript_of(text):
    """Build a successful SessionTranscript carrying `text`"""
    events = [SessionEvent(SYSTEM_EVENT, {'subtype': 'init'})]
    if text:
        events.append(SessionEvent(ASSISTANT_TEXT, {'text': text}))
    events.append(SessionEvent(SESSION_RESULT, {
        'is_error': False, 'subtype': 'success', 'duration_ms': 5, 'num_turns': 1,
    }))
    return SessionTranscript(events)


class FakeSession:
    """Stands in for OracleSession; `handler(prompt, allowed_tools)` returns
    transcript text or an exception to raise."""

    def __init__(self, handler):
        self.handler = handler
        self.calls = []

    def run(self, prompt, allowed_tools=(), tool_executor=None, timeout=None, system=None):
        self.calls.append({
            'prompt': prompt,
            'allowed_tools': tuple(allowed_tools),
            'timeout': timeout,
        })
        outcome = self.handler(prompt, tuple(allowed_tools))
        if isinstance(outcome, Exception):
            raise outcome
        return transcript_of(outcome)


@pytest.fixture
def fake_session():
    return FakeSession


@pytest.fixture
def descriptor():
    """Workload requesting 200m CPU and 512Mi memory"""
    return ResourceDescriptor(
        workload_id='service-a',
        cpu_request='200m',
        memory_request='512Mi',
        replica_count=2,
        namespace='default',
    )


@pytest.fixture
def sample_payload():
    """Well-formed oracle payload with numeric peaks"""
    return {
        "workload_id": "service-a",
        "status": "optimizable",
        "current": {"cpu": "200m", "memory": "512Mi", "replicas": 2},
        "recommended": {"cpu": "100m", "memory": "256Mi", "replicas": 2},
        "reasoning": "Peak CPU 80m and peak heap 150Mi over the last hour.",
        "metrics_summary": {
            "datasources_found": 1,
            "metrics_available": 312,
            "samples_found": 120,
            "peak_cpu_millicores": 80,
            "peak_memory_mi": 150,
            "cpu_data": "avg 40m, peak 80m",
            "memory_data": "avg 110Mi, peak 150Mi",
        },
        "savings": {"cpu_percent": 50, "memory_percent": 50},
    }


@pytest.fixture
def fenced_transcript(sample_payload):
    """Transcript with leading prose, a json fence and trailing prose"""
    body = json.dumps(sample_payload, indent=2)
    return (
        "I queried the Prometheus datasource and found the following.\n\n"
        f"```json\n{body}\n```\n\n"
        "Let me know if you need anything else {or more detail}."
    )


@pytest.fixture
def test_config(tmp_path):
    """Configuration with credentials set and output under tmp_path"""
    return OptimizerConfig(
        grafana_token='test-token',
        workloads=('service-a', 'service-b'),
        output_dir=str(tmp_path / 'output'),
    )


@pytest.fixture
def mock_prometheus_matrix():
    """Prometheus query_range payload proxied through Grafana"""
    return {
        "status": "success",
        "data": {
            "resultType": "matrix",
            "result": [
                {
                    "metric": {"__name__": "process_cpu_usage", "instance": "host.docker.internal:30080"},
                    "values": [[1704355200, "0.02"], [1704355260, "0.08"], [1704355320, "0.05"]]
                }
            ]
        }
    }
