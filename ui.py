#!/usr/bin/env python3
"""
Read-only web view of the last optimization cycle

Serves the cycle summary, per-workload results, generated reports and the
run history written by the orchestrator. Never triggers analysis and never
changes the cluster.
"""
import json
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path

from flask import Flask, jsonify, Response, render_template_string

from config import setup_logging, load_config, ConfigValidationError

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)

app = Flask(__name__)

OUTPUT_DIR = Path(os.getenv("OUTPUT_DIR", "output"))
SUMMARY_FILE = OUTPUT_DIR / 'cycle_summary.json'
HISTORY_FILE = OUTPUT_DIR / '.history.json'

# Metrics for observability
_metrics = {
    'requests_total': 0,
    'requests_by_endpoint': {},
    'errors_total': 0,
    'start_time': time.time()
}

DASHBOARD_TEMPLATE = """<!doctype html>
<html>
<head><title>Resource Right-Sizing</title></head>
<body>
<h1>Resource Right-Sizing</h1>
<p>Cycle finished {{ summary.finished_at }} ({{ summary.total }} workloads)</p>
<ul>
{% for status, count in summary.counts.items() %}<li>{{ status }}: {{ count }}</li>
{% endfor %}
</ul>
<table border="1" cellpadding="4">
<tr><th>Workload</th><th>Status</th><th>Current</th><th>Recommended</th><th>Savings</th><th>Error</th></tr>
{% for r in summary.results %}
<tr>
<td>{{ r.workload_id }}</td>
<td>{{ r.status }}</td>
<td>{{ r.current.cpu }} / {{ r.current.memory }}</td>
<td>{% if r.recommended %}{{ r.recommended.cpu }} / {{ r.recommended.memory }}{% endif %}</td>
<td>{% if r.recommended %}CPU {{ r.savings.cpu_percent }}%, Memory {{ r.savings.memory_percent }}%{% endif %}</td>
<td>{{ r.error or '' }}</td>
</tr>
{% endfor %}
</table>
</body>
</html>
"""


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def _record_request(endpoint: str):
    """Record request metrics"""
    _metrics['requests_total'] += 1
    _metrics['requests_by_endpoint'][endpoint] = _metrics['requests_by_endpoint'].get(endpoint, 0) + 1


def load_json(filepath):
    """Load JSON file safely"""
    try:
        filepath = Path(filepath)
        if not filepath.exists():
            return None
        with open(filepath, 'r') as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Error loading {filepath}: {e}")
        _metrics['errors_total'] += 1
        return None


def _find_result(summary, workload_id):
    for result in summary.get('results', []):
        if result.get('workload_id') == workload_id:
            return result
    return None


@app.route('/')
def index():
    """Dashboard of the last cycle"""
    _record_request('/')
    summary = load_json(SUMMARY_FILE)
    if not summary:
        return Response("No cycle summary found. Run: python orchestrator.py",
                        status=404, mimetype='text/plain')
    return render_template_string(DASHBOARD_TEMPLATE, summary=summary)


@app.route('/api/summary')
def get_summary():
    """API endpoint for the full cycle summary"""
    _record_request('/api/summary')
    summary = load_json(SUMMARY_FILE)
    if summary:
        return jsonify(summary)
    return jsonify({"error": "Not found"}), 404


# Workload ids may be namespace/name
@app.route('/api/results/<path:workload_id>')
def get_result(workload_id):
    """API endpoint for one workload's AnalysisResult"""
    _record_request('/api/results')
    summary = load_json(SUMMARY_FILE) or {}
    result = _find_result(summary, workload_id)
    if result is None:
        return jsonify({"error": f"No result for {workload_id}"}), 404
    return jsonify(result)


@app.route('/api/reports/<path:workload_id>')
def get_report(workload_id):
    """API endpoint for the generated report of an optimizable workload"""
    _record_request('/api/reports')
    summary = load_json(SUMMARY_FILE) or {}
    report = (summary.get('reports') or {}).get(workload_id)
    if report is None:
        return jsonify({"error": f"No report for {workload_id}"}), 404
    return jsonify({"workload_id": workload_id, "report": report})


@app.route('/api/history')
def get_history():
    """API endpoint for the append-only cycle history"""
    _record_request('/api/history')
    history = load_json(HISTORY_FILE) or {}
    return jsonify({"cycles": history.get('cycles', [])})


@app.route('/health')
def health():
    """Health check endpoint for liveness probes"""
    _record_request('/health')
    return jsonify({
        "status": "healthy",
        "timestamp": _timestamp()
    })


@app.route('/ready')
def ready():
    """Readiness check endpoint - verifies a cycle summary exists"""
    _record_request('/ready')
    summary = load_json(SUMMARY_FILE)
    if summary:
        return jsonify({
            "status": "ready",
            "last_cycle": summary.get('finished_at'),
            "workloads": summary.get('total', 0),
            "timestamp": _timestamp()
        })
    return jsonify({
        "status": "not_ready",
        "reason": "No cycle summary found",
        "timestamp": _timestamp()
    }), 503


@app.route('/metrics')
def metrics():
    """Prometheus metrics endpoint for self-monitoring"""
    _record_request('/metrics')
    uptime = time.time() - _metrics['start_time']
    summary = load_json(SUMMARY_FILE) or {}

    lines = [
        "# HELP rightsizer_ui_requests_total Total number of HTTP requests",
        "# TYPE rightsizer_ui_requests_total counter",
        f"rightsizer_ui_requests_total {_metrics['requests_total']}",
        "",
        "# HELP rightsizer_ui_errors_total Total number of errors",
        "# TYPE rightsizer_ui_errors_total counter",
        f"rightsizer_ui_errors_total {_metrics['errors_total']}",
        "",
        "# HELP rightsizer_ui_uptime_seconds UI uptime in seconds",
        "# TYPE rightsizer_ui_uptime_seconds gauge",
        f"rightsizer_ui_uptime_seconds {uptime:.2f}",
        "",
        "# HELP rightsizer_last_cycle_workloads Workloads per status in the last cycle",
        "# TYPE rightsizer_last_cycle_workloads gauge",
    ]
    for status, count in (summary.get('counts') or {}).items():
        lines.append(f'rightsizer_last_cycle_workloads{{status="{status}"}} {count}')

    lines.append("")
    lines.append("# HELP rightsizer_ui_requests_by_endpoint Requests per endpoint")
    lines.append("# TYPE rightsizer_ui_requests_by_endpoint counter")
    for endpoint, count in _metrics['requests_by_endpoint'].items():
        lines.append(f'rightsizer_ui_requests_by_endpoint{{endpoint="{endpoint}"}} {count}')

    return Response('\n'.join(lines), mimetype='text/plain')


def main() -> int:
    global OUTPUT_DIR, SUMMARY_FILE, HISTORY_FILE
    try:
        cfg = load_config()
    except ConfigValidationError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    OUTPUT_DIR = Path(cfg.output_dir)
    SUMMARY_FILE = Path(cfg.summary_output_path)
    HISTORY_FILE = Path(cfg.history_path)

    host = os.getenv("UI_HOST", "127.0.0.1")
    port = int(os.getenv("UI_PORT", "8080"))
    logger.info("Resource Right-Sizing UI")
    logger.info(f"Dashboard: http://{host}:{port}")
    logger.info(f"Health: http://{host}:{port}/health")
    logger.info("Stop with: Ctrl+C")
    app.run(debug=False, host=host, port=port)
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
