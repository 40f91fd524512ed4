"""
Prompt construction for the analysis and report sessions.
"""
import json
from typing import Any, Dict, Optional

from cluster.descriptor import ResourceDescriptor
from metrics.tools import LIST_DATASOURCES, LIST_METRIC_NAMES, QUERY_PROMETHEUS


ANALYSIS_SYSTEM_PROMPT = (
    "You are an expert Kubernetes resource optimization analyst with read-only "
    "access to Prometheus through Grafana tools. You never change the cluster."
)


def _instance_hint(workload: str, service_ports: Dict[str, int]) -> str:
    port = service_ports.get(workload)
    if port is None:
        return (
            "Find the workload's series by filtering on its pod, service or "
            "instance label."
        )
    return f'Filter series with instance="host.docker.internal:{port}" (metrics port {port}).'


def build_analysis_prompt(
    descriptor: ResourceDescriptor,
    window_minutes: int = 60,
    service_ports: Optional[Dict[str, int]] = None,
) -> str:
    """Task description for the tool-calling analysis session"""
    service_ports = service_ports or {}
    workload = descriptor.workload_id.split('/')[-1]
    current = descriptor.as_current()

    return f"""
Analyze workload: {descriptor.workload_id}

Current Kubernetes configuration:
{json.dumps(descriptor.to_dict(), indent=2)}

Analysis steps:
1. Use {LIST_DATASOURCES} to find the Prometheus datasource uid.
2. Optionally use {LIST_METRIC_NAMES} to confirm which metrics exist.
3. Use {QUERY_PROMETHEUS} to query CPU and memory usage over the last {window_minutes} minutes
   (start "now-{window_minutes}m", end "now"). {_instance_hint(workload, service_ports)}
   - CPU: process_cpu_usage, container_cpu_usage_seconds_total (rate) or system_cpu_usage
   - Memory: jvm_memory_used_bytes{{area="heap"}} or container_memory_working_set_bytes
   - Load: http_server_requests_seconds_count
4. Determine PEAK CPU usage in millicores and PEAK memory usage in MiB over the window.
5. Compare peak usage to the current requests.

Classification guidelines:
- optimizable: current requests are at least 200% of peak usage
- well_sized: current requests are 120-200% of peak usage
- insufficient_data: no usable CPU or memory samples were found
- Recommended = peak * 1.5, CPU rounded up to 10m, memory rounded up to 128Mi,
  minimum 50m CPU and 128Mi memory, never below peak usage.

Return ONE JSON object and nothing else:
{{
    "workload_id": "{descriptor.workload_id}",
    "status": "optimizable" | "well_sized" | "insufficient_data",
    "current": {json.dumps(current)},
    "recommended": {{"cpu": "<cpu request>", "memory": "<memory request>", "replicas": {descriptor.replica_count}}},
    "reasoning": "explanation citing the actual metric values",
    "metrics_summary": {{
        "datasources_found": <number>,
        "metrics_available": <number>,
        "samples_found": <number of usable samples, 0 if none>,
        "peak_cpu_millicores": <number or null>,
        "peak_memory_mi": <number or null>,
        "cpu_data": "CPU metrics summary or 'unavailable'",
        "memory_data": "memory metrics summary or 'unavailable'"
    }},
    "savings": {{"cpu_percent": <number>, "memory_percent": <number>}}
}}
""".strip()


def build_report_prompt(result: Dict[str, Any]) -> str:
    """Task description for the tool-less report-generation session"""
    return f"""
Write a concise markdown change summary for a Kubernetes resource right-sizing.

Analysis data:
{json.dumps(result, indent=2)}

Include:
1. Title: "Optimize resources for {result.get('workload_id')}"
2. A table of current vs recommended CPU, memory and replicas
3. The metric evidence and reasoning
4. Expected savings

Use only the numbers above. Do not invent metrics.
""".strip()
