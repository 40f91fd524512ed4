"""Orchestrator: descriptor -> oracle session -> extraction -> classification -> summary.
One cycle analyses every configured workload. A workload's failure becomes an
`error` result and never stops the others; only precondition failures abort.
"""
import logging
import json
import os
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

from config import (
    OptimizerConfig, ConfigValidationError, load_config, setup_logging, validate_config,
)
from analysis.classifier import classify
from analysis.extractor import extract_payload
from analysis.models import (
    AnalysisResult, CycleSummary, OPTIMIZABLE, REPORT_ERROR_PLACEHOLDER,
)
from cluster.descriptor import check_cluster_access, fetch_descriptor
from errors import (
    ExtractionFailed, PipelineError, PreconditionError, SessionTimeout, ValidationFailed,
)
from metrics.grafana_client import GrafanaClient
from metrics.tools import ALLOWED_TOOLS, TelemetryTools
from oracle.prompts import ANALYSIS_SYSTEM_PROMPT, build_analysis_prompt, build_report_prompt
from oracle.session import OracleSession
from tracker import append_cycle

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _atomic_write(path: str, data: str) -> None:
    dirp = os.path.dirname(path) or '.'
    os.makedirs(dirp, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix='.tmp_summary_', dir=dirp, suffix='.json')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(data)
        # Atomic replace
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            try:
                os.remove(tmp)
            except OSError:
                pass


def build_session(cfg: OptimizerConfig) -> OracleSession:
    return OracleSession(
        mode=cfg.llm_mode,
        endpoint=cfg.llm_endpoint_url,
        model=cfg.llm_model_name,
        timeout=cfg.llm_timeout_seconds,
        api_key=cfg.llm_api_key,
        max_turns=cfg.llm_max_turns,
    )


def build_gateway(cfg: OptimizerConfig) -> GrafanaClient:
    return GrafanaClient(cfg.grafana_url, cfg.grafana_token, timeout=cfg.grafana_timeout_seconds)


def _session_budget(cfg: OptimizerConfig, deadline: Optional[float]) -> float:
    """Per-session timeout, never past the cycle deadline"""
    budget = float(cfg.session_timeout_seconds)
    if deadline is None:
        return budget
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise SessionTimeout("cycle deadline exceeded")
    return min(budget, remaining)


def analyze_workload(
    workload_id: str,
    cfg: OptimizerConfig,
    session: OracleSession,
    tools: TelemetryTools,
    fetcher: Callable = fetch_descriptor,
    deadline: Optional[float] = None,
) -> AnalysisResult:
    """Run the full pipeline for one workload; always returns a result"""
    current = {}
    transcript_text = None
    try:
        if deadline is not None and time.monotonic() >= deadline:
            raise SessionTimeout("cycle deadline exceeded before analysis started")

        descriptor = fetcher(
            workload_id,
            namespace=cfg.workload_namespace,
            kube_context=cfg.kube_context,
            timeout=cfg.kubectl_timeout_seconds,
        )
        current = descriptor.as_current()

        prompt = build_analysis_prompt(descriptor, cfg.metrics_window_minutes, cfg.service_ports)
        logger.info(f"[{workload_id}] Sending analysis task ({len(prompt):,} characters)")
        transcript = session.run(
            prompt,
            allowed_tools=ALLOWED_TOOLS,
            tool_executor=tools,
            timeout=_session_budget(cfg, deadline),
            system=ANALYSIS_SYSTEM_PROMPT,
        )
        transcript_text = transcript.text
        logger.info(
            f"[{workload_id}] Oracle response received ({len(transcript_text):,} characters, "
            f"{len(transcript.tool_calls)} tool calls)"
        )

        payload = extract_payload(transcript_text)
        result = classify(payload, descriptor, raw=transcript_text)
        logger.info(f"[{workload_id}] Analysis complete: {result.status}")
        return result

    except (ExtractionFailed, ValidationFailed) as e:
        logger.error(f"[{workload_id}] {e.diagnostic()}")
        return AnalysisResult.failed(workload_id, e.diagnostic(), current,
                                     raw_response=e.raw_excerpt or transcript_text)
    except PipelineError as e:
        logger.error(f"[{workload_id}] {e.diagnostic()}")
        return AnalysisResult.failed(workload_id, e.diagnostic(), current)
    except Exception as e:
        logger.exception(f"[{workload_id}] Unexpected failure")
        return AnalysisResult.failed(workload_id, f"UnexpectedError: {e}", current)


def generate_report(
    result: AnalysisResult,
    session: OracleSession,
    cfg: OptimizerConfig,
    deadline: Optional[float] = None,
) -> str:
    """Secondary tool-less session producing report text for an optimizable result

    A failure here only replaces the report text with a placeholder.
    """
    try:
        transcript = session.run(
            build_report_prompt(result.to_dict()),
            timeout=_session_budget(cfg, deadline),
        )
        return transcript.text
    except PipelineError as e:
        logger.error(f"[{result.workload_id}] Report generation failed: {e.diagnostic()}")
        return REPORT_ERROR_PLACEHOLDER.format(error=e.diagnostic())
    except Exception as e:
        logger.exception(f"[{result.workload_id}] Report generation failed")
        return REPORT_ERROR_PLACEHOLDER.format(error=e)


def run_cycle(
    cfg: OptimizerConfig,
    workloads: Optional[Iterable[str]] = None,
    session: Optional[OracleSession] = None,
    gateway: Optional[GrafanaClient] = None,
    fetcher: Callable = fetch_descriptor,
) -> CycleSummary:
    """Analyse every workload and aggregate the results in input order"""
    workload_ids: List[str] = list(cfg.workloads if workloads is None else workloads)
    session = session or build_session(cfg)
    tools = TelemetryTools(gateway or build_gateway(cfg), cfg.metrics_window_minutes)

    started_at = _now_iso()
    started = time.monotonic()
    deadline = started + cfg.cycle_timeout_seconds

    logger.info("=" * 60)
    logger.info(f"Starting optimization cycle for {len(workload_ids)} workload(s)")
    logger.info("=" * 60)

    def _analyze(workload_id: str) -> AnalysisResult:
        return analyze_workload(workload_id, cfg, session, tools, fetcher=fetcher, deadline=deadline)

    if cfg.cycle_max_workers > 1 and len(workload_ids) > 1:
        with ThreadPoolExecutor(max_workers=min(cfg.cycle_max_workers, len(workload_ids))) as pool:
            # map() yields in submission order
            results = list(pool.map(_analyze, workload_ids))
    else:
        results = [_analyze(w) for w in workload_ids]

    reports = {}
    if cfg.reports_enabled:
        for result in results:
            if result.status == OPTIMIZABLE:
                logger.info(f"[{result.workload_id}] Generating report...")
                reports[result.workload_id] = generate_report(result, session, cfg, deadline)

    return CycleSummary(
        results=results,
        reports=reports,
        started_at=started_at,
        finished_at=_now_iso(),
        duration_seconds=time.monotonic() - started,
    )


def format_summary(summary: CycleSummary) -> List[str]:
    """Human-readable summary lines"""
    counts = summary.counts
    lines = [
        "=" * 60,
        "OPTIMIZATION CYCLE COMPLETE",
        "=" * 60,
        f"Total workloads analyzed: {len(summary)}",
        f"Optimizable: {counts['optimizable']}",
        f"Well-sized: {counts['well_sized']}",
        f"Insufficient data: {counts['insufficient_data']}",
        f"Errors: {counts['error']}",
    ]
    if summary.optimizable:
        lines.append("OPTIMIZABLE WORKLOADS:")
        for entry in summary.optimizable:
            current = entry['current'] or {}
            recommended = entry['recommended'] or {}
            savings = entry['savings'] or {}
            lines.append(f"  {entry['workload_id']}:")
            lines.append(f"     Current: CPU={current.get('cpu', 'unknown')}, Memory={current.get('memory', 'unknown')}")
            lines.append(f"     Recommended: CPU={recommended.get('cpu', 'unknown')}, Memory={recommended.get('memory', 'unknown')}")
            lines.append(
                f"     Savings: CPU {savings.get('cpu_percent', 0.0):.1f}%, "
                f"Memory {savings.get('memory_percent', 0.0):.1f}%"
            )
    if summary.errors:
        lines.append("ERRORS:")
        for entry in summary.errors:
            lines.append(f"  {entry['workload_id']}: {entry['error']}")
    return lines


def check_preconditions(cfg: OptimizerConfig, gateway: GrafanaClient) -> None:
    """Cycle-fatal checks run before any per-workload work

    Raises:
        PreconditionError: telemetry backend or control plane unreachable
    """
    gateway.health()
    logger.info(f"Grafana reachable at {cfg.grafana_url}")
    check_cluster_access(cfg.kube_context, cfg.kubectl_timeout_seconds)
    logger.info("Kubernetes cluster accessible")


def main() -> int:
    try:
        cfg = load_config()
    except ConfigValidationError as e:
        setup_logging()
        logger.error(f"Configuration error: {e}")
        return 1

    setup_logging(cfg.log_level)

    # Validate configuration (includes credential presence)
    try:
        validate_config(cfg)
        logger.info("Configuration validated successfully")
    except ConfigValidationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    gateway = build_gateway(cfg)
    try:
        check_preconditions(cfg, gateway)
    except PreconditionError as e:
        logger.error(f"Precondition failed: {e}")
        return 1

    summary = run_cycle(cfg, gateway=gateway)

    for line in format_summary(summary):
        logger.info(line)
    for workload_id, report in summary.reports.items():
        logger.info(f"REPORT FOR {workload_id}:\n{report}")

    data = summary.to_dict()
    try:
        _atomic_write(cfg.summary_output_path, json.dumps(data, indent=2))
        logger.info(f"Wrote cycle summary to {cfg.summary_output_path}")
    except OSError as e:
        logger.error(f"Failed to write cycle summary: {e}")

    if not append_cycle(data, history_path=cfg.history_path):
        logger.warning(f"Failed to update run history at {cfg.history_path}")

    return 0


if __name__ == '__main__':
    raise SystemExit(main())
