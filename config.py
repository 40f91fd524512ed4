import os
import logging
import sys
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Tuple, Mapping
from urllib.parse import urlparse

import yaml


# =============================================================================
# Logging Configuration
# =============================================================================
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT: str = os.getenv(
    "LOG_FORMAT",
    "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)


def setup_logging(level: Optional[str] = None):
    """Configure application-wide logging"""
    level = getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)]
    )
    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    v = env.get(name)
    if v is None:
        return default
    return v.lower() in ("1", "true", "yes", "on")


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    v = env.get(name)
    if v is None or v.strip() == "":
        return default
    try:
        return int(v)
    except ValueError:
        raise ConfigValidationError(f"{name} must be an integer, got '{v}'")


# =============================================================================
# Defaults
# =============================================================================
# Workloads analysed when neither WORKLOADS nor WORKLOADS_FILE is set
DEFAULT_WORKLOADS: Tuple[str, ...] = (
    "service-a",
    "service-b",
    "service-c",
    "service-d",
    "service-e",
)

DEFAULT_GRAFANA_URL = "http://localhost:3000"
DEFAULT_LLM_ENDPOINT_URL = "http://localhost:11434"
DEFAULT_LLM_MODEL_NAME = "llama3.1:8b"


class ConfigValidationError(Exception):
    """Raised when configuration loading or validation fails"""
    pass


@dataclass(frozen=True)
class OptimizerConfig:
    """Process configuration, loaded once at start-up and passed explicitly."""
    grafana_url: str = DEFAULT_GRAFANA_URL
    grafana_token: str = ""
    grafana_timeout_seconds: int = 30

    llm_mode: str = "local"
    llm_endpoint_url: str = DEFAULT_LLM_ENDPOINT_URL
    llm_model_name: str = DEFAULT_LLM_MODEL_NAME
    llm_api_key: Optional[str] = None
    llm_timeout_seconds: int = 120
    llm_max_turns: int = 12

    workloads: Tuple[str, ...] = DEFAULT_WORKLOADS
    workload_namespace: Optional[str] = None
    kube_context: Optional[str] = None
    kubectl_timeout_seconds: int = 30

    cycle_timeout_seconds: int = 300
    session_timeout_seconds: int = 240
    cycle_max_workers: int = 1
    metrics_window_minutes: int = 60

    output_dir: str = "output"
    reports_enabled: bool = True
    log_level: str = "INFO"

    # Service -> metrics port mapping handed to the oracle so it can filter
    # by instance label. Parsed from SERVICE_PORTS="service-a=30080,...".
    service_ports: Dict[str, int] = field(default_factory=dict)

    @property
    def summary_output_path(self) -> str:
        return os.path.join(self.output_dir, "cycle_summary.json")

    @property
    def history_path(self) -> str:
        return os.path.join(self.output_dir, ".history.json")


def _parse_workload_list(raw: str) -> Tuple[str, ...]:
    return tuple(w.strip() for w in raw.split(",") if w.strip())


def _load_workloads_file(path: str) -> Tuple[str, ...]:
    """Read workload identifiers from a YAML file.

    Accepts either a bare list or a mapping with a ``workloads`` key. Entries
    may be strings (``name`` or ``namespace/name``) or mappings with ``name``
    and optional ``namespace``.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigValidationError(f"WORKLOADS_FILE not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigValidationError(f"WORKLOADS_FILE is not valid YAML: {path} ({e})")

    if isinstance(data, dict):
        data = data.get("workloads")
    if not isinstance(data, list):
        raise ConfigValidationError(
            f"WORKLOADS_FILE must contain a list of workloads: {path}"
        )

    workloads: List[str] = []
    for entry in data:
        if isinstance(entry, str) and entry.strip():
            workloads.append(entry.strip())
        elif isinstance(entry, dict) and entry.get("name"):
            ns = entry.get("namespace")
            workloads.append(f"{ns}/{entry['name']}" if ns else str(entry["name"]))
        else:
            raise ConfigValidationError(f"Invalid workload entry in {path}: {entry!r}")
    return tuple(workloads)


def _parse_service_ports(raw: str) -> Dict[str, int]:
    ports: Dict[str, int] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        name, sep, port = item.partition("=")
        if not sep or not port.strip().isdigit():
            raise ConfigValidationError(f"SERVICE_PORTS entry must be name=port, got '{item}'")
        ports[name.strip()] = int(port.strip())
    return ports


def load_config(environ: Optional[Mapping[str, str]] = None) -> OptimizerConfig:
    """Build an immutable OptimizerConfig from the environment.

    Raises:
        ConfigValidationError: If a value cannot be parsed
    """
    env = os.environ if environ is None else environ

    workloads = DEFAULT_WORKLOADS
    if env.get("WORKLOADS_FILE"):
        workloads = _load_workloads_file(env["WORKLOADS_FILE"])
    elif env.get("WORKLOADS"):
        workloads = _parse_workload_list(env["WORKLOADS"])

    return OptimizerConfig(
        grafana_url=env.get("GRAFANA_URL", DEFAULT_GRAFANA_URL),
        grafana_token=env.get("GRAFANA_TOKEN", ""),
        grafana_timeout_seconds=_env_int(env, "GRAFANA_TIMEOUT_SECONDS", 30),
        llm_mode=env.get("LLM_MODE", "local"),
        llm_endpoint_url=env.get("LLM_ENDPOINT_URL", DEFAULT_LLM_ENDPOINT_URL),
        llm_model_name=env.get("LLM_MODEL_NAME", DEFAULT_LLM_MODEL_NAME),
        llm_api_key=env.get("LLM_API_KEY") or None,
        llm_timeout_seconds=_env_int(env, "LLM_TIMEOUT_SECONDS", 120),
        llm_max_turns=_env_int(env, "LLM_MAX_TURNS", 12),
        workloads=workloads,
        workload_namespace=env.get("WORKLOAD_NAMESPACE") or None,
        kube_context=env.get("KUBE_CONTEXT") or None,
        kubectl_timeout_seconds=_env_int(env, "KUBECTL_TIMEOUT_SECONDS", 30),
        cycle_timeout_seconds=_env_int(env, "CYCLE_TIMEOUT_SECONDS", 300),
        session_timeout_seconds=_env_int(env, "SESSION_TIMEOUT_SECONDS", 240),
        cycle_max_workers=_env_int(env, "CYCLE_MAX_WORKERS", 1),
        metrics_window_minutes=_env_int(env, "METRICS_WINDOW_MINUTES", 60),
        output_dir=env.get("OUTPUT_DIR", "output"),
        reports_enabled=_env_bool(env, "REPORTS_ENABLED", True),
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
        service_ports=_parse_service_ports(env.get("SERVICE_PORTS", "")),
    )


__all__ = [
    "LOG_LEVEL",
    "LOG_FORMAT",
    "DEFAULT_WORKLOADS",
    "OptimizerConfig",
    "ConfigValidationError",
    "setup_logging",
    "load_config",
    "validate_config",
]


# =============================================================================
# Configuration Validation
# =============================================================================
def _validate_positive_int(name: str, value: int) -> None:
    if value <= 0:
        raise ConfigValidationError(f"{name} must be positive, got {value}")


def _validate_url(name: str, value: str) -> None:
    try:
        result = urlparse(value)
        if not all([result.scheme, result.netloc]):
            raise ValueError("Missing scheme or netloc")
        if result.scheme not in ('http', 'https'):
            raise ValueError(f"Invalid scheme: {result.scheme}")
    except Exception as e:
        raise ConfigValidationError(f"{name} is not a valid URL: {value} ({e})")


def _validate_llm_mode(value: str) -> None:
    if value not in ('local', 'remote'):
        raise ConfigValidationError(
            f"LLM_MODE must be 'local' or 'remote', got '{value}'"
        )


def validate_config(cfg: OptimizerConfig) -> None:
    """Validate all configuration values on startup

    Raises:
        ConfigValidationError: If any configuration value is invalid
    """
    errors = []

    for name, value in (
        ("GRAFANA_TIMEOUT_SECONDS", cfg.grafana_timeout_seconds),
        ("LLM_TIMEOUT_SECONDS", cfg.llm_timeout_seconds),
        ("LLM_MAX_TURNS", cfg.llm_max_turns),
        ("KUBECTL_TIMEOUT_SECONDS", cfg.kubectl_timeout_seconds),
        ("CYCLE_TIMEOUT_SECONDS", cfg.cycle_timeout_seconds),
        ("SESSION_TIMEOUT_SECONDS", cfg.session_timeout_seconds),
        ("CYCLE_MAX_WORKERS", cfg.cycle_max_workers),
        ("METRICS_WINDOW_MINUTES", cfg.metrics_window_minutes),
    ):
        try:
            _validate_positive_int(name, value)
        except ConfigValidationError as e:
            errors.append(str(e))

    try:
        _validate_url("GRAFANA_URL", cfg.grafana_url)
    except ConfigValidationError as e:
        errors.append(str(e))

    try:
        _validate_url("LLM_ENDPOINT_URL", cfg.llm_endpoint_url)
    except ConfigValidationError as e:
        errors.append(str(e))

    try:
        _validate_llm_mode(cfg.llm_mode)
    except ConfigValidationError as e:
        errors.append(str(e))

    # Credentials are only read from the environment, never managed here
    if not cfg.grafana_token:
        errors.append("GRAFANA_TOKEN is required")
    if cfg.llm_mode == 'remote' and not cfg.llm_api_key:
        errors.append("LLM_API_KEY is required when LLM_MODE='remote'")

    if not cfg.workloads:
        errors.append("At least one workload must be configured (WORKLOADS or WORKLOADS_FILE)")

    if errors:
        raise ConfigValidationError(
            "Configuration validation failed:\n  - " + "\n  - ".join(errors)
        )
