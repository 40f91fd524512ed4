"""
Resource Descriptor Fetcher - read-only lookup of a workload's current allocation
Queries the control plane through kubectl and returns an immutable snapshot.
No retries at this layer; the caller decides.
"""
import json
import logging
import subprocess
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from errors import DescriptorUnavailable, PreconditionError
from normalize.quantity import parse_cpu, parse_memory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceDescriptor:
    """Snapshot of a workload's resource requests and replica count"""
    workload_id: str
    cpu_request: str
    memory_request: str
    replica_count: int
    namespace: str

    @property
    def cpu_millicores(self) -> float:
        return parse_cpu(self.cpu_request) or 0.0

    @property
    def memory_mi(self) -> float:
        return parse_memory(self.memory_request) or 0.0

    def as_current(self) -> Dict[str, Any]:
        """Descriptor subset used for AnalysisResult.current"""
        return {
            'cpu': self.cpu_request,
            'memory': self.memory_request,
            'replicas': self.replica_count,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'workload_id': self.workload_id,
            'namespace': self.namespace,
            'cpu': self.cpu_request,
            'memory': self.memory_request,
            'replicas': self.replica_count,
        }


def split_workload_id(workload_id: str, default_namespace: Optional[str] = None) -> Tuple[Optional[str], str]:
    """Split 'namespace/name' into its parts; bare names use default_namespace"""
    if '/' in workload_id:
        ns, name = workload_id.split('/', 1)
        return (ns or default_namespace), name
    return default_namespace, workload_id


def _kubectl(args: List[str], kube_context: Optional[str], timeout: int) -> str:
    cmd = ['kubectl'] + args
    if kube_context:
        cmd.extend(['--context', kube_context])
    logger.debug(f"Running: {' '.join(cmd)}")
    proc = subprocess.run(
        cmd,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=True,
    )
    return proc.stdout


def parse_deployment(workload_id: str, deployment: Dict[str, Any]) -> ResourceDescriptor:
    """Map a deployment JSON document onto a ResourceDescriptor.

    Absent fields default to "0" (cpu, memory), 0 (replicas) and "default"
    (namespace) rather than failing.
    """
    if not isinstance(deployment, dict):
        raise DescriptorUnavailable(f"{workload_id}: deployment document is not an object")

    spec = deployment.get('spec') or {}
    metadata = deployment.get('metadata') or {}
    containers = ((spec.get('template') or {}).get('spec') or {}).get('containers') or []
    container = containers[0] if containers and isinstance(containers[0], dict) else {}
    requests_ = (container.get('resources') or {}).get('requests') or {}

    replicas = spec.get('replicas')
    try:
        replica_count = int(replicas) if replicas is not None else 0
    except (TypeError, ValueError):
        raise DescriptorUnavailable(f"{workload_id}: invalid replica count {replicas!r}")

    return ResourceDescriptor(
        workload_id=workload_id,
        cpu_request=str(requests_.get('cpu') or '0'),
        memory_request=str(requests_.get('memory') or '0'),
        replica_count=replica_count,
        namespace=metadata.get('namespace') or 'default',
    )


def fetch_descriptor(
    workload_id: str,
    namespace: Optional[str] = None,
    kube_context: Optional[str] = None,
    timeout: int = 30,
) -> ResourceDescriptor:
    """Return the current ResourceDescriptor for a workload

    Raises:
        DescriptorUnavailable: workload absent, control plane unreachable or
            malformed response
    """
    ns, name = split_workload_id(workload_id, namespace)
    args = ['get', 'deployment', name, '-o', 'json']
    if ns:
        args.extend(['-n', ns])

    try:
        stdout = _kubectl(args, kube_context, timeout)
    except FileNotFoundError:
        raise DescriptorUnavailable("kubectl not found on PATH")
    except subprocess.TimeoutExpired:
        raise DescriptorUnavailable(f"{workload_id}: control plane did not answer within {timeout}s")
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or '').strip()
        raise DescriptorUnavailable(f"{workload_id}: kubectl failed: {stderr or e}") from e

    try:
        deployment = json.loads(stdout)
    except json.JSONDecodeError as e:
        raise DescriptorUnavailable(f"{workload_id}: malformed control plane response: {e}") from e

    descriptor = parse_deployment(workload_id, deployment)
    logger.info(
        f"[{workload_id}] Current allocation: CPU={descriptor.cpu_request}, "
        f"Memory={descriptor.memory_request}, Replicas={descriptor.replica_count}"
    )
    return descriptor


def check_cluster_access(kube_context: Optional[str] = None, timeout: int = 30) -> None:
    """Fail fast when the control plane is unreachable

    Raises:
        PreconditionError: kubectl missing or cluster-info failed
    """
    try:
        _kubectl(['cluster-info'], kube_context, timeout)
    except FileNotFoundError:
        raise PreconditionError("kubectl not found on PATH")
    except subprocess.TimeoutExpired:
        raise PreconditionError(f"Kubernetes control plane did not answer within {timeout}s")
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or '').strip()
        raise PreconditionError(f"Kubernetes cluster not accessible: {stderr or e}") from e
