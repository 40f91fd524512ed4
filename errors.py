"""
Failure taxonomy for the recommendation pipeline.

Every per-workload failure derives from PipelineError so the cycle
aggregator can turn it into an `error` AnalysisResult without aborting the
rest of the cycle. PreconditionError is cycle-fatal and raised before any
per-workload work starts.
"""
from typing import Optional


# Bound applied to any raw oracle text attached for diagnosis
RAW_EXCERPT_LIMIT = 500


def excerpt(text: Optional[str], limit: int = RAW_EXCERPT_LIMIT) -> str:
    if not text:
        return ''
    return text[:limit]


class PipelineError(Exception):
    """Base class for failures captured as an `error` AnalysisResult"""

    @property
    def kind(self) -> str:
        return type(self).__name__

    def diagnostic(self) -> str:
        return f"{self.kind}: {self}"


class DescriptorUnavailable(PipelineError):
    """Workload absent, control plane unreachable, or malformed response"""
    pass


class TransportError(PipelineError):
    """Oracle transport failed before a session result was received"""
    pass


class SessionTimeout(TransportError):
    """Session budget exhausted; the exchange was abandoned"""
    pass


class SessionFailed(PipelineError):
    """Oracle reported an error result for the session"""

    def __init__(self, message: str, subtype: str = 'error', duration_ms: int = 0):
        super().__init__(message)
        self.subtype = subtype
        self.duration_ms = duration_ms

    def __str__(self) -> str:
        return f"{self.args[0]} (subtype={self.subtype}, duration={self.duration_ms}ms)"


class EmptyResponse(PipelineError):
    """Session completed without any assistant text"""
    pass


class ExtractionFailed(PipelineError):
    """No well-formed structured payload could be recovered from the transcript"""

    def __init__(self, message: str, raw: Optional[str] = None, candidate: Optional[str] = None):
        super().__init__(message)
        self.raw_excerpt = excerpt(raw)
        self.candidate_excerpt = excerpt(candidate)


class ValidationFailed(PipelineError):
    """Recommendation post-condition violated"""

    def __init__(self, message: str, raw: Optional[str] = None):
        super().__init__(message)
        self.raw_excerpt = excerpt(raw)


class TelemetryError(Exception):
    """Metric Query Gateway request failed"""
    pass


class PreconditionError(Exception):
    """Cycle-fatal precondition failure (credential, backend, control plane)"""
    pass
