"""
Resilient Extractor - recover one structured payload from free-text oracle output

Candidate selection, first match wins:
1. fenced block tagged json containing a balanced {...} span
2. any fenced block containing a balanced {...} span
3. outermost { ... } span of the transcript

The candidate is parsed with json.loads. Balanced spans are found with a
string-aware scanner, so braces inside string values do not end a span.
No content repair is attempted.
"""
import json
import logging
import re
from typing import Any, Dict, Iterator, Optional, Tuple

from errors import ExtractionFailed

logger = logging.getLogger(__name__)


_FENCE = re.compile(r'```([A-Za-z0-9_+-]*)[^\n`]*\n?(.*?)```', re.DOTALL)

REQUIRED_FIELDS: Dict[str, type] = {
    'status': str,
    'reasoning': str,
    'metrics_summary': dict,
}

# May be absent or null; when present they must have this type
OPTIONAL_FIELDS: Dict[str, type] = {
    'workload_id': str,
    'current': dict,
    'recommended': dict,
    'savings': dict,
}


def balanced_span(text: str, start: int) -> Optional[Tuple[int, int]]:
    """Return (start, end) of the balanced object opening at text[start], if any"""
    if start < 0 or start >= len(text) or text[start] != '{':
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        c = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif c == '\\':
                escaped = True
            elif c == '"':
                in_string = False
            continue
        if c == '"':
            in_string = True
        elif c == '{':
            depth += 1
        elif c == '}':
            depth -= 1
            if depth == 0:
                return start, i + 1
    return None


def balanced_spans(text: str) -> Iterator[str]:
    """Yield top-level balanced {...} spans from left to right"""
    pos = text.find('{')
    while pos != -1:
        span = balanced_span(text, pos)
        if span is None:
            pos = text.find('{', pos + 1)
            continue
        yield text[span[0]:span[1]]
        pos = text.find('{', span[1])


def _first_balanced(body: str) -> Optional[str]:
    return next(balanced_spans(body), None)


def find_candidate(transcript: str) -> Tuple[Optional[str], str]:
    """Select the candidate span and name the strategy that produced it"""
    fences = [(tag.lower(), body) for tag, body in _FENCE.findall(transcript)]

    for tag, body in fences:
        if tag == 'json':
            candidate = _first_balanced(body)
            if candidate is not None:
                return candidate, 'json_fence'

    for _, body in fences:
        candidate = _first_balanced(body)
        if candidate is not None:
            return candidate, 'fence'

    start = transcript.find('{')
    end = transcript.rfind('}')
    if start != -1 and end > start:
        return transcript[start:end + 1], 'outermost'
    return None, 'none'


def check_schema(payload: Any, required_fields: Dict[str, type] = REQUIRED_FIELDS) -> list:
    """Return the list of schema errors for an extracted payload"""
    if not isinstance(payload, dict):
        return ['payload must be a JSON object']
    errors = []
    for key, expected in required_fields.items():
        if key not in payload or payload[key] is None:
            errors.append(f'missing required field: {key}')
        elif not isinstance(payload[key], expected):
            errors.append(f'{key} must be of type {expected.__name__}')
    for key, expected in OPTIONAL_FIELDS.items():
        if payload.get(key) is not None and not isinstance(payload[key], expected):
            errors.append(f'{key} must be of type {expected.__name__}')
    return errors


def extract_payload(transcript: str, required_fields: Dict[str, type] = REQUIRED_FIELDS) -> Dict[str, Any]:
    """Recover and schema-check the structured payload in an oracle transcript

    Raises:
        ExtractionFailed: no candidate, unparseable candidate or schema mismatch
    """
    candidate, strategy = find_candidate(transcript or '')
    if candidate is None:
        raise ExtractionFailed('No JSON object found in response', raw=transcript)

    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError as e:
        payload = None
        if strategy == 'outermost':
            # Naive outermost span can swallow prose between two objects
            for span in balanced_spans(transcript):
                try:
                    parsed = json.loads(span)
                except json.JSONDecodeError:
                    continue
                if isinstance(parsed, dict):
                    payload, candidate, strategy = parsed, span, 'balanced_scan'
                    break
        if payload is None:
            raise ExtractionFailed(
                f'Invalid JSON in response: {e}', raw=transcript, candidate=candidate
            ) from e

    logger.debug(f"Extracted payload via {strategy} ({len(candidate)} chars)")

    errors = check_schema(payload, required_fields)
    if errors:
        raise ExtractionFailed(
            'Payload does not match schema: ' + '; '.join(errors),
            raw=transcript,
            candidate=candidate,
        )
    return payload
