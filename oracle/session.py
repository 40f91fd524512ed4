"""
Oracle Session - one tool-calling exchange with the reasoning oracle
Supports Ollama (local) and OpenAI-compatible (remote) chat endpoints.

The oracle decides how many tool calls to make before concluding; the
caller only sees the ordered event log and the concatenated transcript.
Nothing is retried here: a flaky oracle surfaces as an error.
"""
import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import requests

from errors import EmptyResponse, SessionFailed, SessionTimeout, TransportError
from metrics.tools import tool_definitions

logger = logging.getLogger(__name__)


ASSISTANT_TEXT = 'assistant_text'
TOOL_INVOCATION = 'tool_invocation'
SYSTEM_EVENT = 'system_event'
SESSION_RESULT = 'session_result'

# (name, arguments, timeout=seconds or None) -> (content, is_error)
ToolExecutor = Callable[..., Tuple[str, bool]]


@dataclass
class SessionEvent:
    type: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionTranscript:
    """Ordered events of a completed session; session_result is always last"""
    events: List[SessionEvent]

    @property
    def text(self) -> str:
        return ''.join(e.data.get('text', '') for e in self.events if e.type == ASSISTANT_TEXT)

    @property
    def result(self) -> Optional[SessionEvent]:
        if self.events and self.events[-1].type == SESSION_RESULT:
            return self.events[-1]
        return None

    @property
    def tool_calls(self) -> List[SessionEvent]:
        return [e for e in self.events if e.type == TOOL_INVOCATION]


def _content_text(content: Any) -> str:
    """Assistant content may be a string or a list of typed blocks"""
    if content is None:
        return ''
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return ''.join(
            block.get('text', '') for block in content
            if isinstance(block, dict) and block.get('type') == 'text'
        )
    return json.dumps(content)


class OracleSession:
    """Tool-calling chat session against a local or remote LLM

    Args:
        mode: 'local' for Ollama or 'remote' for an OpenAI-compatible API
        endpoint: Base URL of the LLM endpoint
        model: Model name (e.g., 'llama3.1:8b' or 'gpt-4o-mini')
        timeout: Per-request timeout in seconds
        api_key: API key for remote authentication (optional for local)
        max_turns: Upper bound on oracle round-trips in one session
    """

    def __init__(
        self,
        mode: str,
        endpoint: str,
        model: str,
        timeout: int = 120,
        api_key: Optional[str] = None,
        max_turns: int = 12,
    ):
        self.mode = mode
        self.endpoint = endpoint.rstrip('/')
        self.model = model
        self.timeout = timeout
        self.api_key = api_key
        self.max_turns = max_turns

        if mode not in ('local', 'remote'):
            raise TransportError(f"Invalid mode: {mode}. Use 'local' or 'remote'")

        if mode == 'remote' and not api_key:
            logger.warning("Remote LLM mode without API key - requests may fail")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def run(
        self,
        prompt: str,
        allowed_tools: Sequence[str] = (),
        tool_executor: Optional[ToolExecutor] = None,
        timeout: Optional[float] = None,
        system: Optional[str] = None,
    ) -> SessionTranscript:
        """Run one session to completion

        Args:
            prompt: Task description
            allowed_tools: Closed allow-list of tool names the oracle may call
            tool_executor: Runs an allowed tool call with timeout=<remaining budget> and
                returns (content, is_error)
            timeout: Wall-clock budget for the whole session in seconds
            system: Optional system message

        Returns:
            SessionTranscript whose last event is the session_result

        Raises:
            TransportError: transport failed before a session result
            SessionTimeout: budget exhausted mid-session
            SessionFailed: oracle reported an error result
            EmptyResponse: no assistant text before the session result
        """
        started = time.monotonic()
        deadline = started + timeout if timeout else None
        allowed = tuple(allowed_tools) if tool_executor is not None else ()
        tools = tool_definitions(allowed)

        messages: List[Dict[str, Any]] = []
        if system:
            messages.append({'role': 'system', 'content': system})
        messages.append({'role': 'user', 'content': prompt})

        events: List[SessionEvent] = [
            SessionEvent(SYSTEM_EVENT, {'subtype': 'init', 'model': self.model, 'tools': list(allowed)})
        ]

        turns = 0
        while True:
            if turns >= self.max_turns:
                events.append(self._result(started, turns, True, 'error_max_turns',
                                           f'exceeded {self.max_turns} turns'))
                break
            turns += 1

            body = self._post(messages, tools, deadline)
            if isinstance(body, dict) and body.get('error'):
                events.append(self._result(started, turns, True, 'error_during_execution',
                                           str(body['error'])))
                break

            message = self._message(body)
            text = _content_text(message.get('content'))
            if text:
                events.append(SessionEvent(ASSISTANT_TEXT, {'text': text}))
                logger.debug(f"Assistant content: {text[:100]}...")

            calls = message.get('tool_calls') or []
            if not calls:
                events.append(self._result(started, turns, False, 'success'))
                break

            messages.append(message)
            for call in calls:
                # Queued calls are discarded once the budget runs out and a
                # call in flight is abandoned rather than awaited
                remaining = self._check_deadline(deadline)
                events.extend(self._invoke(call, allowed, tool_executor, messages, remaining))

        return self._finish(SessionTranscript(events))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _result(self, started: float, turns: int, is_error: bool, subtype: str,
                error: Optional[str] = None) -> SessionEvent:
        data = {
            'is_error': is_error,
            'subtype': subtype,
            'duration_ms': int((time.monotonic() - started) * 1000),
            'num_turns': turns,
        }
        if error:
            data['error'] = error
        logger.info(f"Session result: {subtype}, duration: {data['duration_ms']}ms, error: {is_error}")
        return SessionEvent(SESSION_RESULT, data)

    def _finish(self, transcript: SessionTranscript) -> SessionTranscript:
        result = transcript.result
        if result is None:
            raise TransportError("session ended without a result")
        if result.data.get('is_error'):
            raise SessionFailed(
                result.data.get('error') or 'oracle reported an error',
                subtype=result.data.get('subtype', 'error'),
                duration_ms=result.data.get('duration_ms', 0),
            )
        if not transcript.text:
            raise EmptyResponse("No response text from oracle")
        return transcript

    def _check_deadline(self, deadline: Optional[float]) -> Optional[float]:
        """Remaining budget in seconds; raises SessionTimeout when exhausted"""
        if deadline is None:
            return None
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise SessionTimeout("session budget exhausted; exchange abandoned")
        return remaining

    def _invoke(self, call: Dict[str, Any], allowed: Tuple[str, ...],
                tool_executor: Optional[ToolExecutor],
                messages: List[Dict[str, Any]],
                remaining: Optional[float] = None) -> List[SessionEvent]:
        fn = call.get('function') or {}
        name = fn.get('name', '')
        raw_args = fn.get('arguments')
        events: List[SessionEvent] = []

        arguments: Dict[str, Any] = {}
        args_error = None
        if isinstance(raw_args, dict):
            arguments = raw_args
        elif isinstance(raw_args, str) and raw_args.strip():
            try:
                arguments = json.loads(raw_args)
            except json.JSONDecodeError as e:
                args_error = f'invalid arguments JSON: {e}'

        if name not in allowed or tool_executor is None:
            logger.warning(f"Oracle requested tool outside allow-list: {name}")
            events.append(SessionEvent(SYSTEM_EVENT, {'subtype': 'tool_denied', 'tool': name}))
            content, is_error = json.dumps({'error': f'tool not permitted: {name}'}), True
        elif args_error:
            content, is_error = json.dumps({'error': args_error}), True
        else:
            logger.info(f"Tool call: {name} {json.dumps(arguments)[:200]}")
            content, is_error = self._execute(tool_executor, name, arguments, remaining)

        events.append(SessionEvent(TOOL_INVOCATION, {
            'name': name,
            'arguments': arguments,
            'is_error': is_error,
            'result': content[:500],
        }))
        messages.append(self._tool_reply(call, name, content))
        return events

    def _execute(self, tool_executor: ToolExecutor, name: str, arguments: Dict[str, Any],
                 remaining: Optional[float]) -> Tuple[str, bool]:
        """Run one tool call within the remaining session budget

        The executor gets the budget as its own timeout. If it has not
        returned when the budget runs out its result is discarded.
        """
        if remaining is None:
            return tool_executor(name, arguments, timeout=None)
        pool = ThreadPoolExecutor(max_workers=1)
        try:
            future = pool.submit(tool_executor, name, arguments, timeout=remaining)
            try:
                return future.result(timeout=remaining)
            except FutureTimeout:
                raise SessionTimeout(f"session budget exhausted during tool call {name}; result discarded")
        finally:
            pool.shutdown(wait=False)

    def _tool_reply(self, call: Dict[str, Any], name: str, content: str) -> Dict[str, Any]:
        if self.mode == 'local':
            return {'role': 'tool', 'tool_name': name, 'content': content}
        return {'role': 'tool', 'tool_call_id': call.get('id', ''), 'content': content}

    def _message(self, body: Any) -> Dict[str, Any]:
        """Normalise the assistant message out of a chat response body"""
        try:
            if self.mode == 'local':
                message = body['message']
            else:
                message = body['choices'][0]['message']
        except (KeyError, IndexError, TypeError):
            raise TransportError(f"Malformed oracle response: {str(body)[:200]}")
        if not isinstance(message, dict):
            raise TransportError(f"Malformed oracle message: {str(message)[:200]}")
        message.setdefault('role', 'assistant')
        return message

    def _post(self, messages: List[Dict[str, Any]], tools: List[Dict[str, Any]],
              deadline: Optional[float]) -> Any:
        remaining = self._check_deadline(deadline)
        timeout = self.timeout if remaining is None else min(self.timeout, remaining)

        headers = {'Content-Type': 'application/json'}
        if self.mode == 'local':
            url = f"{self.endpoint}/api/chat"
            payload: Dict[str, Any] = {
                'model': self.model,
                'messages': messages,
                'stream': False,
                'options': {'temperature': 0.2},
            }
        else:
            url = f"{self.endpoint}/chat/completions"
            if self.api_key:
                headers['Authorization'] = f'Bearer {self.api_key}'
            payload = {
                'model': self.model,
                'messages': messages,
                'temperature': 0.2,  # Low temperature for deterministic responses
                'max_tokens': 4096,
            }
        if tools:
            payload['tools'] = tools

        try:
            response = requests.post(url, json=payload, headers=headers, timeout=timeout)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.Timeout:
            if deadline is not None and time.monotonic() >= deadline:
                raise SessionTimeout(f"session budget exhausted while waiting on {url}")
            raise TransportError(f"Oracle request timed out after {timeout:.0f}s")
        except requests.exceptions.ConnectionError as e:
            raise TransportError(f"Failed to connect to oracle at {self.endpoint}: {e}")
        except requests.exceptions.HTTPError:
            raise TransportError(f"Oracle returned error {response.status_code}: {response.text[:200]}")
        except ValueError as e:
            raise TransportError(f"Invalid JSON response from oracle: {e}")
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Unexpected error calling oracle: {e}")
