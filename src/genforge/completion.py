"""Completion clients for OpenAI-compatible chat endpoints.

The orchestrator and the fix loop only see CompletionClient; the HTTP
client adds retries with exponential backoff and jitter for transient
failures and streams deltas from server-sent events.
"""

from __future__ import annotations

import json
import logging
import random
import re
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable, Iterator, Optional

import httpx

from .models import CodePatch, GenforgeError, ParsedError
from .prompts import (
    DIAGNOSIS_SYSTEM_PROMPT,
    FIX_SYSTEM_PROMPT,
    PLANNING_SYSTEM_PROMPT,
    REVIEW_SYSTEM_PROMPT,
    render_patch_prompt,
)

if TYPE_CHECKING:
    from .auto_fix import FixContext
    from .config import Config

logger = logging.getLogger(__name__)

# Patterns for sensitive data that should be masked in error messages
SENSITIVE_PATTERNS = [
    (re.compile(r"(Bearer\s+)[A-Za-z0-9_.-]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(api[_-]?key[\"\s:=]+)[A-Za-z0-9_-]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(Authorization[\"\s:=]+)[A-Za-z0-9_-]+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(sk-)[A-Za-z0-9_-]+"), r"\1[REDACTED]"),
]

_FENCE_LINE_RE = re.compile(r"^\s*```[\w+-]*\s*$", re.MULTILINE)
_THINK_RE = re.compile(r"<think>[\s\S]*?</think>", re.IGNORECASE)


class CompletionError(GenforgeError):
    """Raised when the completion endpoint cannot produce a response."""


class CompletionRateLimitError(CompletionError):
    """Raised when the endpoint keeps answering 429 after all retries."""


def sanitize_error(message: str) -> str:
    """Mask API keys and bearer tokens in a message."""
    result = message
    for pattern, replacement in SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def strip_code_fences(text: str) -> str:
    """Remove markdown fence lines and reasoning blocks around generated code."""
    text = _THINK_RE.sub("", text)
    return _FENCE_LINE_RE.sub("", text).strip("\n").strip()


def extract_json_from_response(content: str) -> tuple[Optional[dict], str]:
    """Extract a JSON object from an LLM response.

    Tries, in order: the whole response, a ```json fenced block, and the
    first balanced {...} span (string-aware, trailing commas removed).

    Returns:
        Tuple of (parsed_dict or None, error_message).
    """
    if not content or not content.strip():
        return None, "Empty response content"

    content = _THINK_RE.sub("", content)

    try:
        parsed = json.loads(content)
        if isinstance(parsed, dict):
            return parsed, ""
    except json.JSONDecodeError:
        pass

    block = re.search(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```", content)
    if block:
        try:
            return json.loads(block.group(1)), ""
        except json.JSONDecodeError:
            pass

    start = content.find("{")
    if start == -1:
        return None, "No JSON object found in response"

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(content)):
        char = content[i]
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == '"':
            in_string = not in_string
        elif in_string:
            continue
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                candidate = re.sub(r",\s*([}\]])", r"\1", content[start:i + 1])
                try:
                    return json.loads(candidate), ""
                except json.JSONDecodeError as e:
                    return None, f"Invalid JSON object: {e}"

    return None, "Could not extract valid JSON from response"


class CompletionClient(ABC):
    """A chat-style completion service."""

    @abstractmethod
    def complete(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> str:
        """Return the full response text."""

    def stream(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> Iterator[str]:
        """Yield the response in chunks. Defaults to one chunk."""
        yield self.complete(prompt, system_prompt, temperature, max_tokens, model)

    def close(self) -> None:
        pass


class OpenAICompatibleClient(CompletionClient):
    """Client for /chat/completions on an OpenAI-compatible server."""

    # Status codes eligible for retry (transient errors)
    RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

    def __init__(
        self,
        endpoint: str,
        model: str,
        api_key: Optional[str] = None,
        timeout: int = 120,
        max_tokens: int = 8192,
        temperature: float = 0.2,
        retry_max_attempts: int = 3,
        retry_backoff_base: float = 2.0,
        retry_backoff_max: float = 60.0,
        client: Optional[httpx.Client] = None,
    ):
        """Initialize the client.

        Args:
            endpoint: Base URL, e.g. http://localhost:1234/v1.
            model: Default model name.
            api_key: Optional bearer token.
            timeout: Request timeout in seconds.
            max_tokens: Default response token limit.
            temperature: Default sampling temperature.
            retry_max_attempts: Maximum attempts for transient errors.
            retry_backoff_base: Base seconds for exponential backoff.
            retry_backoff_max: Maximum backoff time in seconds.
            client: Optional preconfigured httpx.Client.
        """
        self.url = endpoint.rstrip("/") + "/chat/completions"
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.retry_max_attempts = retry_max_attempts
        self.retry_backoff_base = retry_backoff_base
        self.retry_backoff_max = retry_backoff_max
        self.client = client or httpx.Client(timeout=timeout)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _payload(self, prompt, system_prompt, temperature, max_tokens, model, stream: bool) -> dict:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return {
            "model": model or self.model,
            "messages": messages,
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.max_tokens,
            "stream": stream,
        }

    def _should_retry(self, error: Exception, attempt: int) -> bool:
        if attempt >= self.retry_max_attempts:
            return False
        if isinstance(error, httpx.TimeoutException):
            return True
        if isinstance(error, httpx.HTTPStatusError):
            return error.response.status_code in self.RETRYABLE_STATUS_CODES
        return isinstance(error, (httpx.ConnectError, httpx.RemoteProtocolError))

    def _get_backoff_time(self, attempt: int, retry_after: Optional[int] = None) -> float:
        """Full-jitter backoff: random(0, min(cap, base * 2^(attempt-1)))."""
        if retry_after is not None:
            return float(retry_after)
        capped = min(self.retry_backoff_base * (2 ** (attempt - 1)), self.retry_backoff_max)
        return random.uniform(0, capped)

    def _wait_before_retry(self, error: Exception, attempt: int) -> None:
        retry_after = None
        status_info = ""
        if isinstance(error, httpx.HTTPStatusError):
            status_info = f" (status {error.response.status_code})"
            header = error.response.headers.get("Retry-After")
            if header and header.isdigit():
                retry_after = int(header)
        backoff = self._get_backoff_time(attempt, retry_after)
        logger.warning(
            f"Transient error{status_info} on attempt {attempt}/{self.retry_max_attempts}: "
            f"{type(error).__name__}. Retrying in {backoff:.2f}s..."
        )
        time.sleep(backoff)

    def _final_error(self, error: Optional[Exception]) -> CompletionError:
        if isinstance(error, httpx.HTTPStatusError):
            status = error.response.status_code
            try:
                body = sanitize_error(error.response.text)
            except httpx.ResponseNotRead:
                body = ""
            message = (
                f"HTTP error from completion endpoint after {self.retry_max_attempts} attempts: "
                f"{status} - {body[:500]}"
            )
            if status == 429:
                return CompletionRateLimitError(message)
            return CompletionError(message)
        if isinstance(error, httpx.TimeoutException):
            return CompletionError(
                f"Request to completion endpoint timed out after {self.retry_max_attempts} attempts "
                f"(timeout: {self.timeout}s)"
            )
        return CompletionError(sanitize_error(f"Error calling completion endpoint: {error}"))

    def complete(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> str:
        payload = self._payload(prompt, system_prompt, temperature, max_tokens, model, stream=False)
        last_error: Optional[Exception] = None

        for attempt in range(1, self.retry_max_attempts + 1):
            try:
                response = self.client.post(self.url, headers=self._headers(), json=payload)
                response.raise_for_status()
                data = response.json()
                return data.get("choices", [{}])[0].get("message", {}).get("content", "") or ""
            except (httpx.HTTPStatusError, httpx.TimeoutException, httpx.ConnectError,
                    httpx.RemoteProtocolError) as e:
                last_error = e
                if self._should_retry(e, attempt):
                    self._wait_before_retry(e, attempt)
                    continue
                break
            except (ValueError, IndexError, AttributeError) as e:
                raise CompletionError(f"Malformed response from completion endpoint: {e}") from e

        raise self._final_error(last_error)

    def stream(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> Iterator[str]:
        """Yield content deltas. Retries only before the first delta arrives."""
        payload = self._payload(prompt, system_prompt, temperature, max_tokens, model, stream=True)
        last_error: Optional[Exception] = None

        for attempt in range(1, self.retry_max_attempts + 1):
            yielded = False
            try:
                with self.client.stream("POST", self.url, headers=self._headers(), json=payload) as response:
                    if response.status_code >= 400:
                        response.read()
                    response.raise_for_status()
                    for line in response.iter_lines():
                        delta = self._parse_sse_line(line)
                        if delta is None:
                            break
                        if delta:
                            yielded = True
                            yield delta
                return
            except (httpx.HTTPStatusError, httpx.TimeoutException, httpx.ConnectError,
                    httpx.RemoteProtocolError) as e:
                last_error = e
                if not yielded and self._should_retry(e, attempt):
                    self._wait_before_retry(e, attempt)
                    continue
                break

        raise self._final_error(last_error)

    @staticmethod
    def _parse_sse_line(line: str) -> Optional[str]:
        """Content delta for one SSE line, "" for noise, None at [DONE]."""
        line = line.strip()
        if not line.startswith("data:"):
            return ""
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            return None
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            logger.debug(f"Skipping malformed stream chunk: {data[:80]}")
            return ""
        choices = chunk.get("choices") or [{}]
        return (choices[0].get("delta") or {}).get("content") or ""

    def close(self) -> None:
        self.client.close()


DEFAULT_MOCK_PLAN = {
    "summary": "Mock plan: a small single-page app",
    "architecture": "Single App component with local state",
    "qualityProfile": "demo",
    "tasks": [
        {"id": "1", "title": "Generate App", "description": "Build the main component", "type": "build"},
        {"id": "2", "title": "Validate", "description": "Check the generated code", "type": "validate"},
    ],
}

DEFAULT_MOCK_CODE = """import React, { useState } from "react";
import ReactDOM from "react-dom/client";

export default function App() {
  const [count, setCount] = useState(0);
  return (
    <button onClick={() => setCount(count + 1)}>Clicked {count} times</button>
  );
}

ReactDOM.createRoot(document.getElementById("root")).render(<App />);
"""

DEFAULT_MOCK_REVIEW = {
    "summary": "Mock review: code is small and readable",
    "strengths": ["Simple state handling"],
    "issues": [{"severity": "low", "description": "No tests"}],
    "recommendations": ["Add a test for the counter"],
}


class MockCompletionClient(CompletionClient):
    """Canned responses for tests and --mock runs, no network calls."""

    def __init__(self, responses: Optional[dict[str, str]] = None, chunk_size: int = 40):
        """Initialize mock client.

        Args:
            responses: Optional dict mapping prompt substrings to responses.
                Checked in insertion order before the built-in defaults.
            chunk_size: Characters per streamed chunk.
        """
        self.responses = responses or {}
        self.chunk_size = chunk_size
        self.calls: list[dict[str, Optional[str]]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    @property
    def last_prompt(self) -> Optional[str]:
        return self.calls[-1]["prompt"] if self.calls else None

    def complete(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> str:
        self.calls.append({"prompt": prompt, "system_prompt": system_prompt, "model": model})
        haystack = f"{system_prompt or ''}\n{prompt}"
        for key, response in self.responses.items():
            if key in haystack:
                return response

        if system_prompt == PLANNING_SYSTEM_PROMPT:
            return json.dumps(DEFAULT_MOCK_PLAN)
        if system_prompt == REVIEW_SYSTEM_PROMPT:
            return json.dumps(DEFAULT_MOCK_REVIEW)
        if system_prompt == DIAGNOSIS_SYSTEM_PROMPT:
            return "Mock diagnosis: rebalance the brackets in the component."
        return DEFAULT_MOCK_CODE

    def stream(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> Iterator[str]:
        text = self.complete(prompt, system_prompt, temperature, max_tokens, model)
        for i in range(0, len(text), self.chunk_size):
            yield text[i:i + self.chunk_size]


def completion_fix_function(client: CompletionClient, temperature: float = 0.2) -> Callable[[str, "FixContext"], str]:
    """Adapt a client to the auto-fix loop's LLM fix hook."""

    def fix(prompt: str, context: "FixContext") -> str:
        return client.complete(prompt, system_prompt=FIX_SYSTEM_PROMPT, temperature=temperature)

    return fix


class CompletionPatchGenerator:
    """Structured patch function backed by a completion client.

    Asks for the complete corrected file and turns it into a full-file patch.
    Returns None when the model answers with nothing new.
    """

    def __init__(self, client: CompletionClient, temperature: float = 0.2):
        self.client = client
        self.temperature = temperature

    def __call__(self, error: ParsedError, file_content: str, context: str) -> Optional[CodePatch]:
        if not error.file:
            return None
        prompt = render_patch_prompt(error, file_content, context)
        code = strip_code_fences(
            self.client.complete(prompt, system_prompt=FIX_SYSTEM_PROMPT, temperature=self.temperature)
        )
        if not code or code == file_content.strip():
            return None
        if file_content.endswith("\n") and not code.endswith("\n"):
            code += "\n"
        return CodePatch(file=error.file, new_content=code, description=f"Model fix for {error.type.value} error")


def create_completion_client(config: Config, mock_mode: Optional[bool] = None) -> CompletionClient:
    """Factory for the configured completion client.

    Args:
        config: Loaded configuration.
        mock_mode: Overrides config.mock_mode when given.

    Returns:
        CompletionClient instance.
    """
    if config.mock_mode if mock_mode is None else mock_mode:
        return MockCompletionClient()

    return OpenAICompatibleClient(
        endpoint=config.llm.endpoint,
        model=config.llm.model,
        api_key=config.llm_api_key,
        timeout=config.llm.timeout,
        max_tokens=config.llm.max_tokens,
        temperature=config.llm.builder_temperature,
        retry_max_attempts=config.retry_max_attempts,
        retry_backoff_base=config.retry_backoff_base,
        retry_backoff_max=config.retry_backoff_max,
    )
