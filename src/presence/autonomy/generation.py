from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from typing import Any, Callable, Dict, List, Optional

import requests
from requests import exceptions as requests_exceptions

from .collaborators import GenerationResult
from .config import Config
from .errors import FatalProviderError, TransientCollaboratorError
from .text import normalize_str


RETRYABLE_STATUSES = {429, 502, 503}
BASE_BACKOFF_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 30.0
_BILLING_MARKERS = ("insufficient", "credit", "billing")


def calculate_backoff(attempt: int, retry_after: Optional[float] = None, rng: Optional[random.Random] = None) -> float:
    if retry_after is not None and retry_after > 0:
        return min(retry_after, MAX_BACKOFF_SECONDS)
    rng = rng or random
    delay = min(BASE_BACKOFF_SECONDS * (2 ** attempt), MAX_BACKOFF_SECONDS)
    return delay + rng.uniform(0, delay * 0.25)


def _error_message(resp: Any) -> str:
    try:
        data = resp.json()
    except ValueError:
        return normalize_str(getattr(resp, "text", "")) or f"HTTP {resp.status_code}"
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return normalize_str(error.get("message"))
        if isinstance(error, str):
            return error
    return normalize_str(getattr(resp, "text", "")) or f"HTTP {resp.status_code}"


def classify_fatal(status: int, message: str) -> Optional[FatalProviderError]:
    lowered = message.lower()
    if status == 402 or any(marker in lowered for marker in _BILLING_MARKERS):
        return FatalProviderError(
            f"Insufficient credits or billing issue: {message}", FatalProviderError.BILLING, status
        )
    if status == 401:
        return FatalProviderError("Invalid API key", FatalProviderError.AUTH, status)
    if status == 403:
        return FatalProviderError(f"Access denied: {message}", FatalProviderError.ACCESS_DENIED, status)
    return None


def _retry_after_seconds(resp: Any) -> Optional[float]:
    headers = getattr(resp, "headers", None) or {}
    raw = headers.get("retry-after") or headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def _parse_tool_calls(message: Dict[str, Any]) -> List[Dict[str, Any]]:
    calls = []
    for item in message.get("tool_calls") or []:
        if not isinstance(item, dict):
            continue
        function = item.get("function") or {}
        raw_args = function.get("arguments") or "{}"
        try:
            arguments = json.loads(raw_args) if isinstance(raw_args, str) else dict(raw_args)
        except (TypeError, ValueError):
            arguments = {}
        calls.append({"id": item.get("id"), "name": function.get("name"), "arguments": arguments})
    return calls


class OpenAIGenerationClient:
    """Chat-completions client for any OpenAI-compatible endpoint.

    Transient statuses are retried with exponential backoff. Billing, auth and
    access failures raise ``FatalProviderError`` immediately.
    """

    def __init__(
        self,
        cfg: Config,
        logger: Optional[logging.Logger] = None,
        system_prompt: str = "",
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.cfg = cfg
        self.logger = logger or logging.getLogger("presence.autonomy")
        self.system_prompt = system_prompt
        self.sleep = sleep
        self.rng = rng or random.Random()

    def generate_sync(self, prompt: str, tools: Optional[List[Dict[str, Any]]] = None) -> GenerationResult:
        if not self.cfg.openai_api_key:
            raise FatalProviderError("OPENAI_API_KEY not set", FatalProviderError.AUTH)

        url = f"{self.cfg.openai_base_url}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self.cfg.openai_api_key}",
            "Content-Type": "application/json",
        }
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": prompt})
        payload: Dict[str, Any] = {
            "model": self.cfg.openai_model,
            "messages": messages,
            "temperature": self.cfg.openai_temperature,
        }
        if tools:
            payload["tools"] = tools

        self.logger.info(
            "LLM request model=%s prompt_chars=%s tools=%s",
            self.cfg.openai_model,
            len(prompt),
            len(tools or []),
        )
        max_retries = max(0, self.cfg.openai_max_retries)
        for attempt in range(max_retries + 1):
            try:
                resp = requests.post(url, headers=headers, data=json.dumps(payload), timeout=60)
            except (requests_exceptions.Timeout, requests_exceptions.ConnectionError) as e:
                if attempt < max_retries:
                    backoff = calculate_backoff(attempt, rng=self.rng)
                    self.logger.warning(
                        "LLM transport error attempt=%s/%s backoff=%.1fs error=%s", attempt + 1, max_retries, backoff, e
                    )
                    self.sleep(backoff)
                    continue
                raise TransientCollaboratorError(f"LLM request failed after {attempt + 1} attempts: {e}") from e

            if resp.status_code < 400:
                return self._parse(resp.json())

            message = _error_message(resp)
            if resp.status_code in RETRYABLE_STATUSES and attempt < max_retries:
                backoff = calculate_backoff(attempt, _retry_after_seconds(resp), rng=self.rng)
                self.logger.warning(
                    "LLM transient error status=%s attempt=%s/%s backoff=%.1fs error=%s",
                    resp.status_code,
                    attempt + 1,
                    max_retries,
                    backoff,
                    message,
                )
                self.sleep(backoff)
                continue

            fatal = classify_fatal(resp.status_code, message)
            if fatal is not None:
                self.logger.error("LLM fatal error status=%s code=%s", resp.status_code, fatal.code)
                raise fatal
            if resp.status_code in RETRYABLE_STATUSES:
                raise TransientCollaboratorError(
                    f"LLM error {resp.status_code}: {message}. Exhausted {max_retries} retries."
                )
            raise RuntimeError(f"LLM error {resp.status_code}: {message}")
        raise TransientCollaboratorError("LLM request exhausted retries")

    def _parse(self, data: Dict[str, Any]) -> GenerationResult:
        choices = data.get("choices") or []
        if not choices:
            raise RuntimeError("LLM response contained no choices")
        choice = choices[0] or {}
        message = choice.get("message") or {}
        text = normalize_str(message.get("content")).strip()
        usage = data.get("usage") or {}
        self.logger.info(
            "LLM response prompt_tokens=%s completion_tokens=%s finish_reason=%s",
            usage.get("prompt_tokens"),
            usage.get("completion_tokens"),
            choice.get("finish_reason"),
        )
        return GenerationResult(
            text=text,
            tool_calls=_parse_tool_calls(message),
            stop_reason=normalize_str(choice.get("finish_reason") or "stop"),
        )

    async def generate(self, prompt: str, tools: Optional[List[Dict[str, Any]]] = None) -> GenerationResult:
        return await asyncio.to_thread(self.generate_sync, prompt, tools)
