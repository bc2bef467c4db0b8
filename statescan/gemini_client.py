"""Gemini client with a safe no-op fallback.

A missing GEMINI_API_KEY never raises here: callers get a result whose status
says why nothing was generated and decide how to report it.
"""
from __future__ import annotations

import hashlib
import json
import os
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from . import config
from .usage import UsageTracker

GEMINI_API_URL_TEMPLATE = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
DEFAULT_TIMEOUT_SECONDS = 60
# Tried in order after the configured model when a call fails in transport.
DEFAULT_MODEL_CHAIN = [
    "gemini-2.0-flash-lite",
    "gemini-2.0-flash",
    "gemini-2.5-flash",
]

Validator = Callable[[Dict[str, Any]], None]

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```", flags=re.IGNORECASE)


@dataclass(frozen=True)
class GeminiCallResult:
    status: str
    raw_text: str
    data: Optional[Dict[str, Any]]
    model: str
    prompt_name: str
    prompt_hash: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


@dataclass(frozen=True)
class _Reply:
    text: str
    status: Optional[str] = None
    detail: Optional[str] = None
    # Transport failures and 5xx move on to the next model in the chain.
    fall_through: bool = False


def hash_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _extract_json_candidate(text: str) -> str:
    """Pull the JSON object out of model output that may carry fences or prose."""
    stripped = text.strip()
    fenced = _FENCED_BLOCK.search(stripped)
    if fenced:
        return fenced.group(1).strip()
    if stripped.startswith("{"):
        return stripped
    start, end = stripped.find("{"), stripped.rfind("}")
    if start != -1 and end > start:
        return stripped[start : end + 1]
    return stripped


def _parse_json_loose(text: str) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    try:
        parsed = json.loads(_extract_json_candidate(text))
    except json.JSONDecodeError as exc:
        return None, f"json_decode_error: {exc}"
    if not isinstance(parsed, dict):
        return None, f"json_not_object: {type(parsed).__name__}"
    return parsed, None


def _candidate_text(data: Dict[str, Any]) -> _Reply:
    dumped = json.dumps(data, ensure_ascii=False)
    candidates = data.get("candidates") or []
    if not candidates:
        return _Reply(dumped, "invalid_json", "no_candidates")
    parts = (candidates[0].get("content") or {}).get("parts") or []
    if not parts:
        return _Reply(dumped, "invalid_json", "no_parts")
    text = parts[0].get("text")
    if not isinstance(text, str):
        return _Reply(dumped, "invalid_json", "missing_text_part")
    return _Reply(text)


class BaseGeminiClient:
    def generate_json(
        self,
        prompt_name: str,
        prompt_text: str,
        prompt_hash: str,
        validator: Optional[Validator] = None,
    ) -> GeminiCallResult:
        raise NotImplementedError


class NoopGeminiClient(BaseGeminiClient):
    """Stands in when no API key is configured."""

    def __init__(self, reason: str = "skipped_no_api_key") -> None:
        self.reason = reason

    def generate_json(
        self,
        prompt_name: str,
        prompt_text: str,
        prompt_hash: str,
        validator: Optional[Validator] = None,
    ) -> GeminiCallResult:
        return GeminiCallResult(self.reason, "", None, "noop", prompt_name, prompt_hash)


class GeminiClient(BaseGeminiClient):
    def __init__(
        self,
        api_key: str,
        model: Optional[str] = None,
        timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
        usage: Optional[UsageTracker] = None,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model or config.GEMINI_CATEGORIZE_MODEL
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.usage = usage
        self.temperature = config.GEMINI_CATEGORIZE_TEMPERATURE if temperature is None else temperature
        self.max_output_tokens = (
            config.GEMINI_CATEGORIZE_MAX_OUTPUT_TOKENS if max_output_tokens is None else max_output_tokens
        )

    @classmethod
    def from_env(cls, usage: Optional[UsageTracker] = None) -> BaseGeminiClient:
        api_key = os.environ.get("GEMINI_API_KEY")
        if not api_key:
            return NoopGeminiClient("skipped_no_api_key")
        model = os.environ.get("GEMINI_MODEL") or config.GEMINI_CATEGORIZE_MODEL
        return cls(api_key=api_key, model=model, usage=usage)

    def _redact(self, text: Optional[str]) -> Optional[str]:
        if not text:
            return text
        text = text.replace(self.api_key, "[REDACTED]")
        return re.sub(r"(key=)[^&\s()]+", r"\1[REDACTED]", text)

    def _model_chain(self) -> List[str]:
        chain = [self.model.strip()] if (self.model or "").strip() else []
        chain.extend(model for model in DEFAULT_MODEL_CHAIN if model not in chain)
        return chain

    def _build_payload(self, prompt_text: str) -> Dict[str, Any]:
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt_text}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_output_tokens,
                "responseMimeType": "application/json",
            },
        }

    def _call_api(self, prompt_text: str, model: str) -> _Reply:
        try:
            resp = self.session.post(
                GEMINI_API_URL_TEMPLATE.format(model=model),
                params={"key": self.api_key},
                json=self._build_payload(prompt_text),
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            return _Reply("", "request_error", f"request_error: {exc}", fall_through=True)
        # Any answered request is billable, whatever its status.
        if self.usage is not None:
            self.usage.track_gemini()
        if resp.status_code >= 400:
            return _Reply(
                resp.text,
                "http_error",
                f"http_error: {resp.status_code}",
                fall_through=resp.status_code >= 500,
            )
        try:
            data = resp.json()
        except ValueError as exc:
            return _Reply(resp.text, "invalid_json", f"non_json_response: {exc}")
        return _candidate_text(data)

    def generate_json(
        self,
        prompt_name: str,
        prompt_text: str,
        prompt_hash: str,
        validator: Optional[Validator] = None,
    ) -> GeminiCallResult:
        def result(
            status: str,
            reply: _Reply,
            model: str,
            data: Optional[Dict[str, Any]] = None,
        ) -> GeminiCallResult:
            return GeminiCallResult(
                status=status,
                raw_text=self._redact(reply.text) or "",
                data=data,
                model=model,
                prompt_name=prompt_name,
                prompt_hash=prompt_hash,
                error=self._redact(reply.detail),
            )

        reply = _Reply("")
        model = self.model
        for model in self._model_chain():
            reply = self._call_api(prompt_text, model)
            if not reply.fall_through:
                break
        if reply.status:
            return result(reply.status, reply, model)

        parsed, parse_error = _parse_json_loose(self._redact(reply.text) or "")
        if parse_error or parsed is None:
            return result("invalid_json", _Reply(reply.text, detail=parse_error), model)
        if validator is not None:
            try:
                validator(parsed)
            except (ValueError, TypeError, KeyError) as exc:
                return result("invalid_json", _Reply(reply.text, detail=f"validation_error: {exc}"), model)
        return result("ok", reply, model, data=parsed)
