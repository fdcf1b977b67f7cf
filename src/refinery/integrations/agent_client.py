"""HTTP client for the "fast agent" service that produces model output.

The orchestrator only needs ``call(prompt, agent_config, attempt)``; this
module provides the HTTP implementation plus a caching wrapper that stores
successful responses in the key-value store.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional

import httpx

from refinery.core.errors import RefineryError

logger = logging.getLogger("refinery.agent_client")

AgentCall = Callable[..., Any]


class AgentError(RefineryError):
    pass


def response_text(response: Any) -> str:
    """Extract the text payload from an agent response."""
    if isinstance(response, str):
        return response
    if isinstance(response, dict):
        text = response.get("text")
        if isinstance(text, str) and text:
            return text
        return json.dumps(response, default=str)
    if response is None:
        return ""
    return str(response)


def hash_string(value: str) -> str:
    """FNV-1a (32-bit) hash rendered in base 36."""
    h = 2166136261
    for ch in value:
        h ^= ord(ch)
        h = (h * 16777619) & 0xFFFFFFFF
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if h == 0:
        return "0"
    out = []
    while h:
        h, rem = divmod(h, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


class FastAgentClient:
    """POSTs ``{prompt, agentConfig, meta: {attempt}}`` to the agent endpoint."""

    def __init__(
        self,
        url: Optional[str],
        api_key: Optional[str] = None,
        timeout: float = 120.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def __call__(self, prompt: str, agent_config: Optional[dict] = None, attempt: int = 0) -> Any:
        if not self.url:
            raise AgentError("Agent URL not configured (set REFINERY_AGENT_URL)")
        payload = {
            "prompt": prompt,
            "agentConfig": agent_config or {},
            "meta": {"attempt": attempt},
        }
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                resp = client.post(self.url, json=payload, headers=self._headers())
        except httpx.HTTPError as exc:
            raise AgentError(f"Agent request failed: {exc}") from exc
        if resp.status_code < 200 or resp.status_code >= 300:
            logger.error("Agent responded with %s: %s", resp.status_code, resp.text[:500])
            raise AgentError(f"Agent responded with {resp.status_code}")
        content_type = resp.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                return resp.json()
            except ValueError as exc:
                raise AgentError("Agent returned malformed JSON") from exc
        return {"text": resp.text}


class CachedAgent:
    """Wraps an agent call and caches successful responses in *store*."""

    def __init__(self, agent: AgentCall, store: Any, ttl: float = 86400) -> None:
        self.agent = agent
        self.store = store
        self.ttl = ttl

    @staticmethod
    def cache_key(prompt: str, agent_config: Optional[dict]) -> str:
        profile = json.dumps(agent_config or {}, sort_keys=True)
        return f"cache:agent:{hash_string(profile + chr(0) + prompt)}"

    def __call__(self, prompt: str, agent_config: Optional[dict] = None, attempt: int = 0) -> Any:
        key = self.cache_key(prompt, agent_config)
        cached = self.store.get(key)
        if cached is not None:
            logger.debug("Agent cache hit %s", key)
            return cached
        response = self.agent(prompt, agent_config, attempt)
        try:
            self.store.put(key, response, ttl=self.ttl)
        except (TypeError, ValueError) as exc:
            logger.debug("Agent response not cacheable: %s", exc)
        return response
