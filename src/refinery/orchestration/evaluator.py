"""Quality evaluation and scoring.

Scores are floats in ``[0, 1]``.  Correctness comes from an external
quick-test webhook when one is configured, otherwise from a text
heuristic; performance and style are fixed placeholders until a real
checker is wired in.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
import re
from typing import Any, Dict, Mapping, Optional

import httpx

logger = logging.getLogger("refinery.evaluator")

_DEFAULT_WEIGHTS = {"correctness": 0.4, "performance": 0.3, "style": 0.3}

_PATTERNS = (
    re.compile(r"\b(function|def|const|let|var)\s+\w+"),
    re.compile(r"\b(class|interface)\s+\w+"),
    re.compile(r"//|/\*|#"),
    re.compile(r"\b(try|catch|except|error|Error)\b"),
)


@dataclass
class Evaluation:
    total_score: float
    metrics: Dict[str, float] = field(default_factory=dict)
    weights: Dict[str, float] = field(default_factory=dict)
    passed: bool = False

    def to_dict(self) -> dict:
        return {
            "totalScore": self.total_score,
            "metrics": dict(self.metrics),
            "weights": dict(self.weights),
            "passed": self.passed,
        }


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def heuristic_score(text: Any) -> float:
    """Cheap structural score used when no test webhook is available."""
    if not text or not isinstance(text, str):
        return 0.0
    score = 0.5
    if len(text) > 50:
        score += 0.1
    if len(text) > 200:
        score += 0.1
    for pattern in _PATTERNS:
        if pattern.search(text):
            score += 0.05
    return _clamp(score)


def score_via_webhook(
    text: str,
    webhook_url: Optional[str],
    secret: Optional[str] = None,
    timeout: float = 5.0,
    transport: Optional[httpx.BaseTransport] = None,
) -> float:
    """Ask the quick-test webhook for a score, falling back to the heuristic."""
    if not webhook_url:
        return heuristic_score(text)
    headers = {"Content-Type": "application/json"}
    if secret:
        headers["x-score-secret"] = secret
    try:
        with httpx.Client(timeout=timeout, transport=transport) as client:
            resp = client.post(webhook_url, json={"text": text, "type": "quick-score"}, headers=headers)
        if resp.status_code != 200:
            logger.warning("Score webhook failed with status %s", resp.status_code)
            return heuristic_score(text)
        result = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("Score webhook error: %s", exc)
        return heuristic_score(text)

    if isinstance(result, dict):
        for key in ("passRate", "score"):
            value = result.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return _clamp(value)
        if isinstance(result.get("passed"), bool):
            return 1.0 if result["passed"] else 0.0
    return heuristic_score(text)


def evaluate_multi_metric(
    text: str,
    config: Mapping[str, Any],
    webhook_url: Optional[str] = None,
    secret: Optional[str] = None,
    transport: Optional[httpx.BaseTransport] = None,
) -> Evaluation:
    testing = config.get("testing") or {}
    quality = config.get("quality") or {}

    if testing.get("enableQuickTests") and webhook_url:
        correctness = score_via_webhook(
            text,
            webhook_url,
            secret,
            timeout=float(testing.get("quickTestTimeout", 5.0)),
            transport=transport,
        )
    else:
        correctness = heuristic_score(text)

    metrics = {"correctness": correctness, "performance": 0.7, "style": 0.7}
    weights = dict(quality.get("scoreWeights") or _DEFAULT_WEIGHTS)
    total = sum(metrics[name] * float(weights.get(name, 0.0)) for name in metrics)
    return Evaluation(
        total_score=total,
        metrics=metrics,
        weights=weights,
        passed=total >= float(quality.get("passThreshold", 0.85)),
    )


class Evaluator:
    """Callable ``(text, config) -> Evaluation`` bound to webhook settings."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        secret: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.secret = secret
        self._transport = transport

    def __call__(self, text: str, config: Mapping[str, Any]) -> Evaluation:
        return evaluate_multi_metric(text, config, self.webhook_url, self.secret, self._transport)
