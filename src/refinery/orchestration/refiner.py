"""Chain refiner: iterative improvement with evaluation feedback.

Each attempt sends the current prompt to the agent, evaluates the
response and, unless the quality threshold is met, builds the next prompt
from the score, feedback text and the previous output.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Callable, List, Mapping, Optional

from refinery.core.concurrency import CancelToken, pick_best_by
from refinery.core.errors import SessionCancelled
from refinery.integrations.agent_client import response_text

logger = logging.getLogger("refinery.refiner")

# Sub-metric cutoffs and the feedback clause emitted when a metric is below it.
METRIC_FEEDBACK = (
    ("correctness", 0.8, "Improve correctness and handle edge cases"),
    ("performance", 0.7, "Optimize performance"),
    ("style", 0.7, "Improve code style and readability"),
)


@dataclass(frozen=True)
class RefinementAttempt:
    attempt: int
    response: Any = None
    score: float = 0.0
    evaluation: Optional[dict] = None
    timestamp: str = ""
    failed: bool = False
    error: str = ""

    def to_dict(self) -> dict:
        return {
            "attempt": self.attempt,
            "response": self.response,
            "score": self.score,
            "evaluation": self.evaluation,
            "timestamp": self.timestamp,
            "failed": self.failed,
            "error": self.error,
        }


@dataclass
class RefinementResult:
    ok: bool
    chain: List[RefinementAttempt] = field(default_factory=list)
    best: Any = None
    attempts: int = 0

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "chain": [a.to_dict() for a in self.chain],
            "best": self.best,
            "attempts": self.attempts,
        }


def score_of(evaluation: Any) -> float:
    if isinstance(evaluation, (int, float)) and not isinstance(evaluation, bool):
        return float(evaluation)
    if isinstance(evaluation, Mapping):
        return float(evaluation.get("totalScore", evaluation.get("total_score", 0.0)))
    return float(getattr(evaluation, "total_score"))


def _structured(evaluation: Any) -> Optional[dict]:
    if isinstance(evaluation, (int, float)):
        return None
    if isinstance(evaluation, Mapping):
        return dict(evaluation)
    to_dict = getattr(evaluation, "to_dict", None)
    return to_dict() if callable(to_dict) else None


def generate_feedback(evaluation: Any, score: float) -> str:
    structured = _structured(evaluation)
    metrics = structured.get("metrics") if structured else None
    if isinstance(metrics, Mapping):
        issues = [
            message
            for name, cutoff, message in METRIC_FEEDBACK
            if name in metrics and float(metrics[name]) < cutoff
        ]
        return ". ".join(issues) + "." if issues else "General improvements needed."

    if score < 0.5:
        return "Major improvements needed. Focus on correctness and completeness."
    if score < 0.7:
        return "Moderate improvements needed. Address correctness and quality issues."
    return "Minor improvements needed. Polish and refine."


def build_next_prompt(score: float, feedback: str, previous: Any) -> str:
    return (
        f"Previous attempt scored {score:.2f}. {feedback}\n\n"
        f"Previous output:\n\n{response_text(previous)}\n\n"
        "Return only the improved version."
    )


def refine(
    initial_prompt: str,
    call_agent: Callable[..., Any],
    evaluate: Callable[[Any], Any],
    max_attempts: int = 3,
    quality_threshold: float = 0.9,
    agent_profile: Optional[dict] = None,
    cancel_token: Optional[CancelToken] = None,
    on_attempt: Optional[Callable[[RefinementAttempt], None]] = None,
) -> RefinementResult:
    """Refine until the score reaches *quality_threshold* or attempts run out.

    A failing attempt is recorded (``failed=True``, score 0) and the loop
    moves on with the same prompt.  ``SessionCancelled`` is never swallowed.
    """
    logger.info("Refining with max %d attempts (threshold=%.2f)", max_attempts, quality_threshold)
    prompt = initial_prompt
    chain: List[RefinementAttempt] = []

    for attempt in range(1, max_attempts + 1):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        try:
            resp = call_agent(prompt, agent_profile, attempt)
            evaluation = evaluate(resp)
            score = score_of(evaluation)
        except SessionCancelled:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("Refinement attempt %d failed: %s", attempt, exc)
            record = RefinementAttempt(
                attempt=attempt,
                score=0.0,
                timestamp=datetime.now(timezone.utc).isoformat(),
                failed=True,
                error=str(exc) or exc.__class__.__name__,
            )
            chain.append(record)
            if on_attempt:
                on_attempt(record)
            continue

        record = RefinementAttempt(
            attempt=attempt,
            response=resp,
            score=score,
            evaluation=_structured(evaluation),
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        chain.append(record)
        if on_attempt:
            on_attempt(record)
        logger.info("Refinement attempt %d score: %.3f", attempt, score)

        if score >= quality_threshold:
            return RefinementResult(ok=True, chain=chain, best=resp, attempts=attempt)

        prompt = build_next_prompt(score, generate_feedback(evaluation, score), resp)

    best = pick_best_by([a for a in chain if not a.failed], lambda a: a.score)
    logger.info("Max attempts reached; best score %s", f"{best.score:.3f}" if best else "n/a")
    return RefinementResult(
        ok=False,
        chain=chain,
        best=best.response if best else None,
        attempts=max_attempts,
    )
