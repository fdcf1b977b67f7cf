"""Parallel explorers: run prompt variants concurrently and keep the best.

Each variant is sent to the agent on its own lane of ``parallel_map``.
Failed variants are recorded with a zero score instead of aborting the
run, the winner is the top scoring non-failed candidate and an optional
polish pass asks the agent to finalize the winner's output.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Any, Callable, List, Optional

from refinery.core.concurrency import CancelToken, parallel_map, pick_best_by
from refinery.core.errors import NoWinnerError, SessionCancelled
from refinery.integrations.agent_client import response_text

logger = logging.getLogger("refinery.explorers")

POLISH_INSTRUCTION = "Polish and finalize the following result. Ensure correctness and quality:"


@dataclass(frozen=True)
class Variant:
    name: str
    prompt: str
    agent_profile: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Candidate:
    name: str
    prompt: str
    agent_profile: dict
    response: Any = None
    score: float = 0.0
    duration: float = 0.0
    failed: bool = False
    error: str = ""

    @property
    def text(self) -> str:
        return response_text(self.response)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "prompt": self.prompt,
            "agent_profile": self.agent_profile,
            "response": self.response,
            "score": self.score,
            "duration": round(self.duration, 3),
            "failed": self.failed,
            "error": self.error,
        }


@dataclass
class ExplorationResult:
    candidates: List[Candidate]
    winner: Optional[Candidate] = None
    polished: Any = None

    def require_winner(self) -> Candidate:
        if self.winner is None:
            raise NoWinnerError(f"all {len(self.candidates)} exploration variants failed")
        return self.winner

    @property
    def final_text(self) -> str:
        """Polished text when available, otherwise the winner's text."""
        if self.polished is not None:
            return response_text(self.polished)
        return self.require_winner().text

    def to_dict(self) -> dict:
        return {
            "candidates": [c.to_dict() for c in self.candidates],
            "winner": self.winner.to_dict() if self.winner else None,
            "polished": self.polished,
        }


def explore(
    variants: List[Variant],
    call_agent: Callable[..., Any],
    score_fn: Callable[[Any], float],
    concurrency: int = 3,
    polish_profile: Optional[dict] = None,
    cancel_token: Optional[CancelToken] = None,
) -> ExplorationResult:
    logger.info("Exploring %d variants (concurrency=%d)", len(variants), concurrency)

    def _run_variant(variant: Variant) -> Candidate:
        started = time.monotonic()
        try:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            response = call_agent(variant.prompt, variant.agent_profile)
            score = float(score_fn(response))
        except SessionCancelled:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("Variant %s failed: %s", variant.name, exc)
            return Candidate(
                name=variant.name,
                prompt=variant.prompt,
                agent_profile=variant.agent_profile,
                score=0.0,
                duration=time.monotonic() - started,
                failed=True,
                error=str(exc) or exc.__class__.__name__,
            )
        duration = time.monotonic() - started
        logger.info("Variant %s: score=%.3f duration=%.2fs", variant.name, score, duration)
        return Candidate(
            name=variant.name,
            prompt=variant.prompt,
            agent_profile=variant.agent_profile,
            response=response,
            score=score,
            duration=duration,
        )

    outcomes = parallel_map(variants, _run_variant, concurrency)
    # A cancelled lane surfaces as a failure descriptor from parallel_map.
    if cancel_token is not None:
        cancel_token.raise_if_cancelled()
    candidates: List[Candidate] = []
    for outcome in outcomes:
        if isinstance(outcome, Candidate):
            candidates.append(outcome)
            continue
        item = outcome.get("item")
        candidates.append(Candidate(
            name=getattr(item, "name", "unknown"),
            prompt=getattr(item, "prompt", ""),
            agent_profile=getattr(item, "agent_profile", {}),
            failed=True,
            error=str(outcome.get("error", "")),
        ))

    winner = pick_best_by([c for c in candidates if not c.failed], lambda c: c.score)
    if winner is None:
        logger.warning("No winner: all %d variants failed", len(candidates))
        return ExplorationResult(candidates=candidates)
    logger.info("Winner: %s with score %.3f", winner.name, winner.score)

    polished: Any = None
    if polish_profile:
        try:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            polished = call_agent(f"{POLISH_INSTRUCTION}\n\n{winner.text}", polish_profile)
        except SessionCancelled:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("Polish failed: %s", exc)
            polished = None
    return ExplorationResult(candidates=candidates, winner=winner, polished=polished)
