"""Reflect & critic: generate, critique, then synthesize a corrected answer.

A fixed three-call pipeline with no scoring, retries or isolation; any
failing call propagates to the caller.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable, Optional

from refinery.integrations.agent_client import response_text

logger = logging.getLogger("refinery.reflect")

CREATOR_PROFILE = {"model": "creative", "temperature": 0.8}
CRITIC_PROFILE = {"model": "critic", "temperature": 0.3}
POLISHER_PROFILE = {"model": "polish", "temperature": 0.4}

CRITIC_CHECKLIST = (
    "Correctness and bugs",
    "Edge cases and error handling",
    "Performance issues",
    "Security concerns",
    "Code quality",
)


@dataclass
class ReflectionResult:
    creator: Any
    critic: Any
    polished: Any
    metadata: dict

    @property
    def text(self) -> str:
        return response_text(self.polished)

    def to_dict(self) -> dict:
        return {
            "creator": self.creator,
            "critic": self.critic,
            "polished": self.polished,
            "metadata": dict(self.metadata),
        }


def _profile(base: Optional[dict], temperature: float, fallback: dict) -> dict:
    if not base:
        return dict(fallback)
    return {**base, "temperature": temperature}


def reflect_critic(
    base_prompt: str,
    call_agent: Callable[..., Any],
    creator_config: Optional[dict] = None,
    critic_config: Optional[dict] = None,
    polisher_config: Optional[dict] = None,
) -> ReflectionResult:
    logger.info("Reflect/critic: generating solution")
    creator = call_agent(
        f"{base_prompt}\n\nGenerate a complete, working solution. Be thorough and innovative.",
        _profile(creator_config, 0.8, CREATOR_PROFILE),
    )
    creator_text = response_text(creator)

    logger.info("Reflect/critic: reviewing solution")
    checklist = "\n".join(f"- {item}" for item in CRITIC_CHECKLIST)
    critic = call_agent(
        f"Review the following solution for:\n{checklist}\n\n"
        f"Provide a numbered list of specific issues.\n\nSolution:\n\n{creator_text}",
        _profile(critic_config, 0.3, CRITIC_PROFILE),
    )
    critic_text = response_text(critic)

    logger.info("Reflect/critic: synthesizing final solution")
    combined = (
        f"Original solution:\n\n{creator_text}\n\n"
        f"Critical analysis identified these issues:\n{critic_text}\n\n"
        "Please produce a corrected, polished final solution that addresses all identified issues."
    )
    polished = call_agent(combined, polisher_config or dict(POLISHER_PROFILE))

    return ReflectionResult(
        creator=creator,
        critic=critic,
        polished=polished,
        metadata={
            "creatorLength": len(creator_text),
            "criticLength": len(critic_text),
            "polishedLength": len(response_text(polished)),
        },
    )
