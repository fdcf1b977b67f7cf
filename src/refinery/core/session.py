"""Orchestration sessions: durable state, event log and the run pipeline.

A session moves through an explicit status table::

    pending -> running -> succeeded | failed | needs_review | cancelled

Terminal sessions reject further orchestration writes, and ``cancelled``
is reachable from every other state so a cancel request always lands.
Each session's meta and events live in a lock-guarded ``SessionState``
that persists to the key-value store after every mutation and wakes
stream subscribers whenever something changes.
"""
from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Set, Tuple
import uuid

from refinery.core.concurrency import CancelToken, estimate_tokens, retry_with_backoff
from refinery.core.errors import (
    CallbackRejected,
    InvalidRequest,
    InvalidTransition,
    RefineryError,
    SessionCancelled,
    SessionNotFound,
)
from refinery.core.events import Event, EventLog
from refinery.core.logging_config import log_session_event
from refinery.core.orchestration_config import (
    PLACEHOLDER_MESSAGES,
    SESSION_MODES,
    load_config,
    validate_config,
)
from refinery.core.signing import verify_signature
from refinery.core.store import MemoryStore
from refinery.integrations.agent_client import AgentError, CachedAgent, response_text
from refinery.orchestration.evaluator import Evaluator
from refinery.orchestration.explorers import Variant, explore
from refinery.orchestration.reflect import reflect_critic
from refinery.orchestration.refiner import RefinementAttempt, refine, score_of

logger = logging.getLogger("refinery.session")

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"
STATUS_NEEDS_REVIEW = "needs_review"
STATUS_CANCELLED = "cancelled"

TERMINAL_STATUSES = {STATUS_SUCCEEDED, STATUS_FAILED, STATUS_NEEDS_REVIEW, STATUS_CANCELLED}

_TRANSITIONS: Dict[str, Set[str]] = {
    STATUS_PENDING: {STATUS_RUNNING, STATUS_FAILED, STATUS_CANCELLED},
    STATUS_RUNNING: {STATUS_SUCCEEDED, STATUS_FAILED, STATUS_NEEDS_REVIEW, STATUS_CANCELLED},
    STATUS_SUCCEEDED: {STATUS_CANCELLED},
    STATUS_FAILED: {STATUS_CANCELLED},
    STATUS_NEEDS_REVIEW: {STATUS_CANCELLED},
    STATUS_CANCELLED: set(),
}


def can_transition(current: str, target: str) -> bool:
    return target in _TRANSITIONS.get(current, set())


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _meta_key(session_id: str) -> str:
    return f"session:{session_id}:meta"


def _events_key(session_id: str) -> str:
    return f"session:{session_id}:events"


def public_error(exc: BaseException) -> str:
    """Message safe to store and show to clients; internals stay in the log."""
    if isinstance(exc, RefineryError):
        return f"{exc.__class__.__name__}: {exc}"
    return "Internal error during orchestration"


# ── Data model ───────────────────────────────────────────────

@dataclass
class SessionMeta:
    id: str
    prompt: str
    mode: str
    config: Dict[str, Any]
    status: str = STATUS_PENDING
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    callbacks: List[dict] = field(default_factory=list)   # inbound callback log
    candidates: List[dict] = field(default_factory=list)
    winner: Optional[dict] = None
    polished: Any = None
    final: Optional[dict] = None
    reflection: Optional[dict] = None
    error: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "mode": self.mode,
            "config": self.config,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "callbacks": list(self.callbacks),
            "candidates": list(self.candidates),
            "winner": self.winner,
            "polished": self.polished,
            "final": self.final,
            "reflection": self.reflection,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "SessionMeta":
        return cls(
            id=d["id"],
            prompt=d.get("prompt", ""),
            mode=d.get("mode", "quality"),
            config=d.get("config", {}),
            status=d.get("status", STATUS_PENDING),
            created_at=datetime.fromisoformat(d["created_at"]) if d.get("created_at") else _now(),
            updated_at=datetime.fromisoformat(d["updated_at"]) if d.get("updated_at") else _now(),
            callbacks=d.get("callbacks", []),
            candidates=d.get("candidates", []),
            winner=d.get("winner"),
            polished=d.get("polished"),
            final=d.get("final"),
            reflection=d.get("reflection"),
            error=d.get("error", ""),
        )


class SessionState:
    """Single owner of one session's meta and events."""

    def __init__(self, meta: SessionMeta, store: Any, events: Optional[EventLog] = None) -> None:
        self.meta = meta
        self.events = events or EventLog()
        self.cancel_token = CancelToken()
        self._store = store
        self._lock = threading.RLock()
        self._subscribers: Set[threading.Event] = set()

    @property
    def id(self) -> str:
        return self.meta.id

    @property
    def status(self) -> str:
        with self._lock:
            return self.meta.status

    def _persist_meta(self) -> None:
        self.meta.updated_at = _now()
        self._store.put(_meta_key(self.meta.id), json.loads(json.dumps(self.meta.to_dict(), default=str)))

    def _persist_events(self) -> None:
        self._store.put(_events_key(self.meta.id), self.events.to_list())

    def persist(self) -> None:
        with self._lock:
            self._persist_meta()
            self._persist_events()

    def _notify(self) -> None:
        for wake in list(self._subscribers):
            wake.set()

    def subscribe(self) -> threading.Event:
        wake = threading.Event()
        with self._lock:
            self._subscribers.add(wake)
        return wake

    def unsubscribe(self, wake: threading.Event) -> None:
        with self._lock:
            self._subscribers.discard(wake)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "meta": json.loads(json.dumps(self.meta.to_dict(), default=str)),
                "events": self.events.to_list(),
            }

    def read_since(self, seq: int) -> Tuple[str, List[Event]]:
        """Status and unsent events, read atomically."""
        with self._lock:
            return self.meta.status, self.events.since(seq)

    # ── Writes ────────────────────────────────────────────────

    def push_event(self, level: str, message: str, data: Any = None) -> Event:
        with self._lock:
            event = self.events.append(level, message, data)
            self._persist_events()
            self._notify()
        log_session_event(self.meta.id, event.to_dict())
        return event

    def _set_status(self, target: str) -> None:
        current = self.meta.status
        if not can_transition(current, target):
            raise InvalidTransition(f"session {self.meta.id}: {current} -> {target} not allowed")
        self.meta.status = target
        if target == STATUS_CANCELLED:
            self.cancel_token.cancel()

    def transition(self, target: str, level: str = "info", message: str = "", data: Any = None) -> None:
        """Move to *target* and (optionally) append an event under one lock."""
        with self._lock:
            self._set_status(target)
            self._persist_meta()
            if message:
                self.push_event(level, message, data)
            self._notify()

    def record(self, **fields: Any) -> None:
        """Store orchestration results; rejected once the session is terminal."""
        with self._lock:
            if self.meta.status in TERMINAL_STATUSES:
                raise InvalidTransition(
                    f"session {self.meta.id} is {self.meta.status}; dropping orchestration write"
                )
            for name, value in fields.items():
                setattr(self.meta, name, value)
            self._persist_meta()

    def cancel(self) -> None:
        with self._lock:
            if self.meta.status != STATUS_CANCELLED:
                self._set_status(STATUS_CANCELLED)
                self._persist_meta()
            self.cancel_token.cancel()
            self.push_event("info", "Cancelled by user")

    def fail(self, message: str) -> bool:
        """Mark the session failed unless it already reached a terminal state."""
        with self._lock:
            if self.meta.status in TERMINAL_STATUSES:
                return False
            self.meta.error = message
            self._set_status(STATUS_FAILED)
            self._persist_meta()
            self.push_event("error", message)
            return True

    def add_callback(self, entry: dict) -> None:
        with self._lock:
            self.meta.callbacks.append(entry)
            self._persist_meta()


# ── Manager ──────────────────────────────────────────────────

class SessionManager:
    """Starts, observes and controls orchestration sessions."""

    def __init__(
        self,
        agent: Optional[Callable[..., Any]] = None,
        store: Any = None,
        evaluator: Optional[Callable[[str, Mapping[str, Any]], Any]] = None,
        callback_secret: Optional[str] = None,
        stream_interval: float = 1.0,
        max_idle_sessions: int = 256,
    ) -> None:
        self.agent = agent
        self.store = store if store is not None else MemoryStore()
        self.evaluator = evaluator or Evaluator()
        self.callback_secret = callback_secret
        self.stream_interval = stream_interval
        self.max_idle_sessions = max_idle_sessions
        # Live sessions stay resident; finished ones are kept LRU up to max_idle_sessions
        self._sessions: "OrderedDict[str, SessionState]" = OrderedDict()
        self._threads: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    # ── Lookup ────────────────────────────────────────────────

    def _get(self, session_id: str) -> SessionState:
        with self._lock:
            state = self._sessions.get(session_id)
            if state is not None:
                self._sessions.move_to_end(session_id)
                return state
            raw = self.store.get(_meta_key(session_id))
            if raw is None:
                raise SessionNotFound(f"unknown session {session_id}")
            events = EventLog.from_list(self.store.get(_events_key(session_id)) or [])
            state = SessionState(SessionMeta.from_dict(raw), self.store, events)
            self._remember(state)
        # Loaded from the store with no live thread in this process.
        if state.status in (STATUS_PENDING, STATUS_RUNNING):
            logger.warning("Session %s was interrupted before completion", session_id)
            state.fail("Session interrupted before completion")
        return state

    def _remember(self, state: SessionState) -> None:
        """Track *state* and evict the oldest finished sessions over the cap.

        Caller holds ``self._lock``.  Evicted sessions reload from the store.
        """
        self._sessions[state.id] = state
        self._sessions.move_to_end(state.id)
        idle = [sid for sid, s in self._sessions.items() if s.status in TERMINAL_STATUSES]
        for sid in idle[: max(0, len(idle) - self.max_idle_sessions)]:
            del self._sessions[sid]

    # ── Operations ────────────────────────────────────────────

    def start(self, prompt: Any, mode: Optional[str] = None, options: Any = None) -> str:
        """Create a session and run its orchestration on a background thread."""
        if not isinstance(prompt, str) or not prompt.strip():
            raise InvalidRequest("prompt must be a non-empty string")
        if options is not None and not isinstance(options, Mapping):
            raise InvalidRequest("options must be an object")
        config = load_config(self.store, options)
        validate_config(config)
        mode = mode or config["orchestration"].get("mode") or "quality"
        if mode not in SESSION_MODES:
            raise InvalidRequest(f"unknown mode {mode!r}; expected one of {sorted(SESSION_MODES)}")
        if mode == "reflect" and not config["orchestration"].get("enableReflectCritic", True):
            raise InvalidRequest("reflect mode is disabled by configuration")

        session_id = str(uuid.uuid4())
        state = SessionState(
            SessionMeta(id=session_id, prompt=prompt, mode=mode, config=config),
            self.store,
        )
        with state._lock:
            state._set_status(STATUS_RUNNING)
            state.persist()

        thread = threading.Thread(
            target=self._run,
            args=(state,),
            daemon=True,
            name=f"session-{session_id[:8]}",
        )
        with self._lock:
            self._remember(state)
            self._threads[session_id] = thread
        logger.info("Session %s started (mode=%s)", session_id, mode)
        thread.start()
        return session_id

    def status(self, session_id: str) -> dict:
        return self._get(session_id).snapshot()

    def cancel(self, session_id: str) -> dict:
        state = self._get(session_id)
        state.cancel()
        logger.info("Session %s cancelled", session_id)
        return state.snapshot()["meta"]

    def callback(
        self,
        session_id: str,
        raw_body: bytes,
        signature: Optional[str],
        source: str = "webhook",
    ) -> dict:
        state = self._get(session_id)
        if not self.callback_secret:
            raise CallbackRejected("callback secret not configured")
        if not verify_signature(raw_body, signature, self.callback_secret):
            raise CallbackRejected("invalid signature")
        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise InvalidRequest("callback body must be JSON") from exc

        entry = {"from": source, "time": _now().isoformat(), "payload": payload}
        state.add_callback(entry)
        state.push_event("info", "Callback received", payload)
        return entry

    def stream(self, session_id: str, interval: Optional[float] = None) -> Iterator[dict]:
        """Yield ``event``/``placeholder`` frames, then one ``complete`` frame.

        Wakes on every state change and at least once per *interval*; a
        placeholder is emitted once per interval while the session runs.
        """
        state = self._get(session_id)
        tick = self.stream_interval if interval is None else interval
        wake = state.subscribe()
        sent = 0
        placeholder_index = 0
        next_tick = time.monotonic()
        try:
            while True:
                wake.clear()
                status, events = state.read_since(sent)
                for event in events:
                    yield {"type": "event", **event.to_dict()}
                    sent = event.seq + 1
                if status != STATUS_RUNNING:
                    yield {"type": "complete", "status": status}
                    return
                now = time.monotonic()
                if now >= next_tick:
                    message = PLACEHOLDER_MESSAGES[placeholder_index % len(PLACEHOLDER_MESSAGES)]
                    yield {"type": "placeholder", "message": message}
                    placeholder_index += 1
                    next_tick = now + tick
                wake.wait(max(0.0, next_tick - time.monotonic()))
        finally:
            state.unsubscribe(wake)

    def wait(self, session_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the session's orchestration thread exits."""
        with self._lock:
            thread = self._threads.get(session_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    # ── Pipeline ──────────────────────────────────────────────

    def _run(self, state: SessionState) -> None:
        try:
            self.orchestrate(state)
        except SessionCancelled:
            state.push_event("info", "Orchestration stopped: session cancelled")
        except Exception as exc:  # noqa: BLE001
            if state.status in TERMINAL_STATUSES:
                logger.info("Session %s: orchestration stopped (%s)", state.id, exc)
                state.push_event("info", f"Orchestration stopped: session is {state.status}")
                return
            logger.exception("Session %s orchestration failed", state.id)
            state.fail(public_error(exc))
        finally:
            with self._lock:
                self._threads.pop(state.id, None)
                if state.id in self._sessions:
                    self._remember(state)

    def _agent_caller(
        self,
        config: Mapping[str, Any],
        token: CancelToken,
        max_attempts: Optional[int] = None,
    ) -> Callable[..., Any]:
        """Agent call bound to *token*, the response cache and the retry policy.

        *max_attempts* overrides ``orchestration.agentRetries``.
        """
        if self.agent is None:
            raise AgentError("No agent configured")
        agent: Callable[..., Any] = self.agent
        caching = config.get("caching") or {}
        if caching.get("enabled"):
            agent = CachedAgent(agent, self.store, ttl=float(caching.get("ttl", 86400)))
        orch = config["orchestration"]
        attempts = max_attempts if max_attempts is not None else int(orch.get("agentRetries", 2))
        base_delay = float(orch.get("retryBaseDelay", 1.0))

        def call_agent(prompt: str, agent_profile: Optional[dict] = None, attempt: int = 0) -> Any:
            token.raise_if_cancelled()
            return retry_with_backoff(
                lambda: agent(prompt, agent_profile, attempt),
                max_attempts=attempts,
                base_delay=base_delay,
                cancel_token=token,
            )

        return call_agent

    def orchestrate(self, state: SessionState) -> None:
        meta = state.meta
        config = meta.config
        token = state.cancel_token
        orch = config["orchestration"]
        agents = config.get("agents") or {}

        state.push_event("info", "Starting orchestration")
        budget = int((config.get("budget") or {}).get("maxTokensPerRequest", 0) or 0)
        tokens = estimate_tokens(meta.prompt)
        if budget and tokens > budget:
            state.push_event("warning", f"Prompt is ~{tokens} tokens, above the {budget} token budget")

        call_agent = self._agent_caller(config, token)

        def evaluate(response: Any) -> Any:
            return self.evaluator(response_text(response), config)

        def score(response: Any) -> float:
            return score_of(evaluate(response))

        if meta.mode == "reflect":
            token.raise_if_cancelled()
            state.push_event("info", "Running reflect/critic")
            # Each reflect step is a single attempt; failures end the session.
            reflection = reflect_critic(
                meta.prompt,
                self._agent_caller(config, token, max_attempts=1),
                creator_config=agents.get("creative"),
                critic_config=agents.get("critic"),
                polisher_config=agents.get("polish"),
            )
            state.record(reflection=reflection.to_dict(), final={"ok": True, "best": {"text": reflection.text}})
            state.transition(STATUS_SUCCEEDED, "info", "Orchestration complete", {"status": STATUS_SUCCEEDED})
            return

        variants = list(config.get("variants") or [])
        if meta.mode == "fast":
            variants = variants[:2]
        inputs = [
            Variant(
                name=v.get("name", f"variant-{i}"),
                prompt=f"{meta.prompt}\n\n{v.get('modifier', '')}".strip(),
                agent_profile=dict(agents.get(v.get("agentConfig", "draft")) or agents.get("draft") or {}),
            )
            for i, v in enumerate(variants)
        ]

        # Phase 1: parallel exploration
        token.raise_if_cancelled()
        state.push_event("info", "Exploring parallel variants", {"variants": [v.name for v in inputs]})
        exploration = explore(
            inputs,
            call_agent,
            score,
            concurrency=int(orch.get("parallelConcurrency", 3)),
            polish_profile=agents.get("polish"),
            cancel_token=token,
        )
        state.record(**{
            "candidates": [c.to_dict() for c in exploration.candidates],
            "winner": exploration.winner.to_dict() if exploration.winner else None,
            "polished": exploration.polished,
        })
        winner = exploration.require_winner()
        state.push_event("info", f"Winner selected: {winner.name}", {"score": winner.score})

        # Phase 2: iterative refinement, only below the quality threshold
        token.raise_if_cancelled()
        text = exploration.final_text
        polished_score = score({"text": text})
        threshold = float(config["quality"]["threshold"])

        if polished_score < threshold:
            state.push_event("info", f"Score {polished_score:.3f} below threshold, refining...")

            def _on_attempt(record: RefinementAttempt) -> None:
                if record.failed:
                    state.push_event("warning", f"Refinement attempt {record.attempt} failed", {"error": record.error})
                else:
                    state.push_event("info", f"Refinement attempt {record.attempt} scored {record.score:.3f}")

            final = refine(
                text,
                call_agent,
                evaluate,
                max_attempts=int(orch.get("maxIterations", 3)),
                quality_threshold=threshold,
                agent_profile=agents.get("draft"),
                cancel_token=token,
                on_attempt=_on_attempt,
            )
            state.record(final=final.to_dict())
            status = STATUS_SUCCEEDED if final.ok else STATUS_NEEDS_REVIEW
        else:
            state.record(final={"ok": True, "best": {"text": text}, "score": polished_score})
            status = STATUS_SUCCEEDED

        state.transition(status, "info", "Orchestration complete", {"status": status})
