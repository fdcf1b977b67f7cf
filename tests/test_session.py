"""Tests for orchestration sessions (session.py)."""
from __future__ import annotations

import json
import threading

import pytest

from refinery.core.errors import (
    CallbackRejected,
    InvalidRequest,
    InvalidTransition,
    SessionNotFound,
)
from refinery.core.orchestration_config import PLACEHOLDER_MESSAGES
from refinery.core.session import (
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_NEEDS_REVIEW,
    STATUS_RUNNING,
    STATUS_SUCCEEDED,
    SessionManager,
    SessionMeta,
    SessionState,
    can_transition,
)
from refinery.core.signing import sign_body
from refinery.integrations.agent_client import AgentError
from refinery.core.store import JsonFileStore, MemoryStore
from refinery.orchestration.explorers import POLISH_INSTRUCTION

SECRET = "cb-secret"

# No retries, no backoff sleeps, no cross-session caching.
FAST_OPTIONS = {
    "orchestration": {"agentRetries": 1, "retryBaseDelay": 0},
    "caching": {"enabled": False},
}


def _options(**sections):
    merged = {name: dict(values) for name, values in FAST_OPTIONS.items()}
    for name, values in sections.items():
        merged.setdefault(name, {}).update(values)
    return merged


class EchoAgent:
    """Returns the prompt it was given; optionally blocks until *gate* is set."""

    def __init__(self, gate=None, fail=False):
        self.gate = gate
        self.fail = fail
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, prompt, profile=None, attempt=0):
        with self._lock:
            self.calls.append((prompt, profile, attempt))
        if self.gate is not None:
            self.gate.wait(5)
        if self.fail:
            raise RuntimeError("agent unavailable")
        return {"text": f"solution for: {prompt}"}


def constant(score):
    return lambda text, config: {"totalScore": score}


def _manager(agent=None, evaluator=None, **kwargs):
    kwargs.setdefault("store", MemoryStore())
    kwargs.setdefault("stream_interval", 0.02)
    return SessionManager(agent=agent, evaluator=evaluator or constant(0.9), **kwargs)


def _run(manager, prompt="Write a function that reverses a list", mode=None, options=None):
    session_id = manager.start(prompt, mode, options or FAST_OPTIONS)
    assert manager.wait(session_id, 10)
    return manager.status(session_id)


def _messages(snapshot):
    return [e["message"] for e in snapshot["events"]]


# ── Lifecycle ────────────────────────────────────────────────

class TestLifecycle:
    def test_start_returns_id_and_is_running(self):
        gate = threading.Event()
        manager = _manager(EchoAgent(gate=gate))
        session_id = manager.start("x", "fast", FAST_OPTIONS)
        try:
            assert session_id
            assert manager.status(session_id)["meta"]["status"] == STATUS_RUNNING
        finally:
            gate.set()
        assert manager.wait(session_id, 10)
        assert manager.status(session_id)["meta"]["status"] in {STATUS_SUCCEEDED, STATUS_NEEDS_REVIEW, STATUS_FAILED}

    def test_quality_run_without_refinement(self):
        agent = EchoAgent()
        snapshot = _run(_manager(agent))
        meta = snapshot["meta"]

        assert meta["status"] == STATUS_SUCCEEDED
        assert meta["mode"] == "quality"
        assert len(meta["candidates"]) == 4
        assert meta["winner"]["score"] == 0.9
        assert meta["polished"]["text"].startswith(f"solution for: {POLISH_INSTRUCTION}")
        assert meta["final"]["ok"] is True
        assert meta["final"]["best"]["text"] == meta["polished"]["text"]

        messages = _messages(snapshot)
        assert messages[0] == "Starting orchestration"
        assert "Exploring parallel variants" in messages
        assert any(m.startswith("Winner selected: ") for m in messages)
        assert messages[-1] == "Orchestration complete"
        # 4 variants plus one polish call
        assert len(agent.calls) == 5

    def test_refinement_that_never_passes_needs_review(self):
        snapshot = _run(
            _manager(EchoAgent(), constant(0.1)),
            options=_options(orchestration={"maxIterations": 2}),
        )
        meta = snapshot["meta"]
        assert meta["status"] == STATUS_NEEDS_REVIEW
        assert meta["final"]["ok"] is False
        assert meta["final"]["attempts"] == 2
        assert len(meta["final"]["chain"]) == 2
        messages = _messages(snapshot)
        assert any("below threshold, refining" in m for m in messages)
        assert "Refinement attempt 2 scored 0.100" in messages

    def test_refinement_reaching_threshold_succeeds(self):
        def evaluator(text, config):
            return {"totalScore": 0.95 if "Previous attempt scored" in text else 0.5}

        snapshot = _run(_manager(EchoAgent(), evaluator))
        meta = snapshot["meta"]
        assert meta["status"] == STATUS_SUCCEEDED
        assert meta["final"]["ok"] is True
        assert meta["final"]["attempts"] == 2

    def test_fast_mode_explores_two_variants(self):
        agent = EchoAgent()
        snapshot = _run(_manager(agent), mode="fast")
        assert snapshot["meta"]["mode"] == "fast"
        assert len(snapshot["meta"]["candidates"]) == 2
        variant_calls = [c for c in agent.calls if not c[0].startswith(POLISH_INSTRUCTION)]
        assert len(variant_calls) == 2

    def test_reflect_mode(self):
        agent = EchoAgent()
        snapshot = _run(_manager(agent), mode="reflect")
        meta = snapshot["meta"]
        assert meta["status"] == STATUS_SUCCEEDED
        assert set(meta["reflection"]) == {"creator", "critic", "polished", "metadata"}
        assert meta["final"]["best"]["text"] == meta["reflection"]["polished"]["text"]
        assert meta["candidates"] == []
        assert len(agent.calls) == 3

    def test_reflect_failure_is_not_retried(self):
        calls = []

        def down(prompt, profile=None, attempt=0):
            calls.append(prompt)
            raise AgentError("upstream 503")

        snapshot = _run(_manager(down), mode="reflect", options=_options(orchestration={"agentRetries": 2}))
        assert snapshot["meta"]["status"] == STATUS_FAILED
        assert snapshot["meta"]["error"] == "AgentError: upstream 503"
        assert snapshot["meta"]["reflection"] is None
        assert len(calls) == 1

    def test_reflect_mode_can_be_disabled(self):
        manager = _manager(EchoAgent())
        with pytest.raises(InvalidRequest):
            manager.start("p", "reflect", _options(orchestration={"enableReflectCritic": False}))

    def test_agent_retries_recover_transient_failures(self):
        failed_once = set()
        lock = threading.Lock()

        def flaky(prompt, profile=None, attempt=0):
            with lock:
                first = prompt not in failed_once
                failed_once.add(prompt)
            if first:
                raise RuntimeError("transient")
            return {"text": prompt}

        snapshot = _run(_manager(flaky), options=_options(orchestration={"agentRetries": 2}))
        assert snapshot["meta"]["status"] == STATUS_SUCCEEDED
        assert not any(c["failed"] for c in snapshot["meta"]["candidates"])

    def test_response_cache_spans_sessions(self):
        def evaluator(text, config):
            return {"totalScore": 0.95 if "resource efficiency" in text else 0.6}

        agent = EchoAgent()
        manager = _manager(agent, evaluator)
        cached = _options(caching={"enabled": True, "ttl": 60})
        first = _run(manager, options=cached)
        second = _run(manager, options=cached)
        assert first["meta"]["winner"]["name"] == second["meta"]["winner"]["name"] == "efficient"
        assert len(agent.calls) == 5

    def test_budget_warning(self):
        snapshot = _run(_manager(EchoAgent()), prompt="x" * 100, options=_options(budget={"maxTokensPerRequest": 5}))
        warnings = [e for e in snapshot["events"] if e["level"] == "warning"]
        assert any("5 token budget" in e["message"] for e in warnings)


class TestFailures:
    def test_all_variants_failing_fails_session(self):
        snapshot = _run(_manager(EchoAgent(fail=True)))
        meta = snapshot["meta"]
        assert meta["status"] == STATUS_FAILED
        assert meta["error"].startswith("NoWinnerError")
        assert meta["winner"] is None
        assert all(c["failed"] for c in meta["candidates"])
        assert snapshot["events"][-1]["level"] == "error"

    def test_missing_agent_fails_session(self):
        snapshot = _run(_manager(None))
        assert snapshot["meta"]["status"] == STATUS_FAILED
        assert snapshot["meta"]["error"] == "AgentError: No agent configured"

    def test_internal_errors_are_not_leaked(self):
        def evaluator(text, config):
            if POLISH_INSTRUCTION in text:
                raise ZeroDivisionError("secret internals")
            return {"totalScore": 0.9}

        snapshot = _run(_manager(EchoAgent(), evaluator))
        assert snapshot["meta"]["status"] == STATUS_FAILED
        assert snapshot["meta"]["error"] == "Internal error during orchestration"
        assert "secret internals" not in json.dumps(snapshot)

    @pytest.mark.parametrize("prompt,mode,options", [
        ("", None, None),
        ("   ", None, None),
        (42, None, None),
        ("ok", "turbo", None),
        ("ok", None, ["not", "a", "mapping"]),
        ("ok", None, {"orchestration": "oops"}),
        ("ok", None, {"quality": {"threshold": "high"}}),
        ("ok", None, {"variants": "default"}),
    ])
    def test_invalid_start_requests(self, prompt, mode, options):
        manager = _manager(EchoAgent())
        with pytest.raises(InvalidRequest):
            manager.start(prompt, mode, options)
        assert manager.store.keys("session:") == []

    def test_unknown_session(self):
        manager = _manager(EchoAgent())
        with pytest.raises(SessionNotFound):
            manager.status("missing")
        with pytest.raises(SessionNotFound):
            manager.cancel("missing")
        with pytest.raises(SessionNotFound):
            next(manager.stream("missing"))


# ── Cancellation ─────────────────────────────────────────────

class TestCancel:
    def test_cancel_while_running(self):
        gate = threading.Event()
        manager = _manager(EchoAgent(gate=gate))
        session_id = manager.start("Write a function", options=FAST_OPTIONS)
        meta = manager.cancel(session_id)
        assert meta["status"] == STATUS_CANCELLED
        gate.set()
        assert manager.wait(session_id, 10)

        snapshot = manager.status(session_id)
        assert snapshot["meta"]["status"] == STATUS_CANCELLED
        assert snapshot["meta"]["winner"] is None
        messages = _messages(snapshot)
        assert "Cancelled by user" in messages
        assert "Orchestration stopped: session cancelled" in messages
        assert "Orchestration complete" not in messages

    def test_cancel_after_completion(self):
        manager = _manager(EchoAgent())
        session_id = _run(manager)["meta"]["id"]
        assert manager.cancel(session_id)["status"] == STATUS_CANCELLED
        assert manager.cancel(session_id)["status"] == STATUS_CANCELLED
        assert manager.status(session_id)["meta"]["status"] == STATUS_CANCELLED


# ── Callbacks ────────────────────────────────────────────────

class TestCallbacks:
    def _completed(self, secret=SECRET):
        manager = _manager(EchoAgent(), callback_secret=secret)
        return manager, _run(manager)["meta"]["id"]

    def test_rejected_without_secret(self):
        manager, session_id = self._completed(secret=None)
        body = b'{"ok": true}'
        with pytest.raises(CallbackRejected):
            manager.callback(session_id, body, sign_body(body, SECRET))

    def test_bad_signature_leaves_no_trace(self):
        manager, session_id = self._completed()
        before = manager.status(session_id)
        with pytest.raises(CallbackRejected):
            manager.callback(session_id, b'{"ok": true}', sign_body(b'{"ok": false}', SECRET))
        after = manager.status(session_id)
        assert after["meta"]["callbacks"] == []
        assert len(after["events"]) == len(before["events"])

    def test_valid_signature_records_callback(self):
        manager, session_id = self._completed()
        body = b'{"tests": "passed"}'
        entry = manager.callback(session_id, body, sign_body(body, SECRET))
        assert entry["from"] == "webhook"
        assert entry["payload"] == {"tests": "passed"}

        snapshot = manager.status(session_id)
        assert snapshot["meta"]["callbacks"][0]["payload"] == {"tests": "passed"}
        assert snapshot["events"][-1]["message"] == "Callback received"
        assert snapshot["events"][-1]["data"] == {"tests": "passed"}

    def test_signed_non_json_body(self):
        manager, session_id = self._completed()
        body = b"not json"
        with pytest.raises(InvalidRequest):
            manager.callback(session_id, body, sign_body(body, SECRET))


# ── Streaming ────────────────────────────────────────────────

class TestStream:
    def test_stream_of_finished_session(self):
        manager = _manager(EchoAgent())
        session_id = _run(manager)["meta"]["id"]
        frames = list(manager.stream(session_id))

        assert frames[-1] == {"type": "complete", "status": STATUS_SUCCEEDED}
        events = [f for f in frames if f["type"] == "event"]
        seqs = [f["seq"] for f in events]
        assert seqs == sorted(seqs)
        assert events[-1]["message"] == "Orchestration complete"

    def test_stream_while_running(self):
        gate = threading.Event()
        manager = _manager(EchoAgent(gate=gate))
        session_id = manager.start("Write a function", options=FAST_OPTIONS)
        frames = manager.stream(session_id, interval=0.01)

        seen = []
        try:
            for frame in frames:
                seen.append(frame)
                if frame["type"] == "placeholder":
                    break
        finally:
            gate.set()
        seen.extend(frames)

        placeholders = [f for f in seen if f["type"] == "placeholder"]
        assert placeholders[0]["message"] == PLACEHOLDER_MESSAGES[0]
        assert seen[-1] == {"type": "complete", "status": STATUS_SUCCEEDED}
        messages = [f["message"] for f in seen if f["type"] == "event"]
        assert messages.count("Orchestration complete") == 1
        assert messages[0] == "Starting orchestration"


# ── Persistence ──────────────────────────────────────────────

class TestPersistence:
    def test_sessions_survive_restart(self, tmp_path):
        path = str(tmp_path / "store")
        manager = _manager(EchoAgent(), store=JsonFileStore(path))
        original = _run(manager)
        session_id = original["meta"]["id"]

        reloaded = _manager(EchoAgent(), store=JsonFileStore(path))
        assert f"session:{session_id}:meta" in reloaded.store.keys("session:")
        snapshot = reloaded.status(session_id)
        assert snapshot["meta"]["status"] == STATUS_SUCCEEDED
        assert snapshot["events"] == original["events"]

    def test_interrupted_session_is_marked_failed(self, tmp_path):
        store = JsonFileStore(str(tmp_path / "store"))
        meta = SessionMeta(id="abc", prompt="p", mode="quality", config={}, status=STATUS_RUNNING)
        store.put("session:abc:meta", meta.to_dict())

        snapshot = _manager(EchoAgent(), store=store).status("abc")
        assert snapshot["meta"]["status"] == STATUS_FAILED
        assert snapshot["meta"]["error"] == "Session interrupted before completion"


class TestResidency:
    def test_finished_run_releases_its_thread(self):
        manager = _manager(EchoAgent())
        session_id = _run(manager)["meta"]["id"]
        assert session_id not in manager._threads
        assert manager.wait(session_id, 0)

    def test_idle_sessions_are_evicted_and_reload(self):
        manager = _manager(EchoAgent(), max_idle_sessions=1)
        first = _run(manager)["meta"]["id"]
        second = _run(manager)["meta"]["id"]
        assert list(manager._sessions) == [second]

        snapshot = manager.status(first)
        assert snapshot["meta"]["status"] == STATUS_SUCCEEDED
        assert list(manager._sessions) == [first]

    def test_running_sessions_are_never_evicted(self):
        gate = threading.Event()
        manager = _manager(EchoAgent(gate=gate), max_idle_sessions=0)
        running = manager.start("p", None, FAST_OPTIONS)
        try:
            assert running in manager._sessions
        finally:
            gate.set()
        assert manager.wait(running, 10)
        assert running not in manager._sessions
        assert manager.status(running)["meta"]["status"] == STATUS_SUCCEEDED


# ── State machine ────────────────────────────────────────────

class TestSessionState:
    def _state(self):
        meta = SessionMeta(id="s1", prompt="p", mode="quality", config={})
        return SessionState(meta, MemoryStore())

    def test_transition_table(self):
        assert can_transition("pending", "running")
        assert can_transition("running", "needs_review")
        assert can_transition("succeeded", "cancelled")
        assert not can_transition("succeeded", "running")
        assert not can_transition("cancelled", "running")
        assert not can_transition("pending", "succeeded")

    def test_terminal_session_rejects_writes(self):
        state = self._state()
        state.transition(STATUS_RUNNING)
        state.transition(STATUS_SUCCEEDED, "info", "Orchestration complete")
        with pytest.raises(InvalidTransition):
            state.record(winner={"name": "late"})
        with pytest.raises(InvalidTransition):
            state.transition(STATUS_RUNNING)
        assert state.fail("too late") is False
        assert state.meta.winner is None

    def test_cancel_trips_token(self):
        state = self._state()
        state.transition(STATUS_RUNNING)
        state.cancel()
        assert state.status == STATUS_CANCELLED
        assert state.cancel_token.cancelled

    def test_subscribers_are_woken(self):
        state = self._state()
        wake = state.subscribe()
        state.push_event("info", "hello")
        assert wake.is_set()
        state.unsubscribe(wake)
        wake.clear()
        state.push_event("info", "again")
        assert not wake.is_set()

    def test_read_since(self):
        state = self._state()
        for i in range(3):
            state.push_event("info", f"e{i}")
        status, events = state.read_since(1)
        assert status == "pending"
        assert [e.message for e in events] == ["e1", "e2"]
