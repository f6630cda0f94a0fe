"""
Stream Event Processor — Turning a Child's Output into State.

The child emits one JSON object per line on stdout. This module parses each
line and folds it into the attempt's ``ExecutionState``:

  init / system:init          identity discovered (agent_id, conversation_id)
  message:tool_call_message   streamed tool-call argument fragments
  message:approval_request_message
                              same buffering, but not reported until approved
  auto_approval               a pre-authorized call, reported immediately
  result                      terminal: text, error flag, duration, usage
  error                       terminal: error text

Lines may arrive wrapped as ``{"type": "stream_event", "event": {...}}``.
Anything that is not a JSON object is dropped without touching state.

Each tool call is surfaced to observers at most once, no matter how many
chunks or event kinds mention it. Later argument chunks for an already
surfaced call update the tracker's record instead.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Optional

import structlog

from taskfork.orchestration.errors import ProtocolError, StreamParseError
from taskfork.orchestration.models import (
    ExecutionState,
    PendingToolCall,
    ResultStats,
    SubagentProgressUpdate,
    SubagentResult,
)

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[SubagentProgressUpdate], Any]


def parse_event_line(line: str) -> dict[str, Any]:
    """Decode one stdout line into an event dict, unwrapping envelopes."""
    try:
        event = json.loads(line)
    except (json.JSONDecodeError, TypeError) as exc:
        raise StreamParseError(f"not JSON: {exc}") from exc
    if not isinstance(event, dict):
        raise StreamParseError("event is not a JSON object")
    if event.get("type") == "stream_event" and isinstance(event.get("event"), dict):
        event = event["event"]
    return event


def _tool_calls_of(event: dict[str, Any]) -> list[dict[str, Any]]:
    calls = event.get("tool_calls")
    if isinstance(calls, list):
        return [c for c in calls if isinstance(c, dict)]
    single = event.get("tool_call")
    if isinstance(single, dict):
        return [single]
    return []


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else json.dumps(value)


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class StreamEventProcessor:
    """Folds NDJSON events from one child into one ExecutionState."""

    def __init__(
        self,
        state: ExecutionState,
        subagent_id: str,
        tracker: Any = None,  # StateTracker
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.state = state
        self._subagent_id = subagent_id
        self._tracker = tracker
        self._on_progress = on_progress

    def process_line(self, line: str) -> None:
        """Handle one stdout line. Malformed input is a silent no-op."""
        try:
            event = parse_event_line(line)
        except StreamParseError:
            return

        event_type = event.get("type")
        if event_type == "init" or (event_type == "system" and event.get("subtype") == "init"):
            self._handle_init(event)
        elif event_type == "message":
            message_type = event.get("message_type")
            if message_type == "tool_call_message":
                self._handle_tool_call_message(event)
            elif message_type == "approval_request_message":
                self._buffer_tool_calls(event)
        elif event_type == "auto_approval":
            self._handle_auto_approval(event)
        elif event_type == "result":
            self._handle_result(event)
        elif event_type == "error":
            self.state.final_error = (
                _as_text(event.get("error")) or _as_text(event.get("message")) or "Unknown error"
            )

    @property
    def has_terminal_event(self) -> bool:
        return self.state.final_result is not None or self.state.final_error is not None

    # ---- Event handlers ----

    def _handle_init(self, event: dict[str, Any]) -> None:
        agent_id = event.get("agent_id")
        conversation_id = event.get("conversation_id")
        if not isinstance(agent_id, str) or not agent_id:
            agent_id = None
        if not isinstance(conversation_id, str) or not conversation_id:
            conversation_id = None
        if agent_id is None and conversation_id is None:
            return

        if agent_id:
            self.state.agent_id = agent_id
        if conversation_id:
            self.state.conversation_id = conversation_id

        self._track("register_identity", self._subagent_id, agent_id, conversation_id)
        parts = []
        if agent_id:
            parts.append(f"agent_id={agent_id}")
        if conversation_id:
            parts.append(f"conversation_id={conversation_id}")
        self._notify(
            SubagentProgressUpdate(
                message=f"[ids] {' '.join(parts)}",
                agent_id=agent_id,
                conversation_id=conversation_id,
            )
        )

    def _buffer_tool_calls(self, event: dict[str, Any]) -> list[str]:
        """Append argument fragments in arrival order. Returns touched ids."""
        touched: list[str] = []
        for call in _tool_calls_of(event):
            call_id = call.get("tool_call_id")
            if not isinstance(call_id, str) or not call_id:
                continue
            pending = self.state.pending_tool_calls.setdefault(call_id, PendingToolCall())
            name = call.get("name")
            if isinstance(name, str) and name:
                pending.name = name
            pending.args += _as_text(call.get("arguments"))
            touched.append(call_id)
        return touched

    def _handle_tool_call_message(self, event: dict[str, Any]) -> None:
        for call_id in self._buffer_tool_calls(event):
            pending = self.state.pending_tool_calls[call_id]
            args = pending.args or "{}"
            if call_id in self.state.displayed_tool_calls:
                self._track("update_tool_call", self._subagent_id, call_id, pending.name, args)
                continue
            if pending.name:
                self._record_tool_call(call_id, pending.name, args)

    def _handle_auto_approval(self, event: dict[str, Any]) -> None:
        call = event.get("tool_call")
        if not isinstance(call, dict):
            return
        call_id = call.get("tool_call_id")
        name = call.get("name")
        if isinstance(call_id, str) and call_id and isinstance(name, str) and name:
            args = _as_text(call.get("arguments")) or "{}"
            self._record_tool_call(call_id, name, args)

    def _handle_result(self, event: dict[str, Any]) -> None:
        result_text = _as_text(event.get("result"))
        usage = event.get("usage") if isinstance(event.get("usage"), dict) else {}
        self.state.final_result = result_text
        self.state.result_stats = ResultStats(
            duration_ms=_as_int(event.get("duration_ms")),
            total_tokens=_as_int(usage.get("total_tokens")),
        )

        if event.get("is_error"):
            self.state.final_error = result_text or "Unknown error"
        else:
            # Calls that were approved but never surfaced on their own.
            for call_id, pending in list(self.state.pending_tool_calls.items()):
                if pending.name and call_id not in self.state.displayed_tool_calls:
                    self._record_tool_call(call_id, pending.name, pending.args or "{}")

        self._track(
            "update_stats",
            self._subagent_id,
            self.state.result_stats.total_tokens,
            self.state.result_stats.duration_ms,
        )

    # ---- Helpers ----

    def _record_tool_call(self, call_id: str, name: str, args: str) -> None:
        if call_id in self.state.displayed_tool_calls:
            return
        self.state.displayed_tool_calls.add(call_id)
        self._track("add_tool_call", self._subagent_id, call_id, name, args)
        self._notify(
            SubagentProgressUpdate(
                message=f"[tool] {name}",
                tool_call_id=call_id,
                tool_name=name,
            )
        )

    def _track(self, method: str, *args: Any) -> None:
        """Fire-and-forget call into the state tracker."""
        if self._tracker is None:
            return
        try:
            getattr(self._tracker, method)(*args)
        except Exception:
            logger.debug("stream.tracker_call_failed", method=method, exc_info=True)

    def _notify(self, update: SubagentProgressUpdate) -> None:
        if self._on_progress is None:
            return
        try:
            self._on_progress(update)
        except Exception:
            logger.debug("stream.progress_callback_failed", exc_info=True)


def parse_result_from_last_line(last_line: str, agent_id: Optional[str]) -> SubagentResult:
    """Best-effort terminal result when no terminal event was streamed.

    Raises ProtocolError when the line is not a result event.
    """
    try:
        event = parse_event_line(last_line)
    except StreamParseError as exc:
        raise ProtocolError(f"Failed to parse subagent output: {exc}") from exc

    if event.get("type") != "result":
        raise ProtocolError("Unexpected output format from subagent")

    is_error = bool(event.get("is_error"))
    text = _as_text(event.get("result"))
    return SubagentResult(
        agent_id=agent_id or "",
        report=text,
        success=not is_error,
        error=(text or "Unknown error") if is_error else None,
    )
