"""Lifecycle events emitted while a proof run is in flight.

Events are plain JSON-ready dicts discriminated by ``type``. They travel as
newline-delimited JSON; readers skip malformed lines and pass unknown types
through untouched.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Iterator
from typing import Any

from pydantic import BaseModel

from proofsmith.models import CriticStatus, JobStatus, Plan, ProofMode

logger = logging.getLogger(__name__)

Event = dict[str, Any]
EventSink = Callable[[Event], None]

KNOWN_EVENT_TYPES = frozenset(
    {
        "status",
        "heartbeat",
        "plan",
        "draft_delta",
        "draft_complete",
        "critique",
        "final_fast",
        "background_queued",
        "background_update",
        "error",
    }
)


def emit(sink: EventSink | None, event: Event) -> None:
    if sink is not None:
        sink(event)


def status_event(message: str, *, stage: str | None = None, attempt: int | None = None) -> Event:
    event: Event = {"type": "status", "message": message}
    if stage is not None:
        event["stage"] = stage
    if attempt is not None:
        event["attempt"] = attempt
    return event


def heartbeat_event(stage: str, elapsed_ms: int) -> Event:
    return {
        "type": "heartbeat",
        "stage": stage,
        "elapsed_ms": elapsed_ms,
        "message": f"{stage} is still running...",
    }


def plan_event(plan: Plan) -> Event:
    return {"type": "plan", "data": plan.model_dump(mode="json")}


def draft_delta_event(attempt: int, delta: str) -> Event:
    return {"type": "draft_delta", "attempt": attempt, "delta": delta}


def draft_complete_event(attempt: int, markdown: str) -> Event:
    return {"type": "draft_complete", "attempt": attempt, "markdown": markdown}


def critique_event(attempt: int, status: CriticStatus, gaps: list[str]) -> Event:
    return {"type": "critique", "attempt": attempt, "status": status, "gaps": list(gaps)}


def final_fast_event(payload: BaseModel) -> Event:
    return {"type": "final_fast", "data": payload.model_dump(mode="json")}


def background_queued_event(run_id: str, job_id: str, mode: ProofMode) -> Event:
    return {"type": "background_queued", "runId": run_id, "jobId": job_id, "mode": mode}


def background_update_event(
    run_id: str,
    job_id: str,
    status: JobStatus,
    mode: ProofMode,
    *,
    proof: BaseModel | None = None,
    error: str | None = None,
) -> Event:
    event: Event = {
        "type": "background_update",
        "runId": run_id,
        "jobId": job_id,
        "status": status,
        "mode": mode,
    }
    if proof is not None:
        event["proof"] = proof.model_dump(mode="json")
    if error is not None:
        event["error"] = error
    return event


def error_event(code: str, message: str) -> Event:
    return {"type": "error", "code": code, "message": message}


class EventCollector:
    """Sink that records every event it receives."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [str(event.get("type")) for event in self.events]

    def of_type(self, event_type: str) -> list[Event]:
        return [event for event in self.events if event.get("type") == event_type]


def encode_event(event: Event) -> str:
    return json.dumps(event, ensure_ascii=False) + "\n"


def _appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


def decode_events(lines: Iterable[str]) -> Iterator[Event]:
    parse_buffer = ""
    for raw_line in lines:
        line = raw_line.strip()
        if not line:
            continue
        candidate = f"{parse_buffer}{line}" if parse_buffer else line
        try:
            event = json.loads(candidate)
            parse_buffer = ""
        except json.JSONDecodeError:
            if _appears_partial_json(candidate):
                parse_buffer = candidate
                continue
            parse_buffer = ""
            logger.warning("Skipping malformed event line: %s", line[:200])
            continue

        if not isinstance(event, dict) or "type" not in event:
            logger.warning("Skipping event without a type: %s", candidate[:200])
            continue
        if event["type"] not in KNOWN_EVENT_TYPES:
            logger.debug("Passing through unknown event type %r", event["type"])
        yield event

    if parse_buffer:
        logger.warning("Discarding truncated event data (%d bytes)", len(parse_buffer))
