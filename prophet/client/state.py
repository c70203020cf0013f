# prophet/client/state.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional

CONNECTION_LOST = "Connection lost"
CONNECT_FAILED = "Failed to connect to the server"
STEP_RESULT = "step_result"
MAX_PREVIEW_FIELDS = 4


class RunnerStatus(str, Enum):
    IDLE = "idle"
    CHECKING = "checking"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class JobRunnerState:
    status: RunnerStatus = RunnerStatus.IDLE
    job_id: Optional[str] = None
    steps: List[Dict[str, Any]] = field(default_factory=list)
    progress: int = 0
    warnings: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    redirect_url: Optional[str] = None
    ambient_cards: List[Dict[str, Any]] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def is_active(self) -> bool:
        return self.status in (RunnerStatus.CHECKING, RunnerStatus.RUNNING)


def _format_value(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, (int, float, str)):
        return str(value)
    if isinstance(value, list):
        return str(len(value))
    return None


def step_result_card(index: int, step: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Card summarising a completed step's preview, if it has one."""
    preview = step.get("preview")
    if step.get("status") != "complete" or not isinstance(preview, dict) or not preview:
        return None
    parts = []
    for key, value in preview.items():
        text = _format_value(value)
        if text is not None:
            parts.append(f"{key}: {text}")
        if len(parts) == MAX_PREVIEW_FIELDS:
            break
    if not parts:
        return None
    return {
        "id": f"step-{index}",
        "category": STEP_RESULT,
        "text": f"{step.get('label', step.get('name', 'Step'))} · {', '.join(parts)}",
    }


def _add_card(cards: List[Dict[str, Any]], card: Dict[str, Any]) -> List[Dict[str, Any]]:
    if any(c.get("id") == card.get("id") for c in cards):
        return cards
    return [*cards, card]


def reduce(state: JobRunnerState, event: str, payload: Dict[str, Any]) -> JobRunnerState:
    """Pure transition: (state, event, payload) -> new state."""
    if event == "init":
        return replace(
            state,
            status=RunnerStatus.RUNNING,
            job_id=payload.get("jobId"),
            steps=[dict(s) for s in payload.get("steps", [])],
            progress=0,
            error_message=None,
        )

    if event == "step":
        index = payload.get("stepIndex")
        step = payload.get("step") or {}
        steps = list(state.steps)
        if isinstance(index, int) and 0 <= index < len(steps):
            steps[index] = dict(step)
        cards = state.ambient_cards
        result_card = step_result_card(index, step) if isinstance(index, int) else None
        if result_card is not None:
            cards = _add_card(cards, result_card)
        return replace(
            state,
            job_id=payload.get("jobId", state.job_id),
            steps=steps,
            progress=int(payload.get("progress", state.progress)),
            ambient_cards=cards,
        )

    if event == "card":
        if not payload.get("id"):
            return state
        return replace(state, ambient_cards=_add_card(state.ambient_cards, payload))

    if event == "done":
        failed = payload.get("status") == "failed"
        return replace(
            state,
            status=RunnerStatus.FAILED if failed else RunnerStatus.COMPLETE,
            progress=100,
            warnings=list(payload.get("warnings", [])),
            redirect_url=payload.get("redirectUrl") or None,
            error_message=payload.get("error") if failed else None,
        )

    if event == "error":
        return replace(
            state,
            status=RunnerStatus.FAILED,
            error_message=payload.get("error") or payload.get("message") or CONNECTION_LOST,
        )

    return state
