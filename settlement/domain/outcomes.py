from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Literal

OutcomeStatus = Literal["ok", "degraded", "skipped"]


@dataclass
class StepOutcome:
    """Result of one best-effort fan-out step (stock, payout, notification)."""

    step: str
    status: OutcomeStatus
    detail: str = ""
    ref: str | None = None

    @property
    def ok(self) -> bool:
        return self.status != "degraded"

    def as_dict(self) -> dict:
        return asdict(self)


def ok(step: str, detail: str = "", ref: str | None = None) -> StepOutcome:
    return StepOutcome(step=step, status="ok", detail=detail, ref=ref)


def degraded(step: str, detail: str, ref: str | None = None) -> StepOutcome:
    return StepOutcome(step=step, status="degraded", detail=detail, ref=ref)


def skipped(step: str, detail: str = "", ref: str | None = None) -> StepOutcome:
    return StepOutcome(step=step, status="skipped", detail=detail, ref=ref)
