from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

OperationType = Literal["click", "type", "press", "scroll", "hover", "wait"]
OPERATION_TYPES = ("click", "type", "press", "scroll", "hover", "wait")
VERDICT_TYPES = ("done", "failed")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Viewport(_Model):
    width: int
    height: int


class ScrollOffset(_Model):
    x: float = 0
    y: float = 0


class Point(_Model):
    x: int
    y: int


class RelativePosition(_Model):
    """Viewport-relative point, always stored with the viewport it was captured in."""

    rel_x: float = Field(alias="relX")
    rel_y: float = Field(alias="relY")
    viewport_width: int = Field(alias="viewportWidth")
    viewport_height: int = Field(alias="viewportHeight")
    scroll_x: float = Field(default=0, alias="scrollX")
    scroll_y: float = Field(default=0, alias="scrollY")


class Operation(_Model):
    type: OperationType
    # Primary targeting; position is the coordinate fallback.
    selector: Optional[str] = None
    position: Optional[RelativePosition] = None
    # Deferred target: visible text resolved to a selector right before execution.
    label: Optional[str] = None
    text: Optional[str] = None
    key: Optional[str] = None
    direction: Optional[Literal["up", "down"]] = None
    amount: Optional[int] = None
    duration: Optional[int] = None

    def target(self) -> Optional[str]:
        return self.selector or self.label

    def describe(self) -> str:
        if self.type == "click":
            return f'click "{self.target() or "element"}"'
        if self.type == "type":
            return f'type "{self.text or ""}"'
        if self.type == "press":
            return f"press {self.key or 'Enter'}"
        if self.type == "scroll":
            return f"scroll {self.direction or 'down'}"
        if self.type == "wait":
            return f"wait {self.duration}ms"
        if self.type == "hover":
            return f'hover "{self.target() or "element"}"'
        return self.type


class RecordedOperation(Operation):
    """An operation that actually ran, with its capture-time metadata."""

    description: Optional[str] = None

    def as_operation(self) -> Operation:
        return Operation.model_validate(self.model_dump(exclude={"description"}))


class PlaybookReference(_Model):
    playbook: str


class Verdict(_Model):
    type: Literal["done", "failed"]
    reason: Optional[str] = None


PlanItem = Union[Operation, PlaybookReference, Verdict]


class Plan(_Model):
    """Canonical oracle output: ordered items, at most one trailing verdict."""

    thought: str = ""
    items: List[PlanItem] = Field(default_factory=list)
    sequence_name: Optional[str] = Field(default=None, alias="sequenceName")
    confidence: float = 0.5


class Playbook(_Model):
    id: str
    name: str
    domain: str
    page_path: str = Field(alias="pagePath")
    operations: List[Operation] = Field(default_factory=list)
    recorded_viewport: Viewport = Field(alias="recordedViewport")
    success_count: int = Field(default=0, alias="successCount")
    fail_count: int = Field(default=0, alias="failCount")
    last_used: str = Field(default_factory=utc_now_iso, alias="lastUsed")
    created_at: str = Field(default_factory=utc_now_iso, alias="createdAt")

    @property
    def reliability(self) -> int:
        attempts = self.success_count + self.fail_count
        if attempts == 0:
            return 100
        return int(self.success_count * 100 / attempts + 0.5)


class PlaybookFile(_Model):
    domain: str
    playbooks: List[Playbook] = Field(default_factory=list)


class StepResult(_Model):
    description: str
    success: bool
    error: Optional[str] = None


class BatchExecutionResult(_Model):
    results: List[StepResult] = Field(default_factory=list)
    completed_count: int = Field(default=0, alias="completedCount")
    terminal: Optional[Verdict] = None
    url_changed: bool = Field(default=False, alias="urlChanged")
    bail_reason: Optional[str] = Field(default=None, alias="bailReason")
    recorded_ops: List[RecordedOperation] = Field(default_factory=list, alias="recordedOps")


class SettleReport(_Model):
    elapsed: float = 0
    mutations: int = 0
    reason: str = "unknown"


def dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


class PageElement(_Model):
    """Interactive element seen when perceiving the page, centre in viewport pixels."""

    selector: str
    tag: str
    text: str = ""
    x: float = 0
    y: float = 0
