from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Mapping, Optional, Sequence, Tuple

from .coords import to_absolute, to_relative
from .driver import (
    BrowserDriver,
    current_scroll,
    current_url,
    current_viewport,
    selector_exists,
)
from .errors import DriverError
from .schemas import (
    BatchExecutionResult,
    Operation,
    PlanItem,
    PlaybookReference,
    RecordedOperation,
    StepResult,
    Verdict,
    Viewport,
)
from .settle import wait_for_settle
from .storage import PlaybookStore

logger = logging.getLogger(__name__)

# Upper bound on steps executed without consulting the oracle again.
MAX_BATCH_SIZE = 8
DEFAULT_SCROLL_AMOUNT = 300
INLINE_WAIT_MS = 1_000
PLAYBOOK_WAIT_MS = 300
FOCUS_DELAY_MS = 100

SettleFn = Callable[[BrowserDriver], Awaitable[object]]
ActionCallback = Callable[[str], None]
ErrorCallback = Callable[[str, str], None]


@dataclass
class _BatchState:
    start_url: str
    viewport: Viewport
    results: List[StepResult] = field(default_factory=list)
    recorded: List[RecordedOperation] = field(default_factory=list)
    bail_reason: Optional[str] = None
    url_changed: bool = False
    terminal: Optional[Verdict] = None


class BatchExecutor:
    """
    Walks a planned list of operations and playbook references against the page.

    Steps run strictly one after another. Between steps the page is given time to
    settle and the batch bails out if the URL moved or the next step's target is
    gone, since none of the later steps were planned with that state in view. No
    error from a step escapes: every problem ends up as a failed step result plus a
    bail reason and the caller decides whether to replan.
    """

    def __init__(
        self,
        driver: BrowserDriver,
        store: Optional[PlaybookStore] = None,
        *,
        domain: Optional[str] = None,
        settle: Optional[SettleFn] = None,
        on_action: Optional[ActionCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self._driver = driver
        self._store = store
        self._domain = domain
        self._settle = settle or wait_for_settle
        self._on_action = on_action
        self._on_error = on_error

    async def execute(
        self,
        items: Sequence[PlanItem],
        *,
        element_positions: Optional[Mapping[str, Tuple[float, float]]] = None,
    ) -> BatchExecutionResult:
        """
        Execute ``items`` in order and report what happened.

        ``element_positions`` maps selectors to the absolute centre of their element
        as seen at planning time; it is only used to attach a relative position to
        recorded operations.
        """
        t0 = time.monotonic()
        if len(items) > MAX_BATCH_SIZE:
            logger.debug("Batch of %d exceeds cap %d, truncating", len(items), MAX_BATCH_SIZE)
            items = list(items)[:MAX_BATCH_SIZE]

        try:
            start_url = await current_url(self._driver)
        except Exception:
            start_url = ""
        state = _BatchState(
            start_url=start_url, viewport=await current_viewport(self._driver)
        )
        positions = element_positions or {}

        for index, item in enumerate(items):
            is_last = index == len(items) - 1
            next_item = None if is_last else items[index + 1]

            if isinstance(item, Verdict):
                state.terminal = item
                break

            if isinstance(item, PlaybookReference):
                if not await self._run_playbook(state, item.playbook):
                    if state.bail_reason:
                        break
                    continue
            else:
                if not await self._run_inline(state, item, positions):
                    break

            if is_last:
                break
            if await self._bail_between_steps(state, next_item):
                break

        logger.debug(
            "Batch complete: %d/%d steps in %dms%s",
            len(state.results),
            len(items),
            int((time.monotonic() - t0) * 1000),
            f" (bailed: {state.bail_reason})" if state.bail_reason else "",
        )
        return BatchExecutionResult(
            results=state.results,
            completed_count=len(state.results),
            terminal=state.terminal,
            url_changed=state.url_changed,
            bail_reason=state.bail_reason,
            recorded_ops=state.recorded,
        )

    # --- Step kinds ----------------------------------------------------------

    async def _run_inline(
        self,
        state: _BatchState,
        op: Operation,
        positions: Mapping[str, Tuple[float, float]],
    ) -> bool:
        description = op.describe()
        self._notify_action(description)
        step_t0 = time.monotonic()
        try:
            selector = await self._perform(op, state.viewport, wait_default=INLINE_WAIT_MS)
        except Exception as exc:
            error = _error_text(exc)
            state.results.append(StepResult(description=description, success=False, error=error))
            state.bail_reason = f"action failed: {error}"
            self._notify_error(description, error)
            return False
        logger.debug(
            "Step %s executed in %dms", description, int((time.monotonic() - step_t0) * 1000)
        )
        state.results.append(StepResult(description=description, success=True))
        state.recorded.append(await self._capture(state, op, selector, description, positions))
        return True

    async def _run_playbook(self, state: _BatchState, name: str) -> bool:
        expansion = None
        if self._store is not None and self._domain:
            expansion = self._store.expand(self._domain, name, state.viewport)
        if expansion is None:
            logger.debug('Playbook "%s" not found, skipping', name)
            state.results.append(
                StepResult(
                    description=f'Playbook "{name}" (not found, skipped)',
                    success=False,
                    error="playbook not found",
                )
            )
            return False

        operations = expansion.operations
        total = len(operations)
        logger.debug('Expanding playbook "%s" (%d operations)', name, total)
        for j, op in enumerate(operations, start=1):
            description = f'[playbook "{name}" step {j}/{total}] {op.describe()}'
            self._notify_action(description)
            try:
                await self._perform(op, state.viewport, wait_default=PLAYBOOK_WAIT_MS)
            except Exception as exc:
                error = _error_text(exc)
                state.results.append(
                    StepResult(description=description, success=False, error=error)
                )
                state.bail_reason = f'playbook "{name}" failed at step {j}: {error}'
                self._notify_error(description, error)
                self._store.mark_failure(expansion.playbook)
                return False
            state.results.append(StepResult(description=description, success=True))

            if j == total:
                break
            await self._settle(self._driver)
            try:
                url = await current_url(self._driver)
            except Exception:
                state.url_changed = True
                state.bail_reason = f'navigation during playbook "{name}" at step {j}'
                return False
            if url != state.start_url:
                state.url_changed = True
                state.bail_reason = f'URL changed during playbook "{name}" at step {j}'
                return False
            next_selector = operations[j].selector
            if next_selector and not await self._target_present(state, next_selector):
                if not state.bail_reason:
                    state.bail_reason = (
                        f'playbook "{name}" next target missing at step {j + 1}: {next_selector}'
                    )
                    self._store.mark_failure(expansion.playbook)
                return False

        self._store.mark_success(expansion.playbook)
        return True

    # --- Bail checks ---------------------------------------------------------

    async def _bail_between_steps(
        self, state: _BatchState, next_item: Optional[PlanItem]
    ) -> bool:
        await self._settle(self._driver)
        try:
            url = await current_url(self._driver)
        except Exception:
            state.url_changed = True
            state.bail_reason = "navigation detected"
            return True
        if url != state.start_url:
            logger.debug("Batch bail: URL changed from %s to %s", state.start_url, url)
            state.url_changed = True
            state.bail_reason = "URL changed"
            return True
        if isinstance(next_item, Operation) and next_item.selector:
            if not await self._target_present(state, next_item.selector):
                if not state.bail_reason:
                    logger.debug("Batch bail: next target missing: %s", next_item.selector)
                    state.bail_reason = f"next target missing: {next_item.selector}"
                return True
        return False

    async def _target_present(self, state: _BatchState, selector: str) -> bool:
        try:
            return await selector_exists(self._driver, selector)
        except Exception:
            state.url_changed = True
            state.bail_reason = "element check failed (page may have navigated)"
            return False

    # --- Primitive execution -------------------------------------------------

    async def _perform(
        self, op: Operation, viewport: Viewport, *, wait_default: int
    ) -> Optional[str]:
        """Run one operation; return the selector it ended up targeting."""
        selector = op.selector
        if not selector and op.label:
            selector = await self._driver.resolve_label(op.label)
            if not selector:
                raise DriverError(f'No element labelled "{op.label}"')

        if op.type == "click":
            await self._click(selector, op, viewport)
        elif op.type == "type":
            if not op.text:
                raise DriverError("No text for type operation")
            if not selector:
                raise DriverError("No selector for type operation")
            await self._click(selector, op, viewport)
            await self._driver.wait(FOCUS_DELAY_MS)
            await self._driver.type(selector, op.text)
        elif op.type == "press":
            await self._driver.press(op.key or "Enter")
        elif op.type == "scroll":
            await self._driver.scroll(op.direction or "down", op.amount or DEFAULT_SCROLL_AMOUNT)
        elif op.type == "hover":
            if not selector:
                raise DriverError("No selector for hover operation")
            await self._driver.hover(selector)
        elif op.type == "wait":
            await self._driver.wait(op.duration or wait_default)
        else:  # pragma: no cover - guarded by the Operation model
            raise DriverError(f"Unknown operation type: {op.type}")
        return selector

    async def _click(self, selector: Optional[str], op: Operation, viewport: Viewport) -> None:
        mouse_click = getattr(self._driver, "mouse_click", None)
        if selector:
            try:
                await self._driver.click(selector)
                return
            except Exception as exc:
                if op.position is None or mouse_click is None:
                    raise
                logger.debug(
                    "Selector click failed (%s), falling back to coordinates",
                    _error_text(exc)[:150],
                )
        if op.position is not None and mouse_click is not None:
            point = to_absolute(op.position, viewport)
            logger.debug("Coordinate click at (%d, %d)", point.x, point.y)
            await mouse_click(point.x, point.y)
            return
        raise DriverError("No selector or coordinates for click")

    async def _capture(
        self,
        state: _BatchState,
        op: Operation,
        selector: Optional[str],
        description: str,
        positions: Mapping[str, Tuple[float, float]],
    ) -> RecordedOperation:
        position = op.position
        centre = positions.get(selector) if selector else None
        if centre is not None:
            scroll = await current_scroll(self._driver)
            position = to_relative(centre[0], centre[1], state.viewport, scroll)
        # Label-resolved selectors are per-page tags; the label itself is what replays.
        payload = op.model_dump(exclude={"position"})
        return RecordedOperation(**payload, position=position, description=description)

    def _notify_action(self, description: str) -> None:
        if self._on_action is not None:
            self._on_action(description)

    def _notify_error(self, description: str, error: str) -> None:
        if self._on_error is not None:
            self._on_error(description, error)


def _error_text(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__
