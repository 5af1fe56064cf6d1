from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Dict, List, Literal, Optional, Sequence, Tuple
from urllib.parse import urlparse

from .config import RunnerConfig
from .driver import BrowserDriver, current_url, current_viewport, snapshot_elements
from .errors import PagePilotError
from .executor import BatchExecutor
from .oracle import DecisionOracle, Observation
from .schemas import PageElement, RecordedOperation, StepResult
from .settle import wait_for_settle
from .storage import PlaybookStore

logger = logging.getLogger(__name__)

TaskStatus = Literal["completed", "failed", "timeout"]

ORACLE_RETRY_DELAY_MS = 2_000


@dataclass
class TaskResult:
    goal: str
    status: TaskStatus
    actions: int
    duration: float
    reason: Optional[str] = None
    transcript: List[str] = field(default_factory=list)


class TaskRunner:
    """
    Runs one goal through repeated perceive, decide, act cycles.

    The playbook store is owned by the caller and shared across goals; this class
    only records into it and flushes the goal's domain when the goal ends.
    """

    def __init__(
        self,
        driver: BrowserDriver,
        oracle: DecisionOracle,
        store: Optional[PlaybookStore] = None,
        *,
        config: Optional[RunnerConfig] = None,
    ) -> None:
        self._driver = driver
        self._oracle = oracle
        self._config = config or RunnerConfig()
        self._store = store if self._config.playbooks_enabled else None
        self._settle = partial(
            wait_for_settle,
            timeout_ms=self._config.settle_timeout_ms,
            quiet_period_ms=self._config.settle_quiet_ms,
        )

    async def run(self, goal: str, start_url: str) -> TaskResult:
        started = time.monotonic()
        start_url = normalize_url(start_url)
        domain = urlparse(start_url).hostname
        history: List[str] = []
        transcript: List[str] = []
        task_log: List[RecordedOperation] = []
        feedback: Optional[str] = None
        action_count = 0

        def _on_action(description: str) -> None:
            transcript.append(f"[{_stamp()}] Action: {description}")
            history.append(description)

        def _on_error(description: str, error: str) -> None:
            transcript.append(f"[{_stamp()}] Error: {description}: {error}")

        if self._store is not None:
            await self._store.load(domain)

        executor = BatchExecutor(
            self._driver,
            self._store,
            domain=domain,
            settle=self._settle,
            on_action=_on_action,
            on_error=_on_error,
        )

        def _result(status: TaskStatus, reason: Optional[str] = None) -> TaskResult:
            return TaskResult(
                goal=goal,
                status=status,
                actions=action_count,
                duration=time.monotonic() - started,
                reason=reason,
                transcript=transcript,
            )

        try:
            while time.monotonic() - started < self._config.goal_timeout_s:
                elements = await snapshot_elements(self._driver)
                observation = Observation(
                    goal=goal,
                    url=await self._safe_url(),
                    elements_summary=_format_elements(elements),
                    history=list(history),
                    feedback=feedback,
                    playbook_summary=(self._store.get_summary(domain) or None)
                    if self._store is not None
                    else None,
                )
                try:
                    plan = await self._oracle.decide(observation)
                except Exception as exc:
                    logger.warning("Oracle call failed, retrying: %s", exc)
                    transcript.append(f"[{_stamp()}] Oracle error: {exc}")
                    feedback = f"Your previous response could not be used: {exc}"
                    await self._driver.wait(ORACLE_RETRY_DELAY_MS)
                    continue
                transcript.append(f"[{_stamp()}] Thought: {plan.thought}")

                batch = await executor.execute(
                    plan.items, element_positions=_positions(elements)
                )
                task_log.extend(batch.recorded_ops)
                action_count += batch.completed_count

                if (
                    self._store is not None
                    and not batch.bail_reason
                    and len(batch.recorded_ops) >= 2
                ):
                    name = plan.sequence_name or self._store.auto_name(batch.recorded_ops)
                    self._store.record(
                        domain,
                        await self._page_path(),
                        name,
                        batch.recorded_ops,
                        await current_viewport(self._driver),
                    )
                    logger.debug(
                        'Saved new playbook "%s" (%d ops)', name, len(batch.recorded_ops)
                    )

                if batch.terminal is not None:
                    status: TaskStatus = (
                        "completed" if batch.terminal.type == "done" else "failed"
                    )
                    return _result(status, batch.terminal.reason)

                feedback = format_batch_feedback(batch.results, batch.bail_reason)
                await self._settle(self._driver)

                if action_count >= self._config.max_actions:
                    logger.info("Max actions (%d) reached for goal", self._config.max_actions)
                    break

            return _result("timeout", "Goal timeout exceeded")
        finally:
            await self._checkpoint(domain, task_log)

    async def _checkpoint(self, domain: str, task_log: Sequence[RecordedOperation]) -> None:
        if self._store is None:
            return
        try:
            if len(task_log) >= 2:
                stitched = self._store.stitch_from_log(
                    domain,
                    await self._page_path(),
                    task_log,
                    await current_viewport(self._driver),
                )
                if stitched:
                    logger.debug(
                        "Post-task stitching created %d playbooks from %d operations",
                        len(stitched),
                        len(task_log),
                    )
            await self._store.save(domain)
        except Exception:
            logger.exception("Failed to persist playbooks for %s", domain)

    async def _safe_url(self) -> str:
        try:
            return await current_url(self._driver)
        except Exception:
            return ""

    async def _page_path(self) -> str:
        return urlparse(await self._safe_url()).path or "/"


def normalize_url(url: str) -> str:
    """Default to https for bare hosts; reject URLs without a host."""
    url = url.strip()
    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"
    if not urlparse(url).hostname:
        raise PagePilotError(f"Start URL has no host: {url!r}")
    return url


def format_batch_feedback(results: Sequence[StepResult], bail_reason: Optional[str]) -> str:
    lines = []
    for result in results:
        if result.success:
            lines.append(f"OK: {result.description}")
        else:
            lines.append(f"FAILED: {result.description} ({result.error})")
    if bail_reason:
        lines.append(f"Batch stopped early: {bail_reason}")
    return "\n".join(lines) if lines else "No actions were executed."


def _format_elements(elements: Sequence[PageElement]) -> str:
    return "\n".join(
        f'{el.tag} "{el.text}" selector={el.selector}' for el in elements
    )


def _positions(elements: Sequence[PageElement]) -> Dict[str, Tuple[float, float]]:
    return {el.selector: (el.x, el.y) for el in elements}


def _stamp() -> str:
    return datetime.now(timezone.utc).isoformat()
