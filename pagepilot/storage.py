from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set

from pydantic import ValidationError

from .coords import rescale
from .schemas import (
    Operation,
    Playbook,
    PlaybookFile,
    RecordedOperation,
    Viewport,
    dump,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".pagepilot" / "domains"
PLAYBOOK_FILENAME = "playbooks.json"
STITCH_WINDOW = 6
AUTO_NAME_PARTS = 3
NAME_SEPARATOR = " → "


@dataclass
class PlaybookExpansion:
    operations: List[Operation]
    playbook: Playbook


class PlaybookStore:
    """
    Domain-scoped store of named operation sequences.

    Each domain lives in memory once loaded and is flushed explicitly with ``save``
    as a whole-file replace of ``<data_dir>/<domain>/playbooks.json``. There is no
    cross-process locking: two processes saving the same domain race and the last
    write wins.
    """

    def __init__(self, data_dir: Optional[Path] = None) -> None:
        self._data_dir = Path(data_dir or DEFAULT_DATA_DIR).expanduser()
        self._data: Dict[str, PlaybookFile] = {}
        self._loaded: Set[str] = set()

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def _filepath(self, domain: str) -> Path:
        return self._data_dir / domain / PLAYBOOK_FILENAME

    def _bucket(self, domain: str) -> PlaybookFile:
        bucket = self._data.get(domain)
        if bucket is None:
            bucket = PlaybookFile(domain=domain)
            self._data[domain] = bucket
        return bucket

    # --- Persistence ---------------------------------------------------------

    async def load(self, domain: str) -> None:
        if domain in self._loaded:
            return
        path = self._filepath(domain)

        def _read() -> Optional[PlaybookFile]:
            if not path.exists():
                return None
            return PlaybookFile.model_validate_json(path.read_text(encoding="utf-8"))

        try:
            data = await asyncio.to_thread(_read)
        except (OSError, ValidationError, ValueError) as exc:
            logger.warning("Ignoring unreadable playbook store %s: %s", path, exc)
            data = None

        if data is None:
            logger.info("No existing playbooks for domain %s", domain)
            data = PlaybookFile(domain=domain)
        else:
            logger.info("Loaded %d playbooks for %s", len(data.playbooks), domain)

        existing = self._data.get(domain)
        if existing is not None:
            # Keep anything recorded before the lazy load happened.
            data.playbooks.extend(existing.playbooks)
        self._data[domain] = data
        self._loaded.add(domain)

    async def save(self, domain: str) -> None:
        data = self._data.get(domain)
        if data is None:
            return
        path = self._filepath(domain)
        payload = json.dumps(
            dump(data),
            indent=2,
            ensure_ascii=False,
        )

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=path.parent, prefix=".playbooks-", suffix=".json.tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise

        await asyncio.to_thread(_write)
        logger.info("Saved %d playbooks for %s", len(data.playbooks), domain)

    # --- Recording and lookup -----------------------------------------------

    def record(
        self,
        domain: str,
        page_path: str,
        name: str,
        operations: Sequence[Operation],
        viewport: Viewport,
    ) -> Playbook:
        now = utc_now_iso()
        playbook = Playbook(
            id=generate_id(operations),
            name=name,
            domain=domain,
            page_path=page_path,
            operations=[_strip_metadata(op) for op in operations],
            recorded_viewport=viewport,
            # Recording follows a clean run, which counts as the first success.
            success_count=1,
            fail_count=0,
            last_used=now,
            created_at=now,
        )
        self._bucket(domain).playbooks.append(playbook)
        logger.debug(
            'Recorded playbook "%s" with %d operations for %s',
            name,
            len(operations),
            domain,
        )
        return playbook

    def find(self, domain: str, name: str) -> Optional[Playbook]:
        data = self._data.get(domain)
        if data is None or not name:
            return None
        wanted = name.lower()
        for playbook in data.playbooks:
            if playbook.name.lower() == wanted:
                return playbook
        for playbook in data.playbooks:
            if wanted in playbook.name.lower():
                return playbook
        return None

    def get_playbooks(self, domain: str) -> List[Playbook]:
        data = self._data.get(domain)
        return list(data.playbooks) if data else []

    def expand(
        self, domain: str, name: str, current_viewport: Viewport
    ) -> Optional[PlaybookExpansion]:
        """Rescale a stored playbook to ``current_viewport``; the stored copy is untouched."""
        playbook = self.find(domain, name)
        if playbook is None:
            return None
        operations: List[Operation] = []
        for op in playbook.operations:
            if op.position is None:
                operations.append(op.model_copy())
                continue
            operations.append(
                op.model_copy(update={"position": rescale(op.position, current_viewport)})
            )
        return PlaybookExpansion(operations=operations, playbook=playbook)

    def mark_success(self, playbook: Playbook) -> None:
        playbook.success_count += 1
        playbook.last_used = utc_now_iso()

    def mark_failure(self, playbook: Playbook) -> None:
        playbook.fail_count += 1
        playbook.last_used = utc_now_iso()

    def get_summary(self, domain: str) -> str:
        """Listing of the domain's playbooks, phrased for the planning prompt."""
        playbooks = self.get_playbooks(domain)
        if not playbooks:
            return ""
        lines = [
            "STORED PLAYBOOKS (from previous visits):",
            "Reference a playbook by name to replay the stored sequence.",
            "",
        ]
        for playbook in playbooks:
            steps = NAME_SEPARATOR.join(op.describe() for op in playbook.operations)
            lines.append(
                f'- "{playbook.name}" ({len(playbook.operations)} steps, '
                f"{playbook.reliability}% reliable): {steps}"
            )
        lines.append("")
        lines.append(
            'To use a playbook, include it in your actions: {"playbook": "playbook name"}'
        )
        lines.append("You can mix playbook references with inline actions in the same batch.")
        return "\n".join(lines)

    # --- Stitching -----------------------------------------------------------

    def stitch_from_log(
        self,
        domain: str,
        page_path: str,
        log: Sequence[RecordedOperation],
        viewport: Viewport,
    ) -> List[Playbook]:
        """
        Group a finished task's operation log into playbooks after the fact.

        Greedy, non-overlapping: each window of up to ``STITCH_WINDOW`` operations
        either bumps the playbook already carrying its auto-name or becomes a new one,
        and the scan resumes after the window. Running it twice over the same log
        creates nothing new the second time.
        """
        created: List[Playbook] = []
        start = 0
        while start < len(log):
            window = list(log[start : start + STITCH_WINDOW])
            start += len(window)
            if len(window) < 2:
                continue
            name = auto_name(window)
            existing = self._find_exact(domain, name)
            if existing is not None:
                self.mark_success(existing)
                continue
            created.append(self.record(domain, page_path, name, window, viewport))
        if created:
            logger.info(
                "Stitched %d playbooks from %d operations on %s",
                len(created),
                len(log),
                domain,
            )
        return created

    def auto_name(self, operations: Sequence[Operation]) -> str:
        return auto_name(operations)

    def _find_exact(self, domain: str, name: str) -> Optional[Playbook]:
        wanted = name.lower()
        for playbook in self.get_playbooks(domain):
            if playbook.name.lower() == wanted:
                return playbook
        return None


def auto_name(operations: Sequence[Operation]) -> str:
    parts: List[str] = []
    for op in operations:
        if op.type == "wait":
            continue
        parts.append(_describe_for_name(op))
        if len(parts) == AUTO_NAME_PARTS:
            break
    return NAME_SEPARATOR.join(parts)


def generate_id(operations: Sequence[Operation]) -> str:
    """Stable id from the structural content only (types, targets, text, keys)."""
    content = "|".join(
        f"{op.type}:{op.selector or op.label or ''}:{op.text or ''}:{op.key or ''}"
        for op in operations
    )
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:12]


def _describe_for_name(op: Operation) -> str:
    description = getattr(op, "description", None)
    if description:
        return description
    target = (op.selector or op.label or "")[:30]
    if op.type == "click":
        return f"click {target or 'element'}"
    if op.type == "type":
        return f'type "{(op.text or "")[:20]}"'
    if op.type == "press":
        return f"press {op.key or 'key'}"
    if op.type == "scroll":
        return f"scroll {op.direction or 'down'}"
    if op.type == "hover":
        return f"hover {target or 'element'}"
    return op.type


def _strip_metadata(op: Operation) -> Operation:
    if isinstance(op, RecordedOperation):
        return op.as_operation()
    return op.model_copy()
