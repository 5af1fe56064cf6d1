from __future__ import annotations

from typing import Any, Dict, List, Optional, Set

import pytest

from pagepilot.storage import PlaybookStore


class ContextLost(RuntimeError):
    pass


class FakeDriver:
    """Scripted stand-in for a browser page.

    ``present`` holds the selectors that exist on the page, ``failing`` the ones
    whose click/type/hover raise, and ``navigates`` maps a selector to the URL the
    page moves to once it is clicked.
    """

    def __init__(
        self,
        *,
        url: str = "https://shop.example.com/",
        present: Optional[Set[str]] = None,
        failing: Optional[Set[str]] = None,
        navigates: Optional[Dict[str, str]] = None,
        labels: Optional[Dict[str, str]] = None,
        viewport: tuple = (1440, 900),
        elements: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        self.url = url
        self.present = set(present or ())
        self.failing = set(failing or ())
        self.navigates = dict(navigates or {})
        self.labels = dict(labels or {})
        self.viewport = viewport
        self.elements = list(elements or [])
        self.context_lost = False
        self.calls: List[tuple] = []

    def _act(self, name: str, selector: str, *extra: Any) -> None:
        self.calls.append((name, selector, *extra))
        if selector in self.failing:
            raise RuntimeError(f"Timeout waiting for {selector}")
        if name == "click" and selector in self.navigates:
            self.url = self.navigates[selector]

    async def click(self, selector: str) -> None:
        self._act("click", selector)

    async def type(self, selector: str, text: str) -> None:
        self._act("type", selector, text)

    async def press(self, key: str) -> None:
        self.calls.append(("press", key))

    async def scroll(self, direction: str, amount: int) -> None:
        self.calls.append(("scroll", direction, amount))

    async def hover(self, selector: str) -> None:
        self._act("hover", selector)

    async def wait(self, ms: int) -> None:
        self.calls.append(("wait", ms))

    async def mouse_click(self, x: int, y: int) -> None:
        self.calls.append(("mouse_click", x, y))

    async def resolve_label(self, label: str) -> Optional[str]:
        self.calls.append(("resolve_label", label))
        return self.labels.get(label)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if self.context_lost:
            raise ContextLost("Execution context was destroyed")
        if "location.href" in script:
            return self.url
        if "innerWidth" in script:
            return {"width": self.viewport[0], "height": self.viewport[1]}
        if "scrollX" in script:
            return {"x": 0, "y": 0}
        if "querySelector(selector)" in script:
            return arg in self.present
        if "MutationObserver" in script:
            return {"elapsed": 5, "mutations": 0, "reason": "no-mutations"}
        if "cssPath" in script:
            return list(self.elements)
        raise AssertionError(f"unexpected script: {script[:60]}")

    def actions(self) -> List[tuple]:
        return [call for call in self.calls if call[0] != "wait"]


async def no_settle(driver: Any) -> None:
    return None


@pytest.fixture
def store(tmp_path) -> PlaybookStore:
    return PlaybookStore(data_dir=tmp_path / "domains")
