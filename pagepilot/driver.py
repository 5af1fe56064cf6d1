from __future__ import annotations

import json
import logging
from typing import Any, List, Optional, Protocol

from playwright.async_api import Page

from .schemas import PageElement, ScrollOffset, Viewport

logger = logging.getLogger(__name__)

DEFAULT_VIEWPORT = Viewport(width=1440, height=900)
LABEL_ATTRIBUTE = "data-pagepilot-label"

_URL_SCRIPT = "() => window.location.href"
_VIEWPORT_SCRIPT = "() => ({ width: window.innerWidth, height: window.innerHeight })"
_SCROLL_SCRIPT = "() => ({ x: window.scrollX, y: window.scrollY })"

_RESOLVE_LABEL_SCRIPT = """
([label, attr]) => {
    const wanted = label.trim().toLowerCase();
    if (!wanted) return null;
    const isVisible = el => {
        const rect = el.getBoundingClientRect();
        if (rect.width === 0 || rect.height === 0) return false;
        const style = window.getComputedStyle(el);
        return style.visibility !== 'hidden' && style.display !== 'none';
    };
    const textOf = el => [
        el.getAttribute('aria-label'),
        el.getAttribute('placeholder'),
        el.getAttribute('title'),
        el.value,
        el.innerText,
    ].filter(v => typeof v === 'string').map(v => v.trim().toLowerCase());
    const candidates = Array.from(document.querySelectorAll(
        'a, button, input, textarea, select, label, [role], [tabindex], [contenteditable="true"]'
    )).filter(isVisible);
    const exact = candidates.find(el => textOf(el).some(t => t === wanted));
    const match = exact || candidates.find(el => textOf(el).some(t => t.includes(wanted)));
    if (!match) return null;
    const counter = (window.__pagepilotLabelCounter = (window.__pagepilotLabelCounter || 0) + 1);
    match.setAttribute(attr, String(counter));
    return `[${attr}="${counter}"]`;
}
"""


class BrowserDriver(Protocol):
    """Primitive page interactions the executor relies on."""

    async def click(self, selector: str) -> None: ...

    async def type(self, selector: str, text: str) -> None: ...

    async def press(self, key: str) -> None: ...

    async def scroll(self, direction: str, amount: int) -> None: ...

    async def hover(self, selector: str) -> None: ...

    async def wait(self, ms: int) -> None: ...

    async def evaluate(self, script: str, arg: Any = None) -> Any: ...

    async def mouse_click(self, x: int, y: int) -> None: ...

    async def resolve_label(self, label: str) -> Optional[str]: ...


class PlaywrightDriver:
    """Browser driver backed by a Playwright page."""

    def __init__(self, page: Page, *, action_timeout_ms: int = 5_000) -> None:
        self._page = page
        self._timeout = action_timeout_ms

    @property
    def page(self) -> Page:
        return self._page

    async def click(self, selector: str) -> None:
        await self._page.click(selector, timeout=self._timeout)

    async def type(self, selector: str, text: str) -> None:
        await self._page.fill(selector, text, timeout=self._timeout)

    async def press(self, key: str) -> None:
        await self._page.keyboard.press(key)

    async def scroll(self, direction: str, amount: int) -> None:
        dy = -abs(amount) if direction == "up" else abs(amount)
        await self._page.mouse.wheel(0, dy)

    async def hover(self, selector: str) -> None:
        await self._page.hover(selector, timeout=self._timeout)

    async def wait(self, ms: int) -> None:
        await self._page.wait_for_timeout(ms)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if arg is None:
            return await self._page.evaluate(script)
        return await self._page.evaluate(script, arg)

    async def mouse_click(self, x: int, y: int) -> None:
        await self._page.mouse.click(x, y)

    async def resolve_label(self, label: str) -> Optional[str]:
        selector = await self._page.evaluate(_RESOLVE_LABEL_SCRIPT, [label, LABEL_ATTRIBUTE])
        if selector:
            logger.debug("Resolved label %r to %s", label, selector)
        return selector or None


async def current_url(driver: BrowserDriver) -> str:
    """Current page URL; raises when the page context is gone."""
    return str(await driver.evaluate(_URL_SCRIPT))


async def current_viewport(driver: BrowserDriver) -> Viewport:
    try:
        dims = _as_mapping(await driver.evaluate(_VIEWPORT_SCRIPT))
        return Viewport(width=int(dims["width"]), height=int(dims["height"]))
    except Exception:
        return DEFAULT_VIEWPORT


async def current_scroll(driver: BrowserDriver) -> ScrollOffset:
    try:
        offset = _as_mapping(await driver.evaluate(_SCROLL_SCRIPT))
        return ScrollOffset(x=float(offset["x"]), y=float(offset["y"]))
    except Exception:
        return ScrollOffset()


async def selector_exists(driver: BrowserDriver, selector: str) -> bool:
    return bool(
        await driver.evaluate(
            # Selectors querySelector cannot parse (engine-specific syntax) count as present.
            "(selector) => { try { return !!document.querySelector(selector); }"
            " catch (e) { return true; } }",
            selector,
        )
    )


def _as_mapping(value: Any) -> dict:
    # Some drivers hand back JSON strings instead of objects.
    if isinstance(value, str):
        value = json.loads(value)
    if not isinstance(value, dict):
        raise TypeError(f"expected mapping, got {type(value).__name__}")
    return value


_SNAPSHOT_SCRIPT = """
(limit) => {
    const cssPath = el => {
        if (el.id && /^[A-Za-z][\\w-]*$/.test(el.id)) return `#${el.id}`;
        const parts = [];
        let node = el;
        while (node && node.nodeType === 1 && node !== document.body && parts.length < 5) {
            let part = node.tagName.toLowerCase();
            if (node.id && /^[A-Za-z][\\w-]*$/.test(node.id)) {
                parts.unshift(`#${node.id}`);
                break;
            }
            const parent = node.parentElement;
            if (parent) {
                const siblings = Array.from(parent.children).filter(c => c.tagName === node.tagName);
                if (siblings.length > 1) part += `:nth-of-type(${siblings.indexOf(node) + 1})`;
            }
            parts.unshift(part);
            node = parent;
        }
        return parts.join(' > ');
    };
    const out = [];
    const nodes = document.querySelectorAll(
        'a[href], button, input, textarea, select, [role="button"], [role="link"], [contenteditable="true"]'
    );
    for (const el of nodes) {
        const rect = el.getBoundingClientRect();
        if (rect.width === 0 || rect.height === 0) continue;
        if (rect.bottom < 0 || rect.top > window.innerHeight) continue;
        const text = (el.getAttribute('aria-label') || el.getAttribute('placeholder') ||
            el.innerText || el.value || '').trim().replace(/\\s+/g, ' ').slice(0, 80);
        out.push({
            selector: cssPath(el),
            tag: el.tagName.toLowerCase(),
            text,
            x: rect.x + rect.width / 2,
            y: rect.y + rect.height / 2,
        });
        if (out.length >= limit) break;
    }
    return out;
}
"""


async def snapshot_elements(driver: BrowserDriver, *, limit: int = 60) -> List[PageElement]:
    """Visible interactive elements in document order; empty if the page is mid-navigation."""
    try:
        raw = await driver.evaluate(_SNAPSHOT_SCRIPT, limit)
    except Exception as exc:
        logger.debug("Element snapshot failed: %s", exc)
        return []
    if isinstance(raw, str):
        raw = json.loads(raw)
    elements: List[PageElement] = []
    for item in raw or []:
        try:
            elements.append(PageElement.model_validate(item))
        except ValueError:
            continue
    return elements
