from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Optional

from .driver import BrowserDriver
from .schemas import SettleReport

logger = logging.getLogger(__name__)

DEFAULT_SETTLE_TIMEOUT_MS = 2_000
DEFAULT_QUIET_PERIOD_MS = 100
# Slack on top of the in-page cap before the host side gives up on the driver.
_HOST_GRACE_MS = 500

_SETTLE_SCRIPT = """
([timeoutMs, quietMs]) => new Promise((resolve) => {
    const t0 = performance.now();
    if (!document.body) {
        resolve({ elapsed: 0, mutations: 0, reason: 'no-body' });
        return;
    }
    let mutations = 0;
    let quietTimer;
    let hardTimer;
    const finish = (reason) => {
        observer.disconnect();
        clearTimeout(quietTimer);
        clearTimeout(hardTimer);
        resolve({ elapsed: Math.round(performance.now() - t0), mutations, reason });
    };
    const observer = new MutationObserver(() => {
        mutations++;
        clearTimeout(quietTimer);
        quietTimer = setTimeout(() => finish('quiet'), quietMs);
    });
    observer.observe(document.body, {
        childList: true, subtree: true, attributes: true, characterData: true,
    });
    hardTimer = setTimeout(() => finish('timeout'), timeoutMs);
    quietTimer = setTimeout(() => finish('no-mutations'), quietMs);
})
"""


async def wait_for_settle(
    driver: BrowserDriver,
    *,
    timeout_ms: int = DEFAULT_SETTLE_TIMEOUT_MS,
    quiet_period_ms: int = DEFAULT_QUIET_PERIOD_MS,
) -> Optional[SettleReport]:
    """
    Wait until the page stops mutating, bounded by ``timeout_ms``.

    A MutationObserver on ``document.body`` restarts a quiet-period timer on every
    mutation; the wait ends once ``quiet_period_ms`` passes with no mutations or the
    hard cap expires, whichever comes first. If the page navigates mid-wait the
    evaluation rejects; navigation is itself a settle signal, so any failure here is
    logged and swallowed and ``None`` is returned.
    """
    t0 = time.monotonic()
    try:
        raw = await asyncio.wait_for(
            driver.evaluate(_SETTLE_SCRIPT, [timeout_ms, quiet_period_ms]),
            timeout=(timeout_ms + _HOST_GRACE_MS) / 1000,
        )
    except asyncio.TimeoutError:
        logger.debug(
            "DOM settle: driver did not answer within %dms, continuing", timeout_ms
        )
        return None
    except Exception as exc:
        logger.debug(
            "DOM settle: page navigated or context lost after %dms (%s), treating as settled",
            _elapsed_ms(t0),
            exc,
        )
        return None

    report = _parse_report(raw)
    if report is None:
        logger.debug("DOM settled in %dms", _elapsed_ms(t0))
        return None
    logger.debug(
        "DOM settled in %dms (in-page: %dms, mutations: %d, reason: %s)",
        _elapsed_ms(t0),
        report.elapsed,
        report.mutations,
        report.reason,
    )
    return report


def _parse_report(raw: Any) -> Optional[SettleReport]:
    try:
        if isinstance(raw, str):
            raw = json.loads(raw)
        if not isinstance(raw, dict):
            return None
        return SettleReport.model_validate(raw)
    except ValueError:
        return None


def _elapsed_ms(t0: float) -> int:
    return int((time.monotonic() - t0) * 1000)
