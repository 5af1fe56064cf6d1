"""Command-line entrypoint: run one goal against one site."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import asdict
from typing import Optional

from playwright.async_api import async_playwright

from .config import RunnerConfig
from .driver import PlaywrightDriver
from .errors import OracleError, PagePilotError
from .oracle import LLMDecisionOracle
from .session import TaskResult, TaskRunner, normalize_url
from .storage import PlaybookStore

LOGGER = logging.getLogger(__name__)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive a web page towards a goal")
    parser.add_argument("--url", required=True, help="Start URL")
    parser.add_argument("--goal", required=True, help="What the agent should accomplish")
    parser.add_argument(
        "--provider",
        default=None,
        help="Oracle provider: gemini or chatgpt (default: PAGEPILOT_ORACLE_PROVIDER or gemini)",
    )
    parser.add_argument(
        "--no-playbooks",
        action="store_true",
        help="Disable playbook recording and replay",
    )
    parser.add_argument("--headed", action="store_true", help="Show the browser window")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    return parser.parse_args(argv)


async def run(url: str, goal: str, config: RunnerConfig, provider: Optional[str]) -> TaskResult:
    url = normalize_url(url)
    oracle = LLMDecisionOracle(provider)
    if not oracle.enabled:
        raise OracleError("Oracle is not configured; set GEMINI_API_KEY or OPENAI_API_KEY")
    store = PlaybookStore(config.data_dir)
    viewport = {"width": config.viewport.width, "height": config.viewport.height}
    async with async_playwright() as playwright:
        browser = await playwright.chromium.launch(headless=config.headless)
        try:
            context = await browser.new_context(
                viewport=viewport, device_scale_factor=1.0, locale="en-US"
            )
            page = await context.new_page()
            await page.goto(url, wait_until="domcontentloaded")
            runner = TaskRunner(PlaywrightDriver(page), oracle, store, config=config)
            return await runner.run(goal, url)
        finally:
            await browser.close()


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    config = RunnerConfig.from_env()
    if args.no_playbooks:
        config.playbooks_enabled = False
    if args.headed:
        config.headless = False

    LOGGER.info("Running goal against %s", args.url)
    try:
        result = asyncio.run(run(args.url, args.goal, config, args.provider))
    except PagePilotError as exc:
        LOGGER.error("%s", exc)
        raise SystemExit(2) from exc
    except KeyboardInterrupt:  # pragma: no cover - graceful shutdown
        LOGGER.info("Interrupted")
        return
    print(json.dumps(asdict(result), indent=2, ensure_ascii=False))
    if result.status != "completed":
        raise SystemExit(1)


if __name__ == "__main__":
    main()
