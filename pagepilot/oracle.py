from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from pydantic import ValidationError

from .errors import OracleError, OracleResponseError
from .executor import MAX_BATCH_SIZE
from .schemas import (
    OPERATION_TYPES,
    VERDICT_TYPES,
    Operation,
    Plan,
    PlanItem,
    PlaybookReference,
    Verdict,
)

logger = logging.getLogger(__name__)

DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"
DEFAULT_CHATGPT_MODEL = "gpt-5"

SYSTEM_PROMPT = """You are driving a web browser to accomplish a goal for a user.
For each turn, look at the page elements and the recent history, then decide what to do next.

Your response MUST be valid JSON with this structure:
{
  "thought": "one or two sentences about what you are doing",
  "sequenceName": "optional short name for this action sequence (for future replay)",
  "actions": [
    {
      "type": "click|type|press|scroll|hover|wait|done|failed",
      "selector": "<CSS selector of the target element>",
      "label": "<visible text of an element that only appears after an earlier action>",
      "playbook": "<name of a stored playbook to replay>",
      "text": "<text to type>",
      "key": "<key to press, e.g. Enter, Escape, Tab>",
      "direction": "up|down",
      "amount": <pixels to scroll>,
      "duration": <ms to wait>,
      "reason": "<why done or failed>"
    }
  ],
  "confidence": <0.0 to 1.0>
}

OPERATION QUEUE MODEL:
The actions run mechanically in order, with no planning in between. After each one the
system waits for the page to settle and stops early if the URL changes, an action fails,
or the next action's selector is no longer on the page. You are then asked again with a
fresh view of the page. Queue as many actions as you can confidently predict (at most 8).
Use "label" instead of "selector" for elements that are not on the page yet.
End with a "done" or "failed" action only when the goal is finished or impossible.
"""


@dataclass
class Observation:
    goal: str
    url: str
    elements_summary: str = ""
    history: List[str] = field(default_factory=list)
    feedback: Optional[str] = None
    playbook_summary: Optional[str] = None


class DecisionOracle(Protocol):
    async def decide(self, observation: Observation) -> Plan: ...


def parse_oracle_response(text: str) -> Plan:
    """
    Normalize a raw oracle reply into a canonical :class:`Plan`.

    Both wire shapes are accepted: ``{"actions": [...]}`` (or a single object under
    ``actions``) and the older ``{"action": {...}}``. Downstream code only ever sees
    ``Plan.items``. Items after the first verdict are dropped and batches are capped
    at ``MAX_BATCH_SIZE``.
    """
    blob = extract_first_json(text or "")
    if blob is None:
        raise OracleResponseError("No JSON found in oracle response", raw_response=text)
    try:
        payload = json.loads(blob)
    except json.JSONDecodeError as exc:
        raise OracleResponseError(f"Invalid JSON in oracle response: {exc}", raw_response=text) from exc
    if not isinstance(payload, dict):
        raise OracleResponseError("Oracle response is not a JSON object", raw_response=text)

    thought = payload.get("thought")
    if not isinstance(thought, str) or not thought.strip():
        raise OracleResponseError("Missing or invalid thought field", raw_response=text)

    raw_actions = payload.get("actions")
    if raw_actions is not None:
        raw_items = raw_actions if isinstance(raw_actions, list) else [raw_actions]
    elif isinstance(payload.get("action"), dict):
        raw_items = [payload["action"]]
    else:
        raise OracleResponseError("Missing action or actions field", raw_response=text)

    items: List[PlanItem] = []
    for raw in raw_items:
        item = _parse_item(raw, text)
        items.append(item)
        if isinstance(item, Verdict):
            break

    if len(items) > MAX_BATCH_SIZE:
        logger.debug("Batch size %d exceeds max %d, truncating", len(items), MAX_BATCH_SIZE)
        items = items[:MAX_BATCH_SIZE]

    confidence = payload.get("confidence")
    sequence_name = payload.get("sequenceName")
    return Plan(
        thought=thought,
        items=items,
        sequence_name=sequence_name if isinstance(sequence_name, str) and sequence_name else None,
        confidence=float(confidence) if isinstance(confidence, (int, float)) else 0.5,
    )


def _parse_item(raw: Any, text: str) -> PlanItem:
    if not isinstance(raw, dict):
        raise OracleResponseError(f"Action is not an object: {raw!r}", raw_response=text)
    if isinstance(raw.get("playbook"), str) and raw["playbook"].strip():
        return PlaybookReference(playbook=raw["playbook"].strip())
    kind = raw.get("type")
    if not kind:
        raise OracleResponseError("Action missing both type and playbook fields", raw_response=text)
    try:
        if kind in VERDICT_TYPES:
            return Verdict(type=kind, reason=raw.get("reason"))
        if kind in OPERATION_TYPES:
            fields = {
                key: raw[key]
                for key in ("selector", "label", "text", "key", "direction", "amount", "duration")
                if raw.get(key) not in (None, "")
            }
            return Operation(type=kind, **fields)
    except ValidationError as exc:
        raise OracleResponseError(f"Invalid {kind} action: {exc}", raw_response=text) from exc
    raise OracleResponseError(f"Unknown action type '{kind}'", raw_response=text)


def extract_first_json(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` block in ``text``, ignoring braces in strings."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        start = text.find("{", start + 1)
    return None


def build_prompt(observation: Observation) -> str:
    lines = [
        f"GOAL: {observation.goal}",
        f"CURRENT URL: {observation.url}",
    ]
    if observation.elements_summary:
        lines.append("")
        lines.append("PAGE ELEMENTS:")
        lines.append(observation.elements_summary)
    if observation.playbook_summary:
        lines.append("")
        lines.append(observation.playbook_summary)
    if observation.history:
        lines.append("")
        lines.append("RECENT ACTIONS:")
        lines.extend(f"- {item}" for item in observation.history[-5:])
    if observation.feedback:
        lines.append("")
        lines.append("RESULT OF LAST BATCH:")
        lines.append(observation.feedback)
    return "\n".join(lines)


class LLMDecisionOracle:
    """Plans the next batch using either Gemini or ChatGPT."""

    SUPPORTED_PROVIDERS = {"gemini", "chatgpt"}

    def __init__(self, provider: Optional[str] = None) -> None:
        self._provider = (provider or os.environ.get("PAGEPILOT_ORACLE_PROVIDER", "gemini")).lower()
        self._debug = os.environ.get("PAGEPILOT_ORACLE_DEBUG") == "1"
        self._gemini_client = None
        self._gemini_config = None
        self._gemini_model_id = os.environ.get("PAGEPILOT_GEMINI_MODEL", DEFAULT_GEMINI_MODEL)
        self._openai_client = None
        self._openai_model_id = os.environ.get("PAGEPILOT_CHATGPT_MODEL", DEFAULT_CHATGPT_MODEL)

        if self._provider not in self.SUPPORTED_PROVIDERS:
            raise OracleError(f"Unsupported oracle provider '{self._provider}'")

        if self._provider == "gemini":
            api_key = os.environ.get("GEMINI_API_KEY")
            if not api_key:
                logger.warning("Gemini oracle not configured (missing GEMINI_API_KEY).")
                return
            from google import genai  # Imported lazily so tests never need the SDK.
            from google.genai import types

            self._gemini_client = genai.Client(api_key=api_key)
            self._gemini_config = types.GenerateContentConfig(
                system_instruction=SYSTEM_PROMPT,
                temperature=0.2,
                response_mime_type="application/json",
            )
        else:
            api_key = os.environ.get("OPENAI_API_KEY")
            if not api_key:
                logger.warning("ChatGPT oracle not configured (missing OPENAI_API_KEY).")
                return
            from openai import OpenAI  # Imported lazily to avoid a hard dependency when unused.

            self._openai_client = OpenAI(api_key=api_key)

    @property
    def enabled(self) -> bool:
        return bool(self._gemini_client or self._openai_client)

    async def decide(self, observation: Observation) -> Plan:
        if not self.enabled:
            raise OracleError(
                f"{self._provider} oracle disabled; set the provider API key to enable it."
            )
        prompt = build_prompt(observation)
        if self._debug:
            logger.info("Oracle prompt: %s", prompt[:2000])
        if self._gemini_client is not None:
            raw = await self._ask_gemini(prompt)
        else:
            raw = await self._ask_chatgpt(prompt)
        if self._debug:
            logger.info("Oracle response: %s", raw[:2000])
        return parse_oracle_response(raw)

    async def _ask_gemini(self, prompt: str) -> str:
        response = await asyncio.to_thread(
            self._gemini_client.models.generate_content,
            model=self._gemini_model_id,
            contents=prompt,
            config=self._gemini_config,
        )
        text = getattr(response, "text", None)
        if not text:
            raise OracleResponseError("Gemini returned an empty response", raw_response="")
        return text

    async def _ask_chatgpt(self, prompt: str) -> str:
        messages: List[Dict[str, str]] = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
        response = await asyncio.to_thread(
            self._openai_client.chat.completions.create,
            model=self._openai_model_id,
            messages=messages,
            response_format={"type": "json_object"},
        )
        choices = getattr(response, "choices", None) or []
        text = choices[0].message.content if choices else None
        if not text:
            raise OracleResponseError("ChatGPT returned an empty response", raw_response="")
        return text
