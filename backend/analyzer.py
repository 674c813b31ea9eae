import json
import logging
from datetime import datetime
from typing import Any

import anthropic
from pydantic import ValidationError

from config import DEFAULT_MODEL
from models import ContextUsage, IntentAnalysis
from prompts import ANALYSIS_PROMPT, CONTEXT_TEMPLATE

logger = logging.getLogger("taskpal.analyzer")

FALLBACK_CONFIDENCE = 0.3
FALLBACK_QUESTION = "Sorry, I didn't quite get that. Could you say it another way?"


def strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown code block if the model added one."""
    text = text.strip()
    if text.startswith("```"):
        lines = text.split("\n")
        lines = lines[1:]  # Remove first line (```json)
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]  # Remove last line (```)
        text = "\n".join(lines)
    return text


def response_text(response) -> str:
    for block in response.content:
        if getattr(block, "type", None) == "text":
            return block.text
    return ""


def fallback_analysis(reason: str) -> IntentAnalysis:
    """Structurally valid, low-confidence analysis used whenever the LLM lets us down."""
    return IntentAnalysis(
        primary_action="help",
        confidence=FALLBACK_CONFIDENCE,
        instructions=reason,
        clarification_needed=FALLBACK_QUESTION,
        context_usage=ContextUsage(needs_clarification=True),
    )


def format_context(snapshot: dict[str, Any]) -> str:
    entities = snapshot.get("temporary_entities") or {}
    lines = []
    for message in snapshot.get("recent_messages") or []:
        line = f"{message['role'].upper()}: {message['content']}"
        displayed = message.get("displayed_tasks")
        if displayed:
            shown = ", ".join(f'"{task["title"]}" ({task["id"][:8]})' for task in displayed)
            line += f"\n  Tasks displayed: {shown}"
        lines.append(line)

    return CONTEXT_TEMPLATE.format(
        task_id_map=json.dumps(entities.get("task_id_map") or {}, indent=2, ensure_ascii=False),
        recent_messages="\n".join(lines) or "(none)",
        context=json.dumps(snapshot, indent=2, ensure_ascii=False, default=str),
    )


class IntentAnalyzer:
    """Turns an utterance plus a context snapshot into an IntentAnalysis.

    Never raises for LLM trouble: API errors, non-JSON output and schema
    mismatches all come back as a low-confidence fallback analysis.
    """

    def __init__(self, client: anthropic.AsyncAnthropic, model: str = DEFAULT_MODEL, max_tokens: int = 1024):
        self.client = client
        self.model = model
        self.max_tokens = max_tokens

    async def analyze(self, utterance: str, context_snapshot: dict[str, Any]) -> IntentAnalysis:
        today = datetime.now().strftime("%Y-%m-%d")
        system_prompt = ANALYSIS_PROMPT.format(today=today) + "\n" + format_context(context_snapshot)

        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=system_prompt,
                messages=[{"role": "user", "content": utterance}],
            )
        except anthropic.APIError as e:
            logger.warning("Intent analysis failed: %s", e)
            return fallback_analysis(f"API error: {e}")

        ai_text = strip_code_fence(response_text(response))
        logger.debug("Analyzer response: %s", ai_text)

        try:
            parsed = json.loads(ai_text)
        except json.JSONDecodeError:
            logger.warning("Analyzer returned non-JSON output: %.200s", ai_text)
            return fallback_analysis("Failed to parse AI response")

        if not isinstance(parsed, dict):
            return fallback_analysis("AI response is not an object")

        try:
            analysis = IntentAnalysis.model_validate(parsed)
        except ValidationError as e:
            logger.warning("Analyzer output did not match schema: %s", e)
            return fallback_analysis("AI response did not match the analysis schema")

        logger.info(
            "Analysis: action=%s confidence=%.2f operations=%d",
            analysis.primary_action,
            analysis.confidence,
            len(analysis.operations or []),
        )
        return analysis
