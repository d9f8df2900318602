from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional

from app.services.scoring_engine import (
    _CODE_FENCE,
    BackoffPolicy,
    ReasoningClient,
    SleepFn,
    _content_from_payload,
    _load_json,
    complete_with_retry,
    sanitize_text,
)

LOGGER = logging.getLogger(__name__)

_MAX_DESCRIPTION_CHARS = 4000
_EMBEDDED_CONDITIONS = re.compile(r"\{[\s\S]*?\"conditions\"[\s\S]*?\}")

CONDITION_PARSER_PROMPT = """You are a medical information extraction assistant. Extract medical conditions from a free-text patient description.

Rules:
1. Use standard medical terminology (e.g. "Type 2 Diabetes Mellitus" rather than "sugar problems").
2. Include stage or grade for cancers when stated (e.g. "Stage IIIA Non-Small Cell Lung Cancer").
3. Include biomarker status when stated (e.g. "HER2-positive Breast Cancer", "EGFR mutation").
4. Do NOT include demographics, treatments, or medications.
5. Do NOT make up conditions that are not mentioned or clearly implied.

Respond with valid JSON only:
{"conditions": ["condition 1", "condition 2"]}

If no conditions are found, respond with:
{"conditions": []}"""


def build_condition_messages(description: str) -> List[Dict[str, str]]:
    text = sanitize_text(description, limit=_MAX_DESCRIPTION_CHARS)
    return [
        {"role": "system", "content": CONDITION_PARSER_PROMPT},
        {
            "role": "user",
            "content": f"Extract medical conditions from this description:\n\n{text}",
        },
    ]


def _conditions_from(payload: Any) -> Optional[List[str]]:
    if not isinstance(payload, dict):
        return None
    conditions = payload.get("conditions")
    if not isinstance(conditions, list):
        return None
    return [item.strip() for item in conditions if isinstance(item, str) and item.strip()]


def parse_conditions_response(content: Optional[str]) -> List[str]:
    """Pull the condition list out of a reply; anything unreadable yields []."""
    if not isinstance(content, str) or not content.strip():
        return []

    conditions = _conditions_from(_load_json(_CODE_FENCE.sub("", content)))
    if conditions is not None:
        return conditions

    embedded = _EMBEDDED_CONDITIONS.search(content)
    if embedded:
        conditions = _conditions_from(_load_json(embedded.group(0)))
        if conditions is not None:
            return conditions

    LOGGER.warning("could not read conditions from reply: %s", content[:200])
    return []


class ConditionParser:
    """Turns a free-text description into normalized condition names."""

    def __init__(
        self,
        client: ReasoningClient,
        policy: Optional[BackoffPolicy] = None,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        self._client = client
        self._policy = policy or BackoffPolicy()
        self._sleep = sleep or asyncio.sleep

    async def parse(self, description: str) -> List[str]:
        """Raises ReasoningServiceUnavailable once retries are exhausted."""
        payload = await complete_with_retry(
            self._client, build_condition_messages(description), self._policy, self._sleep
        )
        conditions = parse_conditions_response(_content_from_payload(payload))
        LOGGER.info("parsed %s conditions from description", len(conditions))
        return conditions
