from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import random
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import httpx

from app.services.errors import ReasoningServiceUnavailable
from app.services.models import PatientSummary, TrialCandidate, clamp_score

LOGGER = logging.getLogger(__name__)

_DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
_DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
_DEFAULT_TEMPERATURE = 0.3
_DEFAULT_MAX_COMPLETION_TOKENS = 500
_MAX_FIELD_CHARS = 300
_MAX_ELIGIBILITY_CHARS = 2000

PROCESSING_ERROR_EXPLANATION = "Unable to evaluate match due to processing error."

SYSTEM_PROMPT = """You are a clinical trial matching expert. Evaluate how well a patient matches a clinical trial's eligibility criteria.

HARD DISQUALIFIERS - Score MUST be 0 if ANY of these apply:
- Patient's age is outside the trial's age range (e.g., adult patient for pediatric trial)
- Patient's sex doesn't match the trial's sex restriction
- Patient's condition is completely unrelated to the trial's target condition
- Trial is for "healthy volunteers" but patient has significant health conditions

SCORING GUIDELINES:
- 85-100: Strong match - Patient clearly meets the trial's target population and key criteria
- 70-84: Good match - Patient likely qualifies with minor uncertainties
- 55-69: Moderate match - Patient may qualify pending further evaluation
- 40-54: Possible match - Some criteria met but significant unknowns
- 0-39: Poor match or disqualified - Patient unlikely to meet eligibility

KEY FACTORS TO CONSIDER:
1. Does the patient's condition match the trial's target condition?
2. Age requirements (if specified) - THIS IS A HARD REQUIREMENT
3. Sex requirements (if any)
4. Prior treatment history alignment
5. Biomarker status (if relevant)

FORMAT YOUR RESPONSE AS JSON:
{
  "score": <integer 0-100>,
  "reasoning": "- key match point\\n- key match point\\n- concerns or unknowns"
}

Be concise but specific about WHY this trial matches or doesn't match."""

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WHITESPACE = re.compile(r"[ \t]+")
_AGE_PATTERN = re.compile(
    r"^\s*(\d+)\s*(year|years|month|months|week|weeks|day|days)\s*$",
    re.I,
)
_AGE_RANGE_PATTERN = re.compile(r"^\s*(\d+)\s*(?:-\s*(\d+)|(\+))\s*$")
_CODE_FENCE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", re.I)
_EMBEDDED_JSON = re.compile(r"\{[\s\S]*?\"score\"[\s\S]*?\"reasoning\"[\s\S]*?\}")
_SCORE_FIELD = re.compile(r"\"?score\"?\s*[:=]\s*(-?\d+(?:\.\d+)?)", re.I)
_REASONING_FIELD = re.compile(r"\"reasoning\"\s*:\s*\"((?:[^\"\\]|\\.)*)\"", re.S)


# ---------------------------------------------------------------------------
# Prompt construction
# ---------------------------------------------------------------------------


def sanitize_text(value: Any, limit: int = _MAX_FIELD_CHARS) -> str:
    text = _CONTROL_CHARS.sub(" ", str(value))
    text = _WHITESPACE.sub(" ", text).strip()
    if len(text) > limit:
        text = text[: limit - 3].rstrip() + "..."
    return text


def _join(values: List[str]) -> str:
    return ", ".join(sanitize_text(value) for value in values if value)


def build_patient_prompt(patient: PatientSummary) -> str:
    parts: List[str] = []
    if patient.age_range:
        parts.append(f"Age Range: {sanitize_text(patient.age_range)}")
    elif patient.age is not None:
        parts.append(f"Age: {patient.age}")
    if patient.sex:
        parts.append(f"Sex: {sanitize_text(patient.sex)}")
    if patient.smoking_status:
        parts.append(f"Smoking Status: {sanitize_text(patient.smoking_status)}")
    if patient.state:
        parts.append(f"State: {sanitize_text(patient.state)}")
    if patient.conditions:
        parts.append(f"Conditions: {_join(patient.conditions)}")
    if patient.ai_parsed_conditions:
        parts.append(f"AI-Parsed Conditions: {_join(patient.ai_parsed_conditions)}")

    extracted = patient.extracted
    if extracted is not None:
        if extracted.cancer_type:
            parts.append(f"Cancer Type: {sanitize_text(extracted.cancer_type)}")
        if extracted.cancer_stage:
            parts.append(f"Cancer Stage: {sanitize_text(extracted.cancer_stage)}")
        if extracted.prior_treatments:
            parts.append(f"Prior Treatments: {_join(extracted.prior_treatments)}")
        if extracted.biomarkers:
            biomarkers = ", ".join(
                f"{sanitize_text(item.name)}: {sanitize_text(item.status)}"
                for item in extracted.biomarkers
            )
            parts.append(f"Biomarkers: {biomarkers}")
    return "\n".join(parts)


def build_trial_prompt(trial: TrialCandidate) -> str:
    return "\n".join(
        [
            f"Trial ID: {trial.registry_id}",
            f"Title: {sanitize_text(trial.title)}",
            f"Status: {sanitize_text(trial.status)}",
            f"Conditions: {_join(trial.conditions)}",
            "Eligibility Criteria:\n"
            + sanitize_text(trial.eligibility_summary, _MAX_ELIGIBILITY_CHARS),
        ]
    )


def build_messages(patient: PatientSummary, trial: TrialCandidate) -> List[Dict[str, str]]:
    user_message = (
        f"Patient Profile:\n{build_patient_prompt(patient)}\n\n"
        f"Trial:\n{build_trial_prompt(trial)}\n\n"
        'Respond with JSON: { "score": number 0-100, "reasoning": "brief explanation" }'
    )
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": user_message},
    ]


# ---------------------------------------------------------------------------
# Deterministic disqualifiers
# ---------------------------------------------------------------------------


def parse_age_to_years(value: Optional[str]) -> Optional[float]:
    if not value or not isinstance(value, str):
        return None
    match = _AGE_PATTERN.match(value)
    if not match:
        return None
    amount = float(match.group(1))
    unit = match.group(2).lower()
    if unit.startswith("year"):
        return amount
    if unit.startswith("month"):
        return amount / 12.0
    if unit.startswith("week"):
        return amount / 52.0
    return amount / 365.0


def _patient_age_bounds(patient: PatientSummary) -> Optional[Tuple[float, Optional[float]]]:
    if patient.age is not None:
        return float(patient.age), float(patient.age)
    if not patient.age_range:
        return None
    match = _AGE_RANGE_PATTERN.match(patient.age_range)
    if not match:
        return None
    low = float(match.group(1))
    high = float(match.group(2)) if match.group(2) else None
    return low, high


def check_hard_disqualifiers(patient: PatientSummary, trial: TrialCandidate) -> Optional[str]:
    """Return a reason when structured data alone rules the patient out."""
    bounds = _patient_age_bounds(patient)
    minimum = parse_age_to_years(trial.minimum_age)
    maximum = parse_age_to_years(trial.maximum_age)
    if bounds is not None:
        low, high = bounds
        if maximum is not None and low > maximum:
            return f"Patient age is above the trial maximum age ({trial.maximum_age})."
        if minimum is not None and high is not None and high < minimum:
            return f"Patient age is below the trial minimum age ({trial.minimum_age})."

    trial_sex = (trial.sex or "").strip().lower()
    patient_sex = (patient.sex or "").strip().lower()
    if trial_sex in {"male", "female"} and patient_sex in {"male", "female"}:
        if trial_sex != patient_sex:
            return f"Trial is restricted to {trial_sex} participants."
    return None


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParsedScore:
    score: int
    reasoning: str


@dataclass(frozen=True)
class MalformedResponse:
    reason: str
    raw: str = ""


ParseResult = Union[ParsedScore, MalformedResponse]


def _round_half_up(value: float) -> int:
    if not math.isfinite(value):
        return 100 if value > 0 else 0
    return int(math.floor(value + 0.5))


def _coerce_parsed(payload: Any) -> Optional[ParsedScore]:
    if not isinstance(payload, dict):
        return None
    score = payload.get("score")
    reasoning = payload.get("reasoning")
    if isinstance(score, str):
        try:
            score = float(score.strip())
        except ValueError:
            return None
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        return None
    if not isinstance(reasoning, str) or not math.isfinite(float(score)):
        return None
    return ParsedScore(score=clamp_score(_round_half_up(float(score))), reasoning=reasoning)


def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return None


def parse_match_response(content: Optional[str]) -> ParseResult:
    """Parse a reasoning-service reply without ever raising."""
    if not isinstance(content, str) or not content.strip():
        return MalformedResponse(reason="empty response")

    parsed = _coerce_parsed(_load_json(_CODE_FENCE.sub("", content)))
    if parsed is not None:
        return parsed

    embedded = _EMBEDDED_JSON.search(content)
    if embedded:
        parsed = _coerce_parsed(_load_json(embedded.group(0)))
        if parsed is not None:
            return parsed

    score_match = _SCORE_FIELD.search(content)
    reasoning_match = _REASONING_FIELD.search(content)
    if score_match and reasoning_match:
        reasoning = _load_json(f'"{reasoning_match.group(1)}"')
        if not isinstance(reasoning, str):
            reasoning = reasoning_match.group(1)
        return ParsedScore(
            score=clamp_score(_round_half_up(float(score_match.group(1)))),
            reasoning=reasoning,
        )

    return MalformedResponse(reason="no score/reasoning payload found", raw=content[:500])


def _content_from_payload(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    message = first.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    return content if isinstance(content, str) else None


# ---------------------------------------------------------------------------
# Transport and retry policy
# ---------------------------------------------------------------------------


class RateLimited(Exception):
    def __init__(self, retry_after: Optional[float]) -> None:
        super().__init__(f"rate limited (retry_after={retry_after})")
        self.retry_after = retry_after


class ReasoningTransportError(Exception):
    """Transient failure talking to the reasoning service."""


@dataclass(frozen=True)
class BackoffPolicy:
    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    jitter_ratio: float = 0.0

    def delay_for(
        self,
        attempt: int,
        retry_after: Optional[float] = None,
        rng: Optional[random.Random] = None,
    ) -> float:
        if retry_after is not None and retry_after >= 0:
            return min(retry_after, self.max_delay_seconds)
        delay = self.base_delay_seconds * (2**attempt)
        if self.jitter_ratio > 0:
            delay += delay * self.jitter_ratio * (rng or random).random()
        return min(delay, self.max_delay_seconds)


def _parse_retry_after(raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return None
    try:
        return max(0.0, float(raw.strip()))
    except ValueError:
        return None


class ReasoningClient:
    """OpenAI-compatible chat completion client for match scoring."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout_seconds: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else os.getenv("OPENAI_API_KEY")
        base = base_url or os.getenv("OPENAI_BASE_URL", _DEFAULT_OPENAI_BASE_URL)
        self.base_url = base.rstrip("/")
        self.model = model or os.getenv("OPENAI_MODEL", _DEFAULT_OPENAI_MODEL)
        self.timeout = timeout_seconds
        self._transport = transport

    async def complete(self, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        if not self.api_key:
            raise ReasoningServiceUnavailable("OPENAI_API_KEY not set")

        request_body = {
            "model": self.model,
            "messages": messages,
            "temperature": _DEFAULT_TEMPERATURE,
            "max_completion_tokens": _DEFAULT_MAX_COMPLETION_TOKENS,
            "response_format": {"type": "json_object"},
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=request_body,
                    headers=headers,
                )
        except httpx.RequestError as exc:
            raise ReasoningTransportError(f"{exc.__class__.__name__}: {exc}") from exc

        if response.status_code == 429:
            raise RateLimited(_parse_retry_after(response.headers.get("Retry-After")))
        if response.status_code >= 500:
            raise ReasoningTransportError(f"server error {response.status_code}")
        if response.status_code >= 400:
            raise ReasoningServiceUnavailable(
                f"reasoning service rejected request ({response.status_code})",
                {"status_code": response.status_code},
            )
        try:
            return response.json()
        except ValueError:
            # Surfaced to the parser as an unreadable payload.
            return {}


# ---------------------------------------------------------------------------
# Scorer
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScoreResult:
    score: int
    explanation: str
    outcome: str = "scored"


SleepFn = Callable[[float], Awaitable[None]]


async def complete_with_retry(
    client: ReasoningClient,
    messages: List[Dict[str, str]],
    policy: BackoffPolicy,
    sleep: SleepFn,
) -> Dict[str, Any]:
    """Call the reasoning service, backing off on rate limits and transient errors."""
    attempt = 0
    while True:
        try:
            return await client.complete(messages)
        except (RateLimited, ReasoningTransportError) as exc:
            if attempt >= policy.max_retries:
                raise ReasoningServiceUnavailable(
                    f"reasoning service failed after {attempt + 1} attempts: {exc}"
                ) from exc
            retry_after = exc.retry_after if isinstance(exc, RateLimited) else None
            delay = policy.delay_for(attempt, retry_after)
            LOGGER.warning(
                "reasoning call failed (%s); retrying in %.2fs (attempt %s/%s)",
                exc,
                delay,
                attempt + 1,
                policy.max_retries,
            )
            await sleep(delay)
            attempt += 1


class TrialScorer:
    def __init__(
        self,
        client: ReasoningClient,
        policy: Optional[BackoffPolicy] = None,
        sleep: Optional[SleepFn] = None,
        enforce_hard_disqualifiers: bool = True,
    ) -> None:
        self._client = client
        self._policy = policy or BackoffPolicy()
        self._sleep = sleep or asyncio.sleep
        self._enforce_hard_disqualifiers = enforce_hard_disqualifiers

    async def score(self, patient: PatientSummary, trial: TrialCandidate) -> ScoreResult:
        """Score one patient/trial pair.

        Raises ReasoningServiceUnavailable once retries are exhausted; a
        malformed reply is recovered as a zero score.
        """
        if self._enforce_hard_disqualifiers:
            reason = check_hard_disqualifiers(patient, trial)
            if reason:
                LOGGER.info("trial %s disqualified without scoring: %s", trial.registry_id, reason)
                return ScoreResult(score=0, explanation=reason, outcome="disqualified")

        payload = await complete_with_retry(
            self._client, build_messages(patient, trial), self._policy, self._sleep
        )
        parsed = parse_match_response(_content_from_payload(payload))
        if isinstance(parsed, MalformedResponse):
            LOGGER.error(
                "malformed scoring response for trial %s: %s", trial.registry_id, parsed.reason
            )
            return ScoreResult(
                score=0, explanation=PROCESSING_ERROR_EXPLANATION, outcome="malformed"
            )
        return ScoreResult(score=parsed.score, explanation=parsed.reasoning)

