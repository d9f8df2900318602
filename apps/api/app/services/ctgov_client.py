from __future__ import annotations

import datetime as dt
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx

from app.services.errors import RegistryUnavailable
from app.services.models import TrialCandidate

DEFAULT_BASE_URL = "https://clinicaltrials.gov/api/v2"
STUDY_URL_TEMPLATE = "https://clinicaltrials.gov/study/{nct_id}"
ELIGIBILITY_FALLBACK = "See ClinicalTrials.gov for full eligibility criteria."

LOGGER = logging.getLogger(__name__)

REQUESTED_FIELDS = (
    "NCTId",
    "BriefTitle",
    "OfficialTitle",
    "OverallStatus",
    "Condition",
    "EligibilityCriteria",
    "Sex",
    "MinimumAge",
    "MaximumAge",
    "HealthyVolunteers",
    "CentralContactEMail",
    "CentralContactName",
    "CentralContactPhone",
)

FIELD_MAP = {
    "nct_id": [("protocolSection", "identificationModule", "nctId")],
    "title": [
        ("protocolSection", "identificationModule", "officialTitle"),
        ("protocolSection", "identificationModule", "briefTitle"),
    ],
    "status": [("protocolSection", "statusModule", "overallStatus")],
    "conditions": [("protocolSection", "conditionsModule", "conditions")],
    "eligibility": [("protocolSection", "eligibilityModule",)],
    "central_contacts": [
        ("protocolSection", "contactsLocationsModule", "centralContacts")
    ],
}

_INCLUSION_PATTERN = re.compile(r"inclusion criteria[:\s]*(.{0,500})", re.I | re.S)


@dataclass
class StudyPage:
    studies: List[Dict[str, Any]]
    total_count: Optional[int] = None


class CTGovClient:
    """Async ClinicalTrials.gov v2 client.

    Each call carries its own timeout and is attempted exactly once; any
    failure surfaces as RegistryUnavailable.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        base = base_url or os.getenv("CTGOV_BASE_URL") or DEFAULT_BASE_URL
        self.base_url = base.rstrip("/")
        self.timeout = timeout_seconds
        self._transport = transport

    async def search_studies(
        self,
        query_term: str,
        page_size: int = 30,
    ) -> StudyPage:
        params: Dict[str, str] = {
            "query.term": query_term,
            "pageSize": str(page_size),
            "format": "json",
            "fields": "|".join(REQUESTED_FIELDS),
        }

        data = await self._request_json("GET", "/studies", params=params)
        studies = data.get("studies") or []
        if not isinstance(studies, list):
            raise RegistryUnavailable("CTGov response studies must be a list")
        LOGGER.info(
            "ctgov search returned %s studies (total=%s) query=%s",
            len(studies),
            data.get("totalCount"),
            query_term,
        )
        return StudyPage(
            studies=[study for study in studies if isinstance(study, dict)],
            total_count=data.get("totalCount"),
        )

    async def get_study(self, nct_id: str) -> Dict[str, Any]:
        """Fetch one study record; a 404 surfaces as RegistryUnavailable with status_code."""
        return await self._request_json("GET", f"/studies/{nct_id}")

    async def _request_json(
        self, method: str, path: str, params: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(method, url, params=params)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            raise RegistryUnavailable(
                f"CTGov request failed: status {exc.response.status_code}",
                {"status_code": exc.response.status_code, "path": path},
            ) from exc
        except httpx.RequestError as exc:
            raise RegistryUnavailable(
                f"CTGov request failed: {exc.__class__.__name__}", {"path": path}
            ) from exc
        except ValueError as exc:
            raise RegistryUnavailable("CTGov response is not valid json") from exc

        if not isinstance(data, dict):
            raise RegistryUnavailable("CTGov response root must be an object")
        return data


def build_condition_term(condition: str) -> str:
    term = condition.strip()
    if " " in term:
        term = f'"{term}"'
    return f"AREA[Condition]{term}"


def _get_value(raw_json: Dict[str, Any], path: Sequence[str]) -> Any:
    cursor: Any = raw_json
    for key in path:
        if not isinstance(cursor, dict):
            return None
        cursor = cursor.get(key)
    return cursor


def _get_first(raw_json: Dict[str, Any], paths: Iterable[Sequence[str]]) -> Any:
    for path in paths:
        value = _get_value(raw_json, path)
        if value:
            return value
    return None


def study_registry_id(study: Dict[str, Any]) -> Optional[str]:
    nct_id = _get_first(study, FIELD_MAP["nct_id"])
    return str(nct_id) if nct_id else None


def _format_healthy_volunteers(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def build_eligibility_summary(eligibility: Dict[str, Any]) -> str:
    parts: List[str] = []

    age_range = " to ".join(
        value
        for value in (eligibility.get("minimumAge"), eligibility.get("maximumAge"))
        if isinstance(value, str) and value.strip()
    )
    if age_range:
        parts.append(f"Age: {age_range}")

    sex = eligibility.get("sex")
    if isinstance(sex, str) and sex.strip() and sex.strip().upper() != "ALL":
        parts.append(f"Sex: {sex.strip()}")

    healthy = _format_healthy_volunteers(eligibility.get("healthyVolunteers"))
    if healthy:
        parts.append(f"Healthy Volunteers: {healthy}")

    criteria = eligibility.get("eligibilityCriteria")
    if isinstance(criteria, str):
        match = _INCLUSION_PATTERN.search(criteria)
        if match:
            lines = [line.strip() for line in match.group(1).split("\n")[:3]]
            summary = "; ".join(line for line in lines if len(line) > 10)
            if summary:
                parts.append(f"Key inclusion: {summary}")

    if not parts:
        return ELIGIBILITY_FALLBACK
    return ". ".join(parts) + "."


def _pick_contact(contacts: Any) -> tuple[Optional[str], Optional[str]]:
    if not isinstance(contacts, list):
        return None, None
    for contact in contacts:
        if not isinstance(contact, dict):
            continue
        email = contact.get("email") or None
        name = contact.get("name") or None
        if email or name:
            return email, name
    return None, None


def extract_trial_candidate(
    study: Dict[str, Any], retrieved_at: Optional[dt.datetime] = None
) -> TrialCandidate:
    """Normalize a raw CT.gov v2 study into a TrialCandidate."""
    nct_id = study_registry_id(study)
    title = _get_first(study, FIELD_MAP["title"])
    if not nct_id or not title:
        raise ValueError("Missing required fields in trial record")

    conditions = _get_first(study, FIELD_MAP["conditions"]) or []
    if not isinstance(conditions, list):
        conditions = [str(conditions)]

    eligibility = _get_first(study, FIELD_MAP["eligibility"])
    if not isinstance(eligibility, dict):
        eligibility = {}

    email, name = _pick_contact(_get_first(study, FIELD_MAP["central_contacts"]))
    healthy = eligibility.get("healthyVolunteers")

    return TrialCandidate(
        registry_id=nct_id,
        title=str(title),
        status=str(_get_first(study, FIELD_MAP["status"]) or "UNKNOWN"),
        conditions=[str(condition) for condition in conditions if condition],
        eligibility_summary=build_eligibility_summary(eligibility),
        url=STUDY_URL_TEMPLATE.format(nct_id=nct_id),
        retrieved_at=retrieved_at or dt.datetime.now(dt.UTC).replace(tzinfo=None),
        contact_email=email,
        contact_name=name,
        minimum_age=eligibility.get("minimumAge"),
        maximum_age=eligibility.get("maximumAge"),
        sex=eligibility.get("sex"),
        healthy_volunteers=healthy if isinstance(healthy, bool) else None,
    )
