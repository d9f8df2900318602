from __future__ import annotations

import datetime as dt
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from app.services.ctgov_client import (
    CTGovClient,
    build_condition_term,
    extract_trial_candidate,
    study_registry_id,
)
from app.services.errors import RegistryUnavailable
from app.services.models import PatientSummary, TrialCandidate

LOGGER = logging.getLogger(__name__)

RECRUITING_TERM = "AREA[OverallStatus]RECRUITING"
EXPANSION_CONDITION_LIMIT = 3

_ONCOLOGY_PATTERN = re.compile(
    r"cancer|carcinoma|tumor|lymphoma|leukemia|melanoma|sarcoma", re.I
)


@dataclass(frozen=True)
class QueryPlan:
    primary_query: str
    expansion_query: Optional[str]
    primary_condition: Optional[str]
    prioritized: List[str]


def _dedupe(values: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    ordered: List[str] = []
    for value in values:
        if not isinstance(value, str):
            continue
        trimmed = value.strip()
        key = trimmed.lower()
        if not trimmed or key in seen:
            continue
        seen.add(key)
        ordered.append(trimmed)
    return ordered


def build_condition_set(patient: PatientSummary) -> List[str]:
    """Union every condition source for a patient, most specific sources first."""
    sources: List[str] = list(patient.ai_parsed_conditions)
    if patient.primary_diagnosis:
        sources.append(patient.primary_diagnosis)
    sources.extend(patient.conditions)
    if patient.extracted is not None:
        sources.extend(patient.extracted.medical_conditions)
        if patient.extracted.cancer_type:
            sources.append(patient.extracted.cancer_type)
    return _dedupe(sources)


def is_oncology_term(condition: str) -> bool:
    return bool(_ONCOLOGY_PATTERN.search(condition))


def prioritize_conditions(conditions: Iterable[str]) -> List[str]:
    cleaned = [value.strip() for value in conditions if value and value.strip()]
    return sorted(cleaned, key=lambda value: (not is_oncology_term(value), -len(value)))


def plan_queries(conditions: Iterable[str]) -> QueryPlan:
    prioritized = prioritize_conditions(conditions)
    if not prioritized:
        return QueryPlan(
            primary_query=RECRUITING_TERM,
            expansion_query=None,
            primary_condition=None,
            prioritized=[],
        )

    primary_condition = prioritized[0]
    primary_query = f"{RECRUITING_TERM} AND {build_condition_term(primary_condition)}"

    expansion_query = None
    if len(prioritized) > 1:
        or_terms = " OR ".join(
            build_condition_term(condition)
            for condition in prioritized[:EXPANSION_CONDITION_LIMIT]
        )
        expansion_query = f"{RECRUITING_TERM} AND ({or_terms})"

    return QueryPlan(
        primary_query=primary_query,
        expansion_query=expansion_query,
        primary_condition=primary_condition,
        prioritized=prioritized,
    )


def merge_studies(
    primary: List[Dict[str, Any]],
    expansion: List[Dict[str, Any]],
    limit: int,
) -> List[Dict[str, Any]]:
    """Primary studies first; expansion studies only add unseen registry ids."""
    merged: List[Dict[str, Any]] = []
    seen: set[str] = set()
    for study in [*primary, *expansion]:
        nct_id = study_registry_id(study)
        if nct_id is not None:
            if nct_id in seen:
                continue
            seen.add(nct_id)
        merged.append(study)
    return merged[:limit]


def _should_expand(plan: QueryPlan, found: int, page_size: int, threshold: int) -> bool:
    if plan.expansion_query is None:
        return False
    return found < threshold and found < page_size


async def retrieve_candidates(
    client: CTGovClient,
    conditions: Iterable[str],
    *,
    page_size: int = 30,
    expansion_threshold: int = 10,
) -> List[TrialCandidate]:
    plan = plan_queries(conditions)
    LOGGER.info(
        "retrieval plan primary=%s prioritized=%s",
        plan.primary_condition,
        ",".join(plan.prioritized),
    )

    # A primary failure propagates as RegistryUnavailable.
    primary_page = await client.search_studies(plan.primary_query, page_size=page_size)
    studies = primary_page.studies[:page_size]

    if _should_expand(plan, len(studies), page_size, expansion_threshold):
        try:
            expansion_page = await client.search_studies(
                plan.expansion_query, page_size=page_size
            )
        except RegistryUnavailable as exc:
            LOGGER.warning("expansion query failed; keeping primary results: %s", exc)
        else:
            studies = merge_studies(studies, expansion_page.studies, page_size)

    retrieved_at = dt.datetime.now(dt.UTC).replace(tzinfo=None)
    candidates: List[TrialCandidate] = []
    for study in studies:
        try:
            candidates.append(extract_trial_candidate(study, retrieved_at))
        except ValueError:
            LOGGER.warning("skipping malformed study nct_id=%s", study_registry_id(study))
    return candidates
