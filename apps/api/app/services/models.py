from __future__ import annotations

import datetime as dt
from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Dict, List, Optional


@dataclass(frozen=True)
class Biomarker:
    name: str
    status: str


@dataclass(frozen=True)
class ExtractedClinicalData:
    medical_conditions: List[str] = field(default_factory=list)
    cancer_type: Optional[str] = None
    cancer_stage: Optional[str] = None
    prior_treatments: List[str] = field(default_factory=list)
    biomarkers: List[Biomarker] = field(default_factory=list)


@dataclass(frozen=True)
class PatientSummary:
    id: str
    sex: Optional[str]
    age: Optional[int] = None
    age_range: Optional[str] = None
    smoking_status: Optional[str] = None
    state: Optional[str] = None
    conditions: List[str] = field(default_factory=list)
    ai_parsed_conditions: List[str] = field(default_factory=list)
    primary_diagnosis: Optional[str] = None
    extracted: Optional[ExtractedClinicalData] = None

    @classmethod
    def from_profile(cls, patient_id: str, profile_json: Dict[str, Any]) -> "PatientSummary":
        """Build a summary from a stored profile document.

        Contact fields (email) are intentionally not carried over.
        """
        demographics = profile_json.get("demographics")
        if not isinstance(demographics, dict):
            demographics = {}

        age = demographics.get("age")
        if isinstance(age, bool) or not isinstance(age, (int, float)):
            age = None

        extracted_raw = profile_json.get("extracted_data")
        extracted = None
        if isinstance(extracted_raw, dict):
            biomarkers = [
                Biomarker(name=str(item["name"]), status=str(item.get("status") or "unknown"))
                for item in extracted_raw.get("biomarkers") or []
                if isinstance(item, dict) and item.get("name")
            ]
            extracted = ExtractedClinicalData(
                medical_conditions=_str_list(extracted_raw.get("medical_conditions")),
                cancer_type=_opt_str(extracted_raw.get("cancer_type")),
                cancer_stage=_opt_str(extracted_raw.get("cancer_stage")),
                prior_treatments=_str_list(extracted_raw.get("prior_treatments")),
                biomarkers=biomarkers,
            )

        return cls(
            id=patient_id,
            age=int(age) if age is not None else None,
            age_range=_opt_str(demographics.get("age_range")),
            sex=_opt_str(demographics.get("sex")),
            smoking_status=_opt_str(demographics.get("smoking_status")),
            state=_opt_str(demographics.get("state")),
            conditions=_str_list(profile_json.get("conditions")),
            ai_parsed_conditions=_str_list(profile_json.get("ai_parsed_conditions")),
            primary_diagnosis=_opt_str(profile_json.get("primary_diagnosis")),
            extracted=extracted,
        )


@dataclass(frozen=True)
class TrialCandidate:
    registry_id: str
    title: str
    status: str
    conditions: List[str]
    eligibility_summary: str
    url: str
    retrieved_at: dt.datetime
    contact_email: Optional[str] = None
    contact_name: Optional[str] = None
    minimum_age: Optional[str] = None
    maximum_age: Optional[str] = None
    sex: Optional[str] = None
    healthy_volunteers: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["retrieved_at"] = self.retrieved_at.isoformat()
        return payload


@dataclass(frozen=True)
class MatchResult:
    id: str
    patient_id: str
    registry_id: str
    confidence_score: int
    explanation: str
    created_at: dt.datetime

    @classmethod
    def create(
        cls,
        *,
        patient_id: str,
        registry_id: str,
        score: int,
        explanation: str,
        created_at: dt.datetime,
    ) -> "MatchResult":
        epoch_ms = int(created_at.replace(tzinfo=dt.timezone.utc).timestamp() * 1000)
        return cls(
            id=f"{patient_id}_{registry_id}_{epoch_ms}",
            patient_id=patient_id,
            registry_id=registry_id,
            confidence_score=clamp_score(score),
            explanation=explanation,
            created_at=created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "registry_id": self.registry_id,
            "confidence_score": self.confidence_score,
            "score_color": score_color(self.confidence_score),
            "explanation": self.explanation,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class RankedMatches:
    patient_id: str
    matches: List[MatchResult]
    candidate_count: int
    no_candidates: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patient_id": self.patient_id,
            "match_count": len(self.matches),
            "candidate_count": self.candidate_count,
            "no_candidates": self.no_candidates,
            "matches": [match.to_dict() for match in self.matches],
        }


def clamp_score(value: int) -> int:
    return max(0, min(100, int(value)))


def score_color(score: int) -> str:
    if score >= 90:
        return "BLUE"
    if score >= 75:
        return "GREEN"
    if score >= 60:
        return "YELLOW"
    return "RED"


# Progress events. Each carries a wire name in `event` and serializes its
# fields as the payload.


@dataclass(frozen=True)
class ProgressEvent:
    event: ClassVar[str] = "progress"
    terminal: ClassVar[bool] = False

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RetrievalStarted(ProgressEvent):
    event: ClassVar[str] = "retrieval_started"
    conditions: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class RetrievalCandidateFound(ProgressEvent):
    event: ClassVar[str] = "retrieval_candidate_found"
    registry_id: str = ""
    title: str = ""
    status: str = ""
    index: int = 0
    total: int = 0


@dataclass(frozen=True)
class RetrievalComplete(ProgressEvent):
    event: ClassVar[str] = "retrieval_complete"
    count: int = 0


@dataclass(frozen=True)
class ScoringStarted(ProgressEvent):
    event: ClassVar[str] = "scoring_started"
    total_candidates: int = 0


@dataclass(frozen=True)
class ScoringCandidate(ProgressEvent):
    event: ClassVar[str] = "scoring_candidate"
    registry_id: str = ""
    title: str = ""
    score: int = 0
    explanation: str = ""
    index: int = 0
    total: int = 0


@dataclass(frozen=True)
class ScoringComplete(ProgressEvent):
    event: ClassVar[str] = "scoring_complete"
    accepted_count: int = 0


@dataclass(frozen=True)
class MatchingComplete(ProgressEvent):
    event: ClassVar[str] = "matching_complete"
    terminal: ClassVar[bool] = True
    result: Optional[RankedMatches] = None

    def to_payload(self) -> Dict[str, Any]:
        if self.result is None:
            return {"match_count": 0, "no_candidates": True, "matches": []}
        return self.result.to_dict()


@dataclass(frozen=True)
class Failed(ProgressEvent):
    event: ClassVar[str] = "failed"
    terminal: ClassVar[bool] = True
    code: str = "MATCHING_FAILED"
    message: str = ""


def _opt_str(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def _str_list(values: Any) -> List[str]:
    if not isinstance(values, list):
        return []
    return [value.strip() for value in values if isinstance(value, str) and value.strip()]
