from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.schema import Column, Table
from sqlalchemy.types import JSON, TIMESTAMP, Text

from app.services.database import METADATA, dialect_insert, utcnow
from app.services.models import PatientSummary

PATIENT_PROFILES_TABLE = Table(
    "patient_profiles",
    METADATA,
    Column("id", Text, primary_key=True),
    Column("profile_json", JSON, nullable=False),
    Column("source", Text, nullable=False),
    Column("created_at", TIMESTAMP, nullable=False),
    Column("updated_at", TIMESTAMP, nullable=False),
)


def validate_profile_json(profile_json: Any) -> None:
    if not isinstance(profile_json, dict):
        raise ValueError("profile_json must be a JSON object")

    demographics = profile_json.get("demographics")
    if not isinstance(demographics, dict):
        raise ValueError("demographics is required")

    age = demographics.get("age")
    age_range = demographics.get("age_range")
    if age is None:
        if not isinstance(age_range, str) or not age_range.strip():
            raise ValueError("demographics.age or demographics.age_range is required")
    else:
        if isinstance(age, bool) or not isinstance(age, (int, float)):
            raise ValueError("demographics.age must be a number")
        if int(age) < 0:
            raise ValueError("demographics.age must be >= 0")

    sex = demographics.get("sex")
    if not isinstance(sex, str) or not sex.strip():
        raise ValueError("demographics.sex is required")

    for key in ("conditions", "ai_parsed_conditions"):
        value = profile_json.get(key)
        if value is not None and not isinstance(value, list):
            raise ValueError(f"{key} must be a list")


def serialize_patient(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "source": row["source"],
        "profile_json": row["profile_json"],
        "created_at": row["created_at"].isoformat() if row["created_at"] else None,
        "updated_at": row["updated_at"].isoformat() if row["updated_at"] else None,
    }


class SqlPatientStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get_profile(self, patient_id: str) -> Optional[Dict[str, Any]]:
        stmt = (
            select(PATIENT_PROFILES_TABLE)
            .where(PATIENT_PROFILES_TABLE.c.id == patient_id)
            .limit(1)
        )
        with self.engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
        if not row:
            return None
        return dict(row)

    def get_patient(self, patient_id: str) -> Optional[PatientSummary]:
        row = self.get_profile(patient_id)
        if row is None:
            return None
        return PatientSummary.from_profile(row["id"], row["profile_json"])

    def upsert_patient(
        self,
        profile_json: Dict[str, Any],
        *,
        patient_id: Optional[str] = None,
        source: str = "manual",
    ) -> Dict[str, Any]:
        """Create a profile, or replace the stored document when the id exists."""
        now = utcnow()
        row_id = patient_id or str(uuid.uuid4())
        payload = {
            "id": row_id,
            "profile_json": profile_json,
            "source": source,
            "created_at": now,
            "updated_at": now,
        }
        insert = dialect_insert(self.engine)
        stmt = (
            insert(PATIENT_PROFILES_TABLE)
            .values(**payload)
            .on_conflict_do_update(
                index_elements=[PATIENT_PROFILES_TABLE.c.id],
                set_={
                    "profile_json": profile_json,
                    "source": source,
                    "updated_at": now,
                },
            )
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

        stored = self.get_profile(row_id)
        return serialize_patient(stored if stored is not None else payload)

    def set_ai_parsed_conditions(
        self, patient_id: str, conditions: List[str], description: str
    ) -> Optional[Dict[str, Any]]:
        """Store parsed conditions on an existing profile; None when it is missing."""
        row = self.get_profile(patient_id)
        if row is None:
            return None
        profile_json = dict(row["profile_json"])
        profile_json["ai_parsed_conditions"] = list(conditions)
        profile_json["condition_description"] = description
        stmt = (
            update(PATIENT_PROFILES_TABLE)
            .where(PATIENT_PROFILES_TABLE.c.id == patient_id)
            .values(profile_json=profile_json, updated_at=utcnow())
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)
        stored = self.get_profile(patient_id)
        return serialize_patient(stored) if stored is not None else None
