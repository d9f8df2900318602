from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.schema import Column, Table
from sqlalchemy.types import JSON, TIMESTAMP, Boolean, Text

from app.services.database import METADATA, dialect_insert, utcnow
from app.services.models import TrialCandidate

TRIALS_TABLE = Table(
    "trials",
    METADATA,
    Column("nct_id", Text, primary_key=True),
    Column("title", Text, nullable=False),
    Column("status", Text, nullable=False),
    Column("conditions", JSON, nullable=False),
    Column("eligibility_summary", Text, nullable=False),
    Column("url", Text, nullable=False),
    Column("contact_email", Text),
    Column("contact_name", Text),
    Column("minimum_age", Text),
    Column("maximum_age", Text),
    Column("sex", Text),
    Column("healthy_volunteers", Boolean),
    Column("retrieved_at", TIMESTAMP, nullable=False),
    Column("updated_at", TIMESTAMP, nullable=False),
)


def _row_to_candidate(row: Dict[str, Any]) -> TrialCandidate:
    return TrialCandidate(
        registry_id=row["nct_id"],
        title=row["title"],
        status=row["status"],
        conditions=list(row["conditions"] or []),
        eligibility_summary=row["eligibility_summary"],
        url=row["url"],
        retrieved_at=row["retrieved_at"],
        contact_email=row["contact_email"],
        contact_name=row["contact_name"],
        minimum_age=row["minimum_age"],
        maximum_age=row["maximum_age"],
        sex=row["sex"],
        healthy_volunteers=row["healthy_volunteers"],
    )


class SqlTrialStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def upsert_trial(self, candidate: TrialCandidate) -> None:
        """Insert or update a trial keyed by its registry id."""
        payload = {
            "title": candidate.title,
            "status": candidate.status,
            "conditions": list(candidate.conditions),
            "eligibility_summary": candidate.eligibility_summary,
            "url": candidate.url,
            "contact_email": candidate.contact_email,
            "contact_name": candidate.contact_name,
            "minimum_age": candidate.minimum_age,
            "maximum_age": candidate.maximum_age,
            "sex": candidate.sex,
            "healthy_volunteers": candidate.healthy_volunteers,
            "retrieved_at": candidate.retrieved_at,
            "updated_at": utcnow(),
        }
        insert = dialect_insert(self.engine)
        stmt = (
            insert(TRIALS_TABLE)
            .values(nct_id=candidate.registry_id, **payload)
            .on_conflict_do_update(index_elements=[TRIALS_TABLE.c.nct_id], set_=payload)
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def list_all_trials(self) -> List[TrialCandidate]:
        stmt = select(TRIALS_TABLE).order_by(
            TRIALS_TABLE.c.retrieved_at.desc(), TRIALS_TABLE.c.nct_id
        )
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_candidate(dict(row)) for row in rows]

    def get_trial(self, nct_id: str) -> Optional[TrialCandidate]:
        stmt = select(TRIALS_TABLE).where(TRIALS_TABLE.c.nct_id == nct_id).limit(1)
        with self.engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
        if not row:
            return None
        return _row_to_candidate(dict(row))

    def delete_all_trials(self) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(delete(TRIALS_TABLE))
        return int(result.rowcount or 0)
