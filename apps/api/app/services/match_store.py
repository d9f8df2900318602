from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence

from sqlalchemy import delete, insert, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.schema import Column, Table, UniqueConstraint
from sqlalchemy.types import TIMESTAMP, Integer, Text

from app.services.database import METADATA
from app.services.errors import PersistenceFailure
from app.services.models import MatchResult

LOGGER = logging.getLogger(__name__)

MATCHES_TABLE = Table(
    "trial_matches",
    METADATA,
    Column("id", Text, primary_key=True),
    Column("patient_id", Text, nullable=False, index=True),
    Column("nct_id", Text, nullable=False),
    Column("confidence_score", Integer, nullable=False),
    # Position in the ranked run output; breaks score ties on read.
    Column("rank", Integer, nullable=False, default=0),
    Column("explanation", Text, nullable=False),
    Column("created_at", TIMESTAMP, nullable=False),
    UniqueConstraint("patient_id", "nct_id", name="uq_trial_matches_patient_trial"),
)


def _unique_by_trial(results: Sequence[MatchResult]) -> List[MatchResult]:
    seen: set[str] = set()
    unique: List[MatchResult] = []
    for result in results:
        if result.registry_id in seen:
            continue
        seen.add(result.registry_id)
        unique.append(result)
    return unique


def _row_to_match(row: Dict[str, Any]) -> MatchResult:
    return MatchResult(
        id=row["id"],
        patient_id=row["patient_id"],
        registry_id=row["nct_id"],
        confidence_score=int(row["confidence_score"]),
        explanation=row["explanation"],
        created_at=row["created_at"],
    )


class SqlMatchStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def replace_matches(self, patient_id: str, results: Sequence[MatchResult]) -> int:
        """Swap the patient's whole match set in one transaction.

        An empty `results` still clears the previous set.
        """
        rows = [
            {
                "id": result.id,
                "patient_id": patient_id,
                "nct_id": result.registry_id,
                "confidence_score": result.confidence_score,
                "explanation": result.explanation,
                "created_at": result.created_at,
                "rank": rank,
            }
            for rank, result in enumerate(_unique_by_trial(results))
        ]
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    delete(MATCHES_TABLE).where(MATCHES_TABLE.c.patient_id == patient_id)
                )
                if rows:
                    conn.execute(insert(MATCHES_TABLE), rows)
        except SQLAlchemyError as exc:
            LOGGER.error("match replace failed for patient %s: %s", patient_id, exc)
            raise PersistenceFailure(f"Failed to store matches: {exc}") from exc
        return len(rows)

    def list_matches(self, patient_id: str) -> List[MatchResult]:
        stmt = (
            select(MATCHES_TABLE)
            .where(MATCHES_TABLE.c.patient_id == patient_id)
            .order_by(
                MATCHES_TABLE.c.confidence_score.desc(),
                MATCHES_TABLE.c.rank,
                MATCHES_TABLE.c.id,
            )
        )
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_match(dict(row)) for row in rows]
