"""
Shared fixtures: SQLite-backed stores, CT.gov study payloads, patient profiles.
"""
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
from sqlalchemy import create_engine

from app.services.database import ensure_tables
from app.services.observability import reset_ops_metrics
from app.services.run_lock import reset_match_run_lock


@pytest.fixture(autouse=True)
def _isolate_process_state(monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)
    reset_ops_metrics()
    reset_match_run_lock()
    yield
    reset_match_run_lock()


@pytest.fixture
def engine(tmp_path):
    db_engine = create_engine(f"sqlite:///{tmp_path / 'trialmatch.db'}")
    ensure_tables(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def make_study() -> Callable[..., Dict[str, Any]]:
    def _make_study(
        nct_id: str,
        title: str = "A Study",
        conditions: Optional[List[str]] = None,
        status: str = "RECRUITING",
        minimum_age: Optional[str] = "18 Years",
        maximum_age: Optional[str] = None,
        sex: str = "ALL",
        criteria: str = "",
        contacts: Optional[List[Dict[str, str]]] = None,
    ) -> Dict[str, Any]:
        eligibility: Dict[str, Any] = {"sex": sex, "eligibilityCriteria": criteria}
        if minimum_age:
            eligibility["minimumAge"] = minimum_age
        if maximum_age:
            eligibility["maximumAge"] = maximum_age
        return {
            "protocolSection": {
                "identificationModule": {"nctId": nct_id, "briefTitle": title},
                "statusModule": {"overallStatus": status},
                "conditionsModule": {"conditions": conditions or ["Thyroid Cancer"]},
                "eligibilityModule": eligibility,
                "contactsLocationsModule": {"centralContacts": contacts or []},
            }
        }

    return _make_study


@pytest.fixture
def registry_transport():
    """CT.gov stand-in: answers every search with the configured studies.

    `state["by_query"]` can map a substring of `query.term` to a study list;
    `state["queries"]` records the terms that were requested.
    """
    state: Dict[str, Any] = {"studies": [], "by_query": {}, "queries": [], "status": 200}

    def _handler(request: httpx.Request) -> httpx.Response:
        term = request.url.params.get("query.term", "")
        state["queries"].append(term)
        if state["status"] != 200:
            return httpx.Response(state["status"], json={"error": "unavailable"})
        for needle, studies in state["by_query"].items():
            if needle in term:
                return httpx.Response(200, json={"studies": studies})
        return httpx.Response(200, json={"studies": state["studies"]})

    return httpx.MockTransport(_handler), state


@pytest.fixture
def thyroid_profile() -> Dict[str, Any]:
    return {
        "demographics": {"age": 52, "sex": "female", "state": "CA"},
        "email": "patient@example.com",
        "conditions": ["Hashimoto's Thyroiditis"],
        "ai_parsed_conditions": ["Papillary Thyroid Carcinoma"],
        "extracted_data": {
            "cancer_type": "thyroid cancer",
            "biomarkers": [{"name": "BRAF V600E", "status": "positive"}],
        },
    }
