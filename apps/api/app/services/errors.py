from typing import Any, Dict, Optional


class MatchingError(RuntimeError):
    """Base class for failures surfaced by the matching pipeline."""

    code = "MATCHING_FAILED"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class RegistryUnavailable(MatchingError):
    """Raised when the trial registry cannot serve a query."""

    code = "REGISTRY_UNAVAILABLE"


class NoCandidates(MatchingError):
    code = "NO_CANDIDATES"


class ReasoningServiceUnavailable(MatchingError):
    """Raised when a scoring call fails permanently for one patient/trial pair."""

    code = "REASONING_SERVICE_UNAVAILABLE"


class PersistenceFailure(MatchingError):
    code = "PERSISTENCE_FAILURE"


class MatchingInProgress(MatchingError):
    code = "MATCHING_IN_PROGRESS"


class PatientNotFound(MatchingError):
    code = "PATIENT_NOT_FOUND"


class RunCancelled(MatchingError):
    code = "RUN_CANCELLED"


class RunTimedOut(MatchingError):
    code = "RUN_TIMED_OUT"
