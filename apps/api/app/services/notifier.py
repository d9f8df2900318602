import json
import logging
from collections import deque
from typing import Any, Deque, Dict, Protocol

LOGGER = logging.getLogger(__name__)

_RECENT_LIMIT = 100


def results_url(base_url: str, patient_id: str) -> str:
    return f"{base_url.rstrip('/')}/patients/{patient_id}/matches"


class MatchNotifier(Protocol):
    def notify(self, *, patient_id: str, match_count: int, url: str) -> None: ...


class LoggingNotifier:
    """Emits one structured log line per completed run.

    The most recent payloads are kept in `sent`.
    """

    def __init__(self) -> None:
        self.sent: Deque[Dict[str, Any]] = deque(maxlen=_RECENT_LIMIT)

    def notify(self, *, patient_id: str, match_count: int, url: str) -> None:
        payload = {
            "event": "match_notification",
            "patient_id": patient_id,
            "match_count": match_count,
            "results_url": url,
        }
        self.sent.append(payload)
        LOGGER.info(json.dumps(payload))
