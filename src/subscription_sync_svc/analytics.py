import datetime
import logging
from typing import Any, Dict, Optional

import requests

from subscription_sync_svc.errors import SideEffectFailure


class AnalyticsClient:
    """Fire-and-forget sink for subscription and payment events."""

    def __init__(self, endpoint_url: Optional[str], timeout: float = 5.0) -> None:
        self.endpoint_url = endpoint_url
        self.timeout = timeout

    def track_event(self, event_type: str, user_id: str, company_id: str,
                    metadata: Optional[Dict[str, Any]], timestamp: datetime.datetime) -> None:
        body = {
            "type": event_type,
            "userId": user_id,
            "companyId": company_id,
            "metadata": metadata or {},
            "timestamp": timestamp.isoformat(),
        }
        logging.info(f"[ANALYTICS] {body}")
        if not self.endpoint_url:
            return
        try:
            response = requests.post(self.endpoint_url, json=body, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise SideEffectFailure(f"Analytics event '{event_type}' failed: {e}") from e
