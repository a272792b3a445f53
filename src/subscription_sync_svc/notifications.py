import logging
from typing import Any, Dict, Optional

import requests

from subscription_sync_svc.errors import SideEffectFailure

TEMPLATES = ("welcome", "trial_ending", "payment_success", "payment_failed", "canceled")


class NotificationClient:
    """
    HTTP client for the notification service. Template rendering and
    delivery happen on the other side; this only names the template and
    passes the data.
    """

    def __init__(self, base_url: Optional[str], timeout: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = timeout

    def send(self, template_name: str, data: Dict[str, Any]) -> bool:
        if template_name not in TEMPLATES:
            raise ValueError(f"Unknown notification template: {template_name}")
        if not self.base_url:
            logging.info(f"Notification service not configured; skipping '{template_name}' to {data.get('userEmail')}")
            return False
        try:
            response = requests.post(
                f"{self.base_url}/send",
                json={"template": template_name, "data": data},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise SideEffectFailure(f"Notification '{template_name}' failed: {e}") from e
        logging.info(f"Notification '{template_name}' sent to {data.get('userEmail')}")
        return True
