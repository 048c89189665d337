from __future__ import annotations

import requests

from .settings import settings


class AlertRouter:
    def __init__(
        self,
        webhook_url: str | None = None,
        event_types_csv: str | None = None,
        timeout: int | None = None,
    ) -> None:
        self.webhook_url = (webhook_url if webhook_url is not None else settings.alert_webhook_url).strip()
        self.timeout = timeout or settings.alert_webhook_timeout_seconds
        csv = event_types_csv if event_types_csv is not None else settings.alert_event_types_csv
        self.allowed_event_types = {item.strip() for item in csv.split(",") if item.strip()}

    def should_send(self, event_type: str) -> bool:
        if not self.webhook_url:
            return False
        return event_type in self.allowed_event_types

    def send(self, event_type: str, message: str, metadata: dict) -> None:
        if not self.should_send(event_type):
            return

        payload = {
            "event_type": event_type,
            "message": message,
            "metadata": metadata,
        }
        response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
        response.raise_for_status()
