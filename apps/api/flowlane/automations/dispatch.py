from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from opentelemetry import trace

from flowlane.automations.errors import DispatchFailureError
from flowlane.context import get_correlation_id
from flowlane.core.config import get_settings


logger = logging.getLogger("flowlane.automations.dispatch")
tracer = trace.get_tracer("flowlane.automations.dispatch")

sent_emails: list[dict[str, Any]] = []


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    body: str
    card_id: uuid.UUID
    from_email: str | None = None
    from_name: str | None = None
    cc: str | None = None
    bcc: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "to": self.to,
            "subject": self.subject,
            "body": self.body,
            "cardId": str(self.card_id),
            "sentVia": "automation",
        }
        optional = {"from": self.from_email, "fromName": self.from_name, "cc": self.cc, "bcc": self.bcc}
        payload.update({key: value for key, value in optional.items() if value})
        return payload


class EmailDispatcher(Protocol):
    def send(self, message: EmailMessage) -> None: ...


class HttpEmailDispatcher:
    def __init__(self, url: str, *, timeout: float = 10.0, client: httpx.Client | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self._client = client

    def send(self, message: EmailMessage) -> None:
        with tracer.start_as_current_span("automation.email.dispatch") as span:
            correlation_id = get_correlation_id()
            span.set_attribute("card_id", str(message.card_id))
            span.set_attribute("correlation_id", correlation_id or "")
            headers = {"x-correlation-id": correlation_id} if correlation_id else {}
            try:
                if self._client is not None:
                    response = self._client.post(self.url, json=message.to_payload(), headers=headers)
                else:
                    with httpx.Client(timeout=self.timeout) as client:
                        response = client.post(self.url, json=message.to_payload(), headers=headers)
            except httpx.HTTPError as exc:
                raise DispatchFailureError(f"Failed to send email: {exc}") from exc

            span.set_attribute("http.status_code", response.status_code)
            if not response.is_success:
                raise DispatchFailureError(f"Failed to send email: {response.text}")
            logger.info("automation.email.sent", extra={"card_id": str(message.card_id), "status_code": response.status_code})


class StubEmailDispatcher:
    def send(self, message: EmailMessage) -> None:
        with tracer.start_as_current_span("automation.email.dispatch") as span:
            span.set_attribute("card_id", str(message.card_id))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            sent_emails.append(message.to_payload())
            logger.info("automation.email.recorded", extra={"card_id": str(message.card_id)})


def build_email_dispatcher() -> EmailDispatcher:
    settings = get_settings()
    if settings.email_dispatch_url:
        return HttpEmailDispatcher(settings.email_dispatch_url, timeout=settings.email_dispatch_timeout_seconds)
    return StubEmailDispatcher()
