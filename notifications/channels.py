from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

import requests

from .config import DispatchSettings
from .models import (
    OUTCOME_FAILED,
    OUTCOME_SENT,
    REASON_AUTH_FAILURE,
    REASON_CONFIGURATION,
    REASON_INTERNAL,
    REASON_NO_ADDRESS,
    REASON_NOT_ELIGIBLE,
    REASON_RECIPIENT_INVALID,
    REASON_ROUTES_EXHAUSTED,
    REASON_SENT,
    REASON_SIMULATED,
    Classification,
    DeliveryRecord,
    Dialect,
    Recipient,
    SendOutcome,
)
from .service import compose_message, is_deliverable
from .transport import (
    build_request,
    candidate_routes,
    classify_exception,
    classify_response,
    resolve_dialect,
)

LOGGER = logging.getLogger(__name__)

TERMINAL_REASONS = {
    SendOutcome.AUTH_FAILURE: REASON_AUTH_FAILURE,
    SendOutcome.RECIPIENT_INVALID: REASON_RECIPIENT_INVALID,
}


class PushDispatcher:
    """Sends one alert per call, falling back across relay routes.

    The dialect is resolved from the credential once, when the dispatcher is
    built. ``send`` never raises: every path ends in a single
    ``DeliveryRecord``.
    """

    def __init__(
        self,
        settings: DispatchSettings,
        post: Optional[Callable[..., requests.Response]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.credential = resolve_dialect(settings.credential)
        self.routes = candidate_routes(self.credential.dialect, settings.relays)
        self._post = post or requests.post
        self._sleep = sleep

    @property
    def dialect(self) -> Dialect:
        return self.credential.dialect

    def _record(self, recipient: Recipient, outcome: str, reason: str, detail: str, attempts: int = 0) -> DeliveryRecord:
        return DeliveryRecord(
            recipient_id=recipient.id,
            recipient_name=recipient.display_name,
            kind=recipient.attendance_state,
            outcome=outcome,
            reason=reason,
            detail=detail,
            attempts=attempts,
        )

    def send(self, recipient: Recipient) -> DeliveryRecord:
        try:
            return self._send(recipient)
        except Exception:
            LOGGER.exception("Unexpected error while notifying %s", recipient.id)
            return self._record(recipient, OUTCOME_FAILED, REASON_INTERNAL, "Unexpected error while sending notification")

    def _send(self, recipient: Recipient) -> DeliveryRecord:
        if not recipient.is_eligible:
            LOGGER.info("Skipping %s: not eligible for an alert", recipient.id)
            return self._record(recipient, OUTCOME_FAILED, REASON_NOT_ELIGIBLE,
                                "Student is present or was already notified today")

        if not is_deliverable(recipient, self.settings.min_address_length):
            LOGGER.info("Skipping %s: no device address", recipient.id)
            return self._record(recipient, OUTCOME_FAILED, REASON_NO_ADDRESS,
                                "No device address registered for the parent")

        message = compose_message(recipient)

        if self.dialect is Dialect.SIMULATED:
            LOGGER.warning("No push credential configured; simulating alert for %s", recipient.id)
            self._sleep(self.settings.simulated_delay)
            return self._record(recipient, OUTCOME_SENT, REASON_SIMULATED,
                                f"{message.body} (simulated - no push credential configured)")

        try:
            endpoint, headers, payload = build_request(
                self.credential, message, recipient.device_address, self.settings.project_id
            )
        except ValueError as exc:
            LOGGER.error("Cannot build push request for %s: %s", recipient.id, exc)
            return self._record(recipient, OUTCOME_FAILED, REASON_CONFIGURATION, str(exc))

        failures: List[str] = []
        attempts = 0
        for route in self.routes:
            url = route.build_url(endpoint)
            attempts += 1
            result = self._attempt(url, headers, payload, route)

            if result.outcome is SendOutcome.SUCCESS:
                LOGGER.info("Sent alert for %s via %s", recipient.id, route.name)
                return self._record(recipient, OUTCOME_SENT, REASON_SENT, message.body, attempts)

            if result.outcome.is_terminal:
                LOGGER.warning("Alert for %s failed via %s: %s", recipient.id, route.name, result.detail)
                return self._record(recipient, OUTCOME_FAILED, TERMINAL_REASONS[result.outcome],
                                    result.detail, attempts)

            LOGGER.warning("Route %s failed for %s (%s); trying next", route.name, recipient.id, result.detail)
            failures.append(result.detail)

        detail = "All delivery routes exhausted"
        if failures:
            detail = f"{detail}: {'; '.join(failures)}"
        return self._record(recipient, OUTCOME_FAILED, REASON_ROUTES_EXHAUSTED, detail, attempts)

    def _attempt(self, url: str, headers, payload, route) -> Classification:
        try:
            response = self._post(url, headers=headers, json=payload, timeout=self.settings.request_timeout)
        except requests.RequestException as exc:
            return classify_exception(exc, route)
        return classify_response(response, self.dialect, route)
