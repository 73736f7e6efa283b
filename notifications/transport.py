"""Dialect resolution, route ordering and response classification.

Nothing in here performs I/O. ``channels.PushDispatcher`` owns the network
calls and feeds each raw response (or exception) back through
``classify_response`` / ``classify_exception``.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, Optional, Tuple

import requests

from .config import (
    BEARER_TOKEN_PREFIXES,
    DIRECT_ROUTE,
    LEGACY_ENDPOINT,
    V1_ENDPOINT_TEMPLATE,
)
from .models import (
    Classification,
    Dialect,
    OutboundMessage,
    RelayRoute,
    ResolvedCredential,
    SendOutcome,
)

LOGGER = logging.getLogger(__name__)

LEGACY_RECIPIENT_ERRORS = {
    "InvalidRegistration",
    "NotRegistered",
    "MismatchSenderId",
    "MissingRegistration",
}
LEGACY_TRANSIENT_ERRORS = {
    "Unavailable",
    "InternalServerError",
    "DeviceMessageRateExceeded",
}

V1_RECIPIENT_CODES = {"UNREGISTERED", "INVALID_ARGUMENT", "NOT_FOUND", "SENDER_ID_MISMATCH"}
V1_AUTH_CODES = {"UNAUTHENTICATED", "PERMISSION_DENIED", "THIRD_PARTY_AUTH_ERROR"}
V1_TRANSIENT_CODES = {"UNAVAILABLE", "INTERNAL", "QUOTA_EXCEEDED", "RESOURCE_EXHAUSTED"}


def resolve_dialect(credential: Optional[str]) -> ResolvedCredential:
    secret = (credential or "").strip()
    if not secret:
        return ResolvedCredential(Dialect.SIMULATED)
    if secret.lower().startswith("bearer "):
        return ResolvedCredential(Dialect.BEARER_TOKEN_V1, secret[len("bearer "):].strip())
    if secret.startswith(BEARER_TOKEN_PREFIXES):
        return ResolvedCredential(Dialect.BEARER_TOKEN_V1, secret)
    return ResolvedCredential(Dialect.LEGACY_KEYED, secret)


def candidate_routes(dialect: Dialect, relays: Iterable[RelayRoute] = ()) -> Tuple[RelayRoute, ...]:
    """Ordered routes for one logical send: direct first, then each relay."""
    if dialect is Dialect.SIMULATED:
        return ()
    return (DIRECT_ROUTE, *relays)


def provider_endpoint(dialect: Dialect, project_id: Optional[str] = None) -> str:
    if dialect is Dialect.LEGACY_KEYED:
        return LEGACY_ENDPOINT
    if dialect is Dialect.BEARER_TOKEN_V1:
        if not project_id:
            raise ValueError("FCM project id is required for bearer-token credentials")
        return V1_ENDPOINT_TEMPLATE.format(project=project_id)
    raise ValueError(f"No provider endpoint for {dialect.value} dialect")


def build_request(
    credential: ResolvedCredential,
    message: OutboundMessage,
    device_address: str,
    project_id: Optional[str] = None,
) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
    """Return ``(endpoint, headers, payload)`` for the credential's dialect."""
    endpoint = provider_endpoint(credential.dialect, project_id)
    headers = {"Content-Type": "application/json"}
    if credential.dialect is Dialect.LEGACY_KEYED:
        headers["Authorization"] = f"key={credential.secret}"
        payload: Dict[str, Any] = {
            "to": device_address,
            "notification": message.notification(),
            "data": dict(message.data),
        }
    else:
        headers["Authorization"] = f"Bearer {credential.secret}"
        payload = {
            "message": {
                "token": device_address,
                "notification": message.notification(),
                "data": dict(message.data),
            }
        }
    return endpoint, headers, payload


def _json_body(response) -> Optional[Dict[str, Any]]:
    content_type = (response.headers.get("content-type") or "").lower()
    if "json" not in content_type:
        return None
    try:
        body = json.loads(response.text or "")
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _transport(detail: str, status: Optional[int] = None) -> Classification:
    return Classification(SendOutcome.TRANSPORT_FAILURE, detail, status)


def _auth(status: Optional[int], route: RelayRoute) -> Classification:
    if not route.forwards_headers:
        # the relay strips Authorization, so the provider never saw the credential
        return _transport(f"{route.name} did not forward credentials (HTTP {status})", status)
    return Classification(SendOutcome.AUTH_FAILURE, f"Push credential rejected by provider (HTTP {status})", status)


def _classify_legacy(body: Dict[str, Any], status: int) -> Classification:
    if "failure" not in body and "success" not in body:
        return _transport(f"unrecognised response body (HTTP {status})", status)
    try:
        failures = int(body.get("failure") or 0)
    except (TypeError, ValueError):
        return _transport(f"unrecognised response body (HTTP {status})", status)
    if failures <= 0:
        return Classification(SendOutcome.SUCCESS, "accepted", status)

    results = body.get("results") or [{}]
    first = results[0] if isinstance(results, list) and results and isinstance(results[0], dict) else {}
    error = str(first.get("error") or "UnknownError")
    if error in LEGACY_TRANSIENT_ERRORS:
        return _transport(f"provider temporarily unavailable: {error}", status)
    if error in LEGACY_RECIPIENT_ERRORS:
        return Classification(SendOutcome.RECIPIENT_INVALID, f"Device address rejected by provider: {error}", status)
    return Classification(SendOutcome.RECIPIENT_INVALID, f"Provider rejected message: {error}", status)


def _v1_error_codes(body: Dict[str, Any]) -> Tuple[str, ...]:
    error = body.get("error")
    if not isinstance(error, dict):
        return ()
    codes = []
    for detail in error.get("details") or []:
        if isinstance(detail, dict) and detail.get("errorCode"):
            codes.append(str(detail["errorCode"]))
    if error.get("status"):
        codes.append(str(error["status"]))
    return tuple(codes)


def _classify_v1_error(body: Dict[str, Any], status: int, route: RelayRoute) -> Classification:
    codes = _v1_error_codes(body)
    # details[].errorCode wins over error.status
    for code in codes:
        if code in V1_RECIPIENT_CODES:
            return Classification(SendOutcome.RECIPIENT_INVALID, f"Device address rejected by provider: {code}", status)
        if code in V1_AUTH_CODES:
            return _auth(status, route)
        if code in V1_TRANSIENT_CODES:
            return _transport(f"provider temporarily unavailable: {code}", status)
    return _classify_by_status(status, route)


def _classify_by_status(status: int, route: RelayRoute) -> Classification:
    if status >= 500 or status in (404, 429):
        return _transport(f"{route.name} answered HTTP {status}", status)
    if status in (401, 403):
        return _auth(status, route)
    if status >= 400:
        return Classification(SendOutcome.RECIPIENT_INVALID, f"Provider rejected request (HTTP {status})", status)
    return _transport(f"unrecognised response body (HTTP {status})", status)


def classify_response(response, dialect: Dialect, route: RelayRoute) -> Classification:
    """Classify a ``requests.Response``-like object from one route attempt.

    Body shape is checked before the status code: a relay that answers with
    an HTML error page is a broken relay even when its status code happens
    to match a provider error.
    """
    status = int(response.status_code)
    body = _json_body(response)

    if body is None:
        if route.is_direct and status in (401, 403):
            return _auth(status, route)
        return _transport(f"{route.name} returned a non-JSON response (HTTP {status})", status)

    if status >= 500:
        return _transport(f"{route.name} answered HTTP {status}", status)

    if dialect is Dialect.BEARER_TOKEN_V1:
        if 200 <= status < 300:
            if body.get("name"):
                return Classification(SendOutcome.SUCCESS, "accepted", status)
            return _transport(f"unrecognised response body (HTTP {status})", status)
        return _classify_v1_error(body, status, route)

    if 200 <= status < 300:
        return _classify_legacy(body, status)
    return _classify_by_status(status, route)


def classify_exception(exc: Exception, route: RelayRoute) -> Classification:
    if isinstance(exc, requests.Timeout):
        return _transport(f"{route.name} timed out")
    if isinstance(exc, requests.ConnectionError):
        return _transport(f"{route.name} connection failed")
    return _transport(f"{route.name} request error: {exc.__class__.__name__}")
