import pytest
import requests

from notifications.config import DEFAULT_RELAYS, DIRECT_ROUTE, LEGACY_ENDPOINT
from notifications.models import Dialect, OutboundMessage, RelayRoute, ResolvedCredential, SendOutcome
from notifications.transport import (
    build_request,
    candidate_routes,
    classify_exception,
    classify_response,
    resolve_dialect,
)

RELAY = DEFAULT_RELAYS[0]
MESSAGE = OutboundMessage(title="Attendance alert", body="Alert", data={"recipientId": "S1", "state": "absent"})


@pytest.mark.parametrize(
    "credential, dialect, secret",
    [
        ("", Dialect.SIMULATED, ""),
        ("   ", Dialect.SIMULATED, ""),
        (None, Dialect.SIMULATED, ""),
        ("AAAAxyz:server-key", Dialect.LEGACY_KEYED, "AAAAxyz:server-key"),
        ("ya29.a0AfH6SM", Dialect.BEARER_TOKEN_V1, "ya29.a0AfH6SM"),
        ("Bearer abc.def", Dialect.BEARER_TOKEN_V1, "abc.def"),
    ],
)
def test_resolve_dialect_by_credential_shape(credential, dialect, secret):
    resolved = resolve_dialect(credential)
    assert resolved.dialect is dialect
    assert resolved.secret == secret


def test_candidate_routes_order():
    assert candidate_routes(Dialect.SIMULATED, DEFAULT_RELAYS) == ()
    routes = candidate_routes(Dialect.LEGACY_KEYED, DEFAULT_RELAYS)
    assert routes[0] is DIRECT_ROUTE
    assert [r.name for r in routes] == ["direct", "corsproxy", "thingproxy"]


def test_relay_urls_wrap_the_endpoint():
    assert DIRECT_ROUTE.build_url(LEGACY_ENDPOINT) == LEGACY_ENDPOINT
    assert DEFAULT_RELAYS[0].build_url(LEGACY_ENDPOINT) == "https://corsproxy.io/?https%3A%2F%2Ffcm.googleapis.com%2Ffcm%2Fsend"
    assert DEFAULT_RELAYS[1].build_url(LEGACY_ENDPOINT) == "https://thingproxy.freeboard.io/fetch/https://fcm.googleapis.com/fcm/send"


def test_build_request_legacy_shape():
    endpoint, headers, payload = build_request(ResolvedCredential(Dialect.LEGACY_KEYED, "KEY123"), MESSAGE, "device-token-1")
    assert endpoint == LEGACY_ENDPOINT
    assert headers["Authorization"] == "key=KEY123"
    assert payload == {
        "to": "device-token-1",
        "notification": {"title": "Attendance alert", "body": "Alert"},
        "data": {"recipientId": "S1", "state": "absent"},
    }


def test_build_request_v1_shape():
    endpoint, headers, payload = build_request(
        ResolvedCredential(Dialect.BEARER_TOKEN_V1, "ya29.token"), MESSAGE, "device-token-1", project_id="school-app"
    )
    assert endpoint == "https://fcm.googleapis.com/v1/projects/school-app/messages:send"
    assert headers["Authorization"] == "Bearer ya29.token"
    assert payload["message"]["token"] == "device-token-1"
    assert payload["message"]["notification"]["title"] == "Attendance alert"


def test_build_request_v1_requires_project():
    with pytest.raises(ValueError):
        build_request(ResolvedCredential(Dialect.BEARER_TOKEN_V1, "ya29.token"), MESSAGE, "device-token-1")


def test_legacy_success(make_response):
    resp = make_response(200, {"success": 1, "failure": 0, "results": [{"message_id": "0:1"}]})
    assert classify_response(resp, Dialect.LEGACY_KEYED, DIRECT_ROUTE).outcome is SendOutcome.SUCCESS


def test_relay_html_404_is_transport_failure(make_response):
    resp = make_response(404, "<!DOCTYPE html><html><body>Not Found</body></html>", "text/html")
    result = classify_response(resp, Dialect.LEGACY_KEYED, RELAY)
    assert result.outcome is SendOutcome.TRANSPORT_FAILURE
    assert "non-JSON" in result.detail


def test_relay_html_401_is_not_an_auth_failure(make_response):
    resp = make_response(401, "<html>Unauthorized</html>", "text/html")
    assert classify_response(resp, Dialect.LEGACY_KEYED, RELAY).outcome is SendOutcome.TRANSPORT_FAILURE


def test_direct_html_401_is_auth_failure(make_response):
    resp = make_response(401, "<HTML><TITLE>Unauthorized</TITLE></HTML>", "text/html; charset=UTF-8")
    result = classify_response(resp, Dialect.LEGACY_KEYED, DIRECT_ROUTE)
    assert result.outcome is SendOutcome.AUTH_FAILURE
    assert "credential" in result.detail


def test_json_content_type_with_broken_body(make_response):
    resp = make_response(200, "{not json", "application/json")
    assert classify_response(resp, Dialect.LEGACY_KEYED, RELAY).outcome is SendOutcome.TRANSPORT_FAILURE


def test_server_error_is_transport_failure(make_response):
    resp = make_response(503, {"error": "busy"})
    assert classify_response(resp, Dialect.LEGACY_KEYED, DIRECT_ROUTE).outcome is SendOutcome.TRANSPORT_FAILURE


@pytest.mark.parametrize(
    "error, outcome",
    [
        ("NotRegistered", SendOutcome.RECIPIENT_INVALID),
        ("InvalidRegistration", SendOutcome.RECIPIENT_INVALID),
        ("Unavailable", SendOutcome.TRANSPORT_FAILURE),
        ("MessageTooBig", SendOutcome.RECIPIENT_INVALID),
    ],
)
def test_legacy_result_errors(make_response, error, outcome):
    resp = make_response(200, {"success": 0, "failure": 1, "results": [{"error": error}]})
    result = classify_response(resp, Dialect.LEGACY_KEYED, DIRECT_ROUTE)
    assert result.outcome is outcome
    assert error in result.detail


def test_relay_json_in_its_own_format(make_response):
    resp = make_response(200, {"status": "ok", "proxied": True})
    assert classify_response(resp, Dialect.LEGACY_KEYED, RELAY).outcome is SendOutcome.TRANSPORT_FAILURE


def test_v1_success(make_response):
    resp = make_response(200, {"name": "projects/school-app/messages/123"})
    assert classify_response(resp, Dialect.BEARER_TOKEN_V1, DIRECT_ROUTE).outcome is SendOutcome.SUCCESS


def test_v1_unregistered_token(make_response):
    body = {
        "error": {
            "code": 404,
            "status": "NOT_FOUND",
            "details": [{"@type": "type.googleapis.com/google.firebase.fcm.v1.FcmError", "errorCode": "UNREGISTERED"}],
        }
    }
    result = classify_response(make_response(404, body), Dialect.BEARER_TOKEN_V1, DIRECT_ROUTE)
    assert result.outcome is SendOutcome.RECIPIENT_INVALID
    assert "UNREGISTERED" in result.detail


def test_v1_unauthenticated(make_response):
    body = {"error": {"code": 401, "status": "UNAUTHENTICATED", "message": "Request had invalid authentication credentials."}}
    result = classify_response(make_response(401, body), Dialect.BEARER_TOKEN_V1, RELAY)
    assert result.outcome is SendOutcome.AUTH_FAILURE


def test_v1_quota_exceeded_is_transient(make_response):
    body = {"error": {"code": 429, "status": "RESOURCE_EXHAUSTED", "details": [{"errorCode": "QUOTA_EXCEEDED"}]}}
    result = classify_response(make_response(429, body), Dialect.BEARER_TOKEN_V1, DIRECT_ROUTE)
    assert result.outcome is SendOutcome.TRANSPORT_FAILURE


def test_auth_failure_through_header_stripping_relay(make_response):
    stripping = RelayRoute(name="stripper", template="https://relay.example/{url}", forwards_headers=False)
    resp = make_response(401, {"error": {"status": "UNAUTHENTICATED"}})
    result = classify_response(resp, Dialect.BEARER_TOKEN_V1, stripping)
    assert result.outcome is SendOutcome.TRANSPORT_FAILURE
    assert "did not forward" in result.detail


def test_classify_exception():
    assert "timed out" in classify_exception(requests.Timeout("slow"), RELAY).detail
    assert "connection failed" in classify_exception(requests.ConnectionError("refused"), RELAY).detail
    result = classify_exception(requests.TooManyRedirects("loop"), RELAY)
    assert result.outcome is SendOutcome.TRANSPORT_FAILURE
