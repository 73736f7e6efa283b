import json
import os
import tempfile

import pytest
import requests

os.environ.setdefault("USE_DATABASE", "0")
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="attendance-tests-"))

from notifications.config import DispatchSettings  # noqa: E402
from notifications.models import Recipient  # noqa: E402


class FakePost:
    """Stands in for ``requests.post``; replays queued responses or exceptions."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def __call__(self, url, headers=None, json=None, timeout=None):
        self.calls.append({"url": url, "headers": headers, "json": json, "timeout": timeout})
        if not self.outcomes:
            raise AssertionError(f"unexpected request to {url}")
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    @property
    def urls(self):
        return [call["url"] for call in self.calls]


def _make_response(status, body, content_type="application/json; charset=UTF-8"):
    resp = requests.Response()
    resp.status_code = status
    if content_type:
        resp.headers["Content-Type"] = content_type
    if isinstance(body, (dict, list)):
        body = json.dumps(body)
    resp._content = (body or "").encode("utf-8")
    resp.encoding = "utf-8"
    return resp


@pytest.fixture(autouse=True)
def _clean_push_env(monkeypatch):
    for name in ("PUSH_SERVER_KEY", "FCM_PROJECT_ID", "PUSH_RELAYS", "PUSH_SIMULATED_DELAY"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def make_response():
    return _make_response


@pytest.fixture
def fake_post():
    return FakePost


@pytest.fixture
def legacy_settings():
    return DispatchSettings(credential="AAAAlegacy-server-key")


@pytest.fixture
def absent_recipient():
    return Recipient(
        id="S1001",
        display_name="Ahmed Ali",
        attendance_state="Absent",
        device_address="tok_abcdefghij",
    )
