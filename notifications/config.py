"""Shared configuration defaults for the push dispatch engine."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from .models import (  # noqa: F401  re-exported for app.py
    ALERT_STATUSES,
    STATUS_ABSENT,
    STATUS_LATE,
    STATUS_PRESENT,
    VALID_STATUSES,
    RelayRoute,
)

LOGGER = logging.getLogger(__name__)

MIN_DEVICE_ADDRESS_LENGTH = 10
SIMULATED_DELAY_SECONDS = 0.8
REQUEST_TIMEOUT_SECONDS = 10.0
DEFAULT_BATCH_WORKERS = 1
MAX_BATCH_WORKERS = 4

LEGACY_ENDPOINT = "https://fcm.googleapis.com/fcm/send"
V1_ENDPOINT_TEMPLATE = "https://fcm.googleapis.com/v1/projects/{project}/messages:send"

BEARER_TOKEN_PREFIXES = ("ya29.",)
CLICK_ACTION = "FLUTTER_NOTIFICATION_CLICK"
SCHOOL_NAME = os.getenv("SCHOOL_NAME", "School")

DIRECT_ROUTE = RelayRoute(name="direct", template="{url}", forwards_headers=True)
DEFAULT_RELAYS: Tuple[RelayRoute, ...] = (
    RelayRoute(name="corsproxy", template="https://corsproxy.io/?{url_encoded}", forwards_headers=True),
    RelayRoute(name="thingproxy", template="https://thingproxy.freeboard.io/fetch/{url}", forwards_headers=True),
)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        LOGGER.warning("Ignoring invalid %s=%r; using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("Ignoring invalid %s=%r; using %s", name, raw, default)
        return default


def parse_relays(raw: Optional[str]) -> Tuple[RelayRoute, ...]:
    """Parse a JSON list of relay definitions.

    Each entry is either a template string or an object with ``template`` and
    optional ``name``/``forwards_headers`` keys. Blank input yields the
    built-in relay list.
    """
    if raw is None or not raw.strip():
        return DEFAULT_RELAYS
    try:
        entries = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"PUSH_RELAYS is not valid JSON: {exc}") from exc
    if not isinstance(entries, list):
        raise ValueError("PUSH_RELAYS must be a JSON list")

    relays = []
    for idx, entry in enumerate(entries):
        if isinstance(entry, str):
            entry = {"template": entry}
        if not isinstance(entry, dict) or not entry.get("template"):
            raise ValueError(f"PUSH_RELAYS entry {idx} needs a template")
        template = str(entry["template"])
        if "{url}" not in template and "{url_encoded}" not in template:
            raise ValueError(f"PUSH_RELAYS entry {idx} has no {{url}} placeholder")
        relays.append(
            RelayRoute(
                name=str(entry.get("name") or f"relay-{idx + 1}"),
                template=template,
                forwards_headers=bool(entry.get("forwards_headers", True)),
            )
        )
    return tuple(relays)


@dataclass(slots=True)
class DispatchSettings:
    """Everything the dispatcher needs, passed in explicitly."""

    credential: str = ""
    project_id: Optional[str] = None
    relays: Tuple[RelayRoute, ...] = field(default_factory=lambda: DEFAULT_RELAYS)
    request_timeout: float = REQUEST_TIMEOUT_SECONDS
    simulated_delay: float = SIMULATED_DELAY_SECONDS
    min_address_length: int = MIN_DEVICE_ADDRESS_LENGTH
    batch_workers: int = DEFAULT_BATCH_WORKERS

    def __post_init__(self) -> None:
        self.credential = (self.credential or "").strip()
        self.project_id = (self.project_id or "").strip() or None
        self.batch_workers = max(1, min(MAX_BATCH_WORKERS, int(self.batch_workers)))
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")
        if self.simulated_delay < 0:
            raise ValueError("simulated_delay cannot be negative")

    @classmethod
    def from_env(cls, overrides: Optional[Mapping[str, Any]] = None) -> "DispatchSettings":
        """Build settings from the environment, then apply stored overrides."""
        values: Dict[str, Any] = {
            "credential": os.getenv("PUSH_SERVER_KEY", ""),
            "project_id": os.getenv("FCM_PROJECT_ID"),
            "relays": parse_relays(os.getenv("PUSH_RELAYS")),
            "request_timeout": _env_float("PUSH_REQUEST_TIMEOUT", REQUEST_TIMEOUT_SECONDS),
            "simulated_delay": _env_float("PUSH_SIMULATED_DELAY", SIMULATED_DELAY_SECONDS),
            "min_address_length": _env_int("PUSH_MIN_ADDRESS_LENGTH", MIN_DEVICE_ADDRESS_LENGTH),
            "batch_workers": _env_int("PUSH_BATCH_WORKERS", DEFAULT_BATCH_WORKERS),
        }
        for key, value in (overrides or {}).items():
            if key in values and value not in (None, ""):
                values[key] = value
        return cls(**values)
