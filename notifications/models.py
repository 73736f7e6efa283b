from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

STATUS_PRESENT = "Present"
STATUS_ABSENT = "Absent"
STATUS_LATE = "Late"
VALID_STATUSES = {STATUS_PRESENT, STATUS_ABSENT, STATUS_LATE}
ALERT_STATUSES = {STATUS_ABSENT, STATUS_LATE}

OUTCOME_SENT = "Sent"
OUTCOME_FAILED = "Failed"

REASON_SENT = "sent"
REASON_SIMULATED = "simulated"
REASON_NO_ADDRESS = "no_address"
REASON_NOT_ELIGIBLE = "not_eligible"
REASON_AUTH_FAILURE = "auth_failure"
REASON_RECIPIENT_INVALID = "recipient_invalid"
REASON_ROUTES_EXHAUSTED = "routes_exhausted"
REASON_CONFIGURATION = "configuration_error"
REASON_INTERNAL = "internal_error"


class Dialect(enum.Enum):
    """Push provider API variant, picked from the credential's shape."""

    SIMULATED = "simulated"
    LEGACY_KEYED = "legacy_keyed"
    BEARER_TOKEN_V1 = "bearer_token_v1"


class SendOutcome(enum.Enum):
    """Classification of a single network attempt."""

    SUCCESS = "success"
    AUTH_FAILURE = "auth_failure"
    RECIPIENT_INVALID = "recipient_invalid"
    TRANSPORT_FAILURE = "transport_failure"

    @property
    def is_terminal(self) -> bool:
        return self is not SendOutcome.TRANSPORT_FAILURE


@dataclass(slots=True)
class Recipient:
    """A student/parent pairing as supplied by the roster store."""

    id: str
    display_name: str
    attendance_state: str = STATUS_PRESENT
    device_address: str = ""
    already_notified_today: bool = False
    grade: str = ""
    class_name: str = ""
    parent_name: str = ""
    parent_phone: str = ""

    @property
    def is_eligible(self) -> bool:
        return self.attendance_state != STATUS_PRESENT and not self.already_notified_today

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Recipient":
        code = record.get("studentCode") or record.get("student_code") or record.get("id")
        if not code:
            raise ValueError("Student record missing studentCode")
        return cls(
            id=str(code),
            display_name=str(record.get("studentName") or record.get("student_name") or code),
            attendance_state=str(record.get("status") or STATUS_PRESENT),
            device_address=str(record.get("fcmToken") or record.get("fcm_token") or ""),
            already_notified_today=bool(record.get("notificationSent", record.get("notification_sent", False))),
            grade=str(record.get("grade") or ""),
            class_name=str(record.get("className") or record.get("class_name") or ""),
            parent_name=str(record.get("parentName") or record.get("parent_name") or ""),
            parent_phone=str(record.get("parentPhone") or record.get("parent_phone") or ""),
        )


@dataclass(frozen=True, slots=True)
class OutboundMessage:
    """Title/body/data triple handed to the push provider."""

    title: str
    body: str
    data: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    def notification(self) -> Dict[str, str]:
        return {"title": self.title, "body": self.body}


@dataclass(frozen=True, slots=True)
class RelayRoute:
    """One network path to the provider: direct, or through a forwarding relay."""

    name: str
    template: str
    forwards_headers: bool = True

    @property
    def is_direct(self) -> bool:
        return self.template == "{url}"

    def build_url(self, target: str) -> str:
        return self.template.replace("{url_encoded}", quote(target, safe="")).replace("{url}", target)


@dataclass(frozen=True, slots=True)
class ResolvedCredential:
    dialect: Dialect
    secret: str = ""


@dataclass(frozen=True, slots=True)
class Classification:
    outcome: SendOutcome
    detail: str
    status_code: Optional[int] = None


@dataclass(frozen=True, slots=True)
class DeliveryRecord:
    """Immutable outcome of one dispatch for one recipient."""

    recipient_id: str
    recipient_name: str
    kind: str
    outcome: str
    reason: str
    detail: str
    attempts: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat(timespec="seconds"))

    @property
    def sent(self) -> bool:
        return self.outcome == OUTCOME_SENT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "recipientId": self.recipient_id,
            "recipientName": self.recipient_name,
            "kind": self.kind,
            "timestamp": self.timestamp,
            "outcome": self.outcome,
            "reason": self.reason,
            "detail": self.detail,
            "attempts": self.attempts,
        }


@dataclass(slots=True)
class BatchReport:
    """Aggregate of the delivery records produced by one dispatch run."""

    records: List[DeliveryRecord] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    cancelled: bool = False
    unmarked: List[str] = field(default_factory=list)

    def add(self, record: DeliveryRecord) -> None:
        if self.finished_at is not None:
            raise RuntimeError("Cannot add records to a finalized report")
        self.records.append(record)

    def finalize(self) -> "BatchReport":
        if self.finished_at is None:
            self.finished_at = datetime.utcnow()
        return self

    @property
    def sent(self) -> int:
        return sum(1 for record in self.records if record.sent)

    @property
    def failed(self) -> int:
        return sum(1 for record in self.records if not record.sent)

    @property
    def failure_reasons(self) -> List[str]:
        reasons: List[str] = []
        for record in self.records:
            if not record.sent and record.detail not in reasons:
                reasons.append(record.detail)
        return reasons

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "failure_reasons": self.failure_reasons,
            "cancelled": self.cancelled,
            "unmarked": list(self.unmarked),
            "started_at": self.started_at.isoformat(timespec="seconds"),
            "finished_at": self.finished_at.isoformat(timespec="seconds") if self.finished_at else None,
            "records": [record.to_dict() for record in self.records],
        }
