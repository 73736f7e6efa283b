from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional, Sequence

from .config import CLICK_ACTION, MIN_DEVICE_ADDRESS_LENGTH, SCHOOL_NAME
from .models import (
    OUTCOME_FAILED,
    REASON_INTERNAL,
    STATUS_ABSENT,
    STATUS_LATE,
    BatchReport,
    DeliveryRecord,
    OutboundMessage,
    Recipient,
)

LOGGER = logging.getLogger(__name__)

MESSAGE_TEMPLATES = {
    STATUS_ABSENT: "Alert: {name} is marked absent today.",
    STATUS_LATE: "Alert: {name} arrived late today.",
}


def is_deliverable(recipient: Recipient, min_length: int = MIN_DEVICE_ADDRESS_LENGTH) -> bool:
    """True when the recipient has a device address worth sending to."""
    address = getattr(recipient, "device_address", None)
    if not isinstance(address, str):
        return False
    return len(address.strip()) >= min_length


def compose_message(recipient: Recipient) -> OutboundMessage:
    template = MESSAGE_TEMPLATES.get(recipient.attendance_state)
    if template is None:
        raise ValueError(f"No alert template for attendance state {recipient.attendance_state!r}")
    return OutboundMessage(
        title=f"Attendance alert - {SCHOOL_NAME}",
        body=template.format(name=recipient.display_name),
        data={
            "recipientId": recipient.id,
            "state": recipient.attendance_state.lower(),
            "click_action": CLICK_ACTION,
        },
    )


def _dispatch(dispatcher, recipient: Recipient) -> DeliveryRecord:
    try:
        return dispatcher.send(recipient)
    except Exception:
        LOGGER.exception("Dispatcher raised while notifying %s", recipient.id)
        return DeliveryRecord(
            recipient_id=recipient.id,
            recipient_name=recipient.display_name,
            kind=recipient.attendance_state,
            outcome=OUTCOME_FAILED,
            reason=REASON_INTERNAL,
            detail="Unexpected error while sending notification",
        )


def _mark(recipient: Recipient, mark_notified: Callable[[str], object], report: BatchReport) -> None:
    try:
        mark_notified(recipient.id)
    except Exception:
        LOGGER.exception("Failed to mark %s as notified", recipient.id)
        report.unmarked.append(recipient.id)


def run_batch(
    recipients: Sequence[Recipient],
    dispatcher,
    mark_notified: Callable[[str], object],
    *,
    max_workers: int = 1,
    should_stop: Optional[Callable[[], bool]] = None,
) -> BatchReport:
    """Send alerts for ``recipients`` and return the aggregated report.

    ``dispatcher`` is anything with a ``send(recipient) -> DeliveryRecord``
    method. ``mark_notified`` is called once per recipient whose record came
    back Sent, after that record exists. Records keep the input order.
    """
    report = BatchReport()
    recipients = list(recipients)

    if max_workers <= 1 or len(recipients) <= 1:
        for recipient in recipients:
            if should_stop and should_stop():
                LOGGER.info("Batch stopped before %s; %d recipients left", recipient.id,
                            len(recipients) - len(report.records))
                report.cancelled = True
                break
            record = _dispatch(dispatcher, recipient)
            report.add(record)
            if record.sent:
                _mark(recipient, mark_notified, report)
    else:
        def _send(recipient: Recipient) -> Optional[DeliveryRecord]:
            if should_stop and should_stop():
                return None
            return _dispatch(dispatcher, recipient)

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="push-batch") as pool:
            futures = [pool.submit(_send, recipient) for recipient in recipients]
            for recipient, future in zip(recipients, futures):
                record = future.result()
                if record is None:
                    report.cancelled = True
                    continue
                report.add(record)
                if record.sent:
                    _mark(recipient, mark_notified, report)

    report.finalize()
    LOGGER.info("Batch finished: %d sent, %d failed", report.sent, report.failed)
    return report


def summarize_report(report: BatchReport) -> List[str]:
    """Lines suitable for a staff-facing alert after a batch."""
    lines = [f"{report.sent} notification{'s' if report.sent != 1 else ''} sent."]
    if report.failed:
        lines.append(f"{report.failed} notification{'s' if report.failed != 1 else ''} failed.")
        lines.append("")
        lines.append("Failure reasons:")
        lines.extend(f"- {reason}" for reason in report.failure_reasons)
    if report.cancelled:
        lines.append("Batch was stopped before every student was processed.")
    return lines


def select_recipients(recipients: Iterable[Recipient], codes: Optional[Iterable[str]] = None) -> List[Recipient]:
    """Eligible recipients, optionally restricted to ``codes``, in roster order."""
    wanted = {str(code) for code in codes} if codes is not None else None
    selected: List[Recipient] = []
    for recipient in recipients:
        if wanted is not None and recipient.id not in wanted:
            continue
        if recipient.is_eligible:
            selected.append(recipient)
    return selected
