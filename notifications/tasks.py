from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from celery import shared_task

import app as dashboard

from .channels import PushDispatcher
from .collectors import collect_pending_recipients
from .models import BatchReport
from .service import run_batch

LOGGER = logging.getLogger(__name__)


def run_alert_batch(codes: Optional[List[str]] = None, dispatcher: Optional[PushDispatcher] = None) -> BatchReport:
    """Dispatch alerts for pending students and store the delivery history."""
    settings = dashboard.build_dispatch_settings()
    dispatcher = dispatcher or PushDispatcher(settings)
    recipients = collect_pending_recipients(codes)
    LOGGER.info("Dispatching %d alerts using %s dialect", len(recipients), dispatcher.dialect.value)
    report = run_batch(
        recipients,
        dispatcher,
        dashboard.mark_notified,
        max_workers=settings.batch_workers,
    )
    dashboard.append_notification_logs(report.records)
    return report


@shared_task(name="notifications.tasks.dispatch_pending_alerts")
def dispatch_pending_alerts(student_codes: Optional[List[str]] = None) -> Dict[str, Any]:
    report = run_alert_batch(student_codes)
    LOGGER.info("Sent %d attendance alerts, %d failed", report.sent, report.failed)
    return report.to_dict()


@shared_task(name="notifications.tasks.reset_daily_flags")
def reset_daily_flags() -> str:
    changed = dashboard.reset_daily_attendance()
    LOGGER.info("Reset attendance for %d students", changed)
    return str(changed)
