from __future__ import annotations

import logging
from typing import Iterable, List, Optional

import app as dashboard

from .models import Recipient
from .service import select_recipients

LOGGER = logging.getLogger(__name__)


def load_roster() -> List[Recipient]:
    recipients: List[Recipient] = []
    for record in dashboard.load_students():
        try:
            recipients.append(Recipient.from_record(record))
        except ValueError:
            LOGGER.warning("Skipping roster record without a student code: %r", record)
    return recipients


def collect_pending_recipients(codes: Optional[Iterable[str]] = None) -> List[Recipient]:
    """Absent/late students who have not been alerted today.

    When ``codes`` is given only those students are considered; unknown or
    ineligible codes are dropped with a log line.
    """
    roster = load_roster()
    selected = select_recipients(roster, codes)
    if codes is not None:
        missing = set(codes) - {r.id for r in selected}
        if missing:
            LOGGER.info("Ignoring %d selected students that are unknown or not eligible: %s",
                        len(missing), ", ".join(sorted(missing)))
    return selected


__all__ = [
    "load_roster",
    "collect_pending_recipients",
]
