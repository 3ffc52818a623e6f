"""Processor subscription status -> local SubscriptionStatus."""

import logging

from app.metrics import UNMAPPED_STATUS
from app.models.billing import SubscriptionStatus

logger = logging.getLogger(__name__)

_PROCESSOR_STATUSES: dict[str, SubscriptionStatus] = {
    status.value: status for status in SubscriptionStatus
}


def map_processor_status(raw: object) -> SubscriptionStatus:
    """Total mapping: anything unrecognised becomes ``revoked`` (no access).

    Fallbacks are logged and counted so they show up on dashboards.
    """
    if isinstance(raw, str) and raw in _PROCESSOR_STATUSES:
        return _PROCESSOR_STATUSES[raw]
    label = str(raw)[:40] if raw is not None else "<none>"
    logger.warning("Unmapped processor subscription status %r, using revoked", raw)
    UNMAPPED_STATUS.labels(label).inc()
    return SubscriptionStatus.revoked


def is_entitled(status: SubscriptionStatus) -> bool:
    return status in (SubscriptionStatus.active, SubscriptionStatus.trialing)
