from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from link_health.jobs.classifier import BROKEN_STATUSES
from link_health.services.repository import COMPLETED_PROCESSING_STATE


def bucket_status_counts(rows: Iterable[dict[str, Any]]) -> dict[str, int]:
    """Fold (health_status, processing_state, count) rows into the dashboard buckets.

    Parked, expired and unreachable all count as broken; a row whose processing
    state is not ``completed`` counts as pending whatever its health status.
    """
    stats = {"total": 0, "valid": 0, "redirected": 0, "broken": 0, "pending": 0}
    for row in rows:
        count = int(row.get("count") or 0)
        health_status = row.get("health_status")
        stats["total"] += count
        if row.get("processing_state") != COMPLETED_PROCESSING_STATE:
            stats["pending"] += count
        elif health_status == "valid":
            stats["valid"] += count
        elif health_status == "redirected":
            stats["redirected"] += count
        elif health_status in BROKEN_STATUSES:
            stats["broken"] += count
    return stats


async def compute_stats(repository: Any, scope: str = "all") -> dict[str, int]:
    rows = await repository.count_checks(scope=scope)
    return bucket_status_counts(rows)
