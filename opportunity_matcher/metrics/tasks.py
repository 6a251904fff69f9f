"""
Metrics for background task execution.
"""

from typing import Dict, Optional

from opportunity_matcher.core.config import settings
from opportunity_matcher.metrics.core import MetricNames, increment_counter, report_timing


def report_task_outcome(
    task_name: str,
    duration_seconds: float,
    success: bool,
    error: Optional[BaseException] = None,
    tags: Optional[Dict[str, str]] = None,
) -> None:
    """Report the duration and outcome counter of one task run."""
    if not settings.metrics_enabled:
        return

    metric_tags = {"task": task_name, "status": "success" if success else "error"}
    if error is not None:
        metric_tags["error_type"] = error.__class__.__name__
    if tags:
        metric_tags.update(tags)

    report_timing(MetricNames.TASK_DURATION, duration_seconds, metric_tags)
    increment_counter(MetricNames.TASK_COUNT, metric_tags)
