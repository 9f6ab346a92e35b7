"""Bounded-concurrency batch orchestration.

- batch/orchestrator.py - job lifecycle, worker pool, settlement
- batch/navigation.py - viewpoints, yaw calibration, mirror planning
- batch/renderers.py - pose and color variant renderers
- batch/events.py - stream events and SSE framing
"""

from atelier.batch.events import EventLog, StreamEvent, format_sse
from atelier.batch.navigation import VIEWPOINTS, calculate_relative_yaw
from atelier.batch.orchestrator import BatchOrchestrator, select_concurrency
from atelier.batch.renderers import ColorVariantRunner, PoseVariantRenderer

__all__ = [
    "VIEWPOINTS",
    "BatchOrchestrator",
    "ColorVariantRunner",
    "EventLog",
    "PoseVariantRenderer",
    "StreamEvent",
    "calculate_relative_yaw",
    "format_sse",
    "select_concurrency",
]
