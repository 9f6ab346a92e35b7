"""Staged transform pipeline.

- pipeline/runner.py - stage orchestration, status and result cache
- pipeline/instructions.py - instruction text per edit kind
"""

from atelier.pipeline.runner import (
    CLEANUP_FALLBACK_WARNING,
    POSE_FALLBACK_WARNING,
    StageRunner,
    TransformPipeline,
)

__all__ = [
    "CLEANUP_FALLBACK_WARNING",
    "POSE_FALLBACK_WARNING",
    "StageRunner",
    "TransformPipeline",
]
