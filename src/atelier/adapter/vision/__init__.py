"""Vision adapters for external analysis services.

- segmentation: named person/garment masks from a segmentation service
- yaw: subject yaw estimation through a text model
"""

from atelier.adapter.vision.segmentation import (
    HttpSegmenter,
    PrecomputedSegmenter,
    Segmenter,
    parse_segmentation_payload,
)
from atelier.adapter.vision.yaw import YawEstimate, YawEstimator, parse_yaw_reply

__all__ = [
    "HttpSegmenter",
    "PrecomputedSegmenter",
    "Segmenter",
    "YawEstimate",
    "YawEstimator",
    "parse_segmentation_payload",
    "parse_yaw_reply",
]
