#!/usr/bin/env python3
"""Offline demo of the recolor pipeline and a pose batch.

Runs against the mock backend and a synthetic subject with supplied masks,
so no API key or segmentation service is needed. Outputs are written under
demo_artifacts/ and the result cache to demo.db.

Usage:
    python scripts/run_demo.py

Exit codes:
    0: All checks passed
    1: Some checks failed
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import numpy as np

# Add src to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from atelier.adapter.media.image_codec import encode_image  # noqa: E402
from atelier.adapter.media.storage import ArtifactStore  # noqa: E402
from atelier.adapter.vision.segmentation import PrecomputedSegmenter  # noqa: E402
from atelier.adapter.vision.yaw import YawEstimator  # noqa: E402
from atelier.batch.events import ITEM_COMPLETED  # noqa: E402
from atelier.batch.orchestrator import BatchOrchestrator  # noqa: E402
from atelier.batch.renderers import ColorVariantRunner, PoseVariantRenderer  # noqa: E402
from atelier.db.session import init_db  # noqa: E402
from atelier.logging_setup import configure_logging  # noqa: E402
from atelier.models.domain import SegmentationResult  # noqa: E402
from atelier.models.types import BatchRequest, TransformRequest  # noqa: E402
from atelier.pipeline.runner import TransformPipeline  # noqa: E402
from atelier.providers.adapter import GenerationAdapter  # noqa: E402
from atelier.providers.mock import MockBackend  # noqa: E402

# Constants
DEMO_ARTIFACTS_DIR = PROJECT_ROOT / "demo_artifacts"
DEMO_DB_PATH = PROJECT_ROOT / "demo.db"
SUBJECT_SHAPE = (384, 256)


def box(top: int, bottom: int, left: int, right: int) -> np.ndarray:
    mask = np.zeros(SUBJECT_SHAPE, dtype=bool)
    mask[top:bottom, left:right] = True
    return mask


def build_subject() -> tuple[np.ndarray, SegmentationResult]:
    """Synthetic standing figure and its masks."""
    person = box(30, 370, 80, 176)
    garment = box(120, 340, 88, 168)
    skin = box(90, 120, 104, 152) | box(230, 260, 80, 90)
    hair_face = box(30, 95, 100, 156)

    image = np.full((*SUBJECT_SHAPE, 3), 200, dtype=np.uint8)
    image[person] = (90, 110, 140)
    image[skin] = (120, 160, 210)
    image[hair_face] = (40, 50, 70)
    image[garment] = (160, 70, 40)
    image[::6][garment[::6]] = (190, 100, 60)

    segmentation = SegmentationResult(
        person=person,
        garment=garment,
        skin=skin,
        hand=box(230, 260, 80, 90),
        hair_face=hair_face,
        prop=np.zeros(SUBJECT_SHAPE, dtype=bool),
        background=~person,
        garments_by_category={"top": box(120, 230, 88, 168), "bottom": box(230, 340, 88, 168)},
    )
    return image, segmentation


async def run_demo() -> int:
    image, segmentation = build_subject()
    source_uri = encode_image(image, "png").to_data_uri()

    adapter = GenerationAdapter(MockBackend(), backoff_s=0)
    store = ArtifactStore(DEMO_ARTIFACTS_DIR)
    pipeline = TransformPipeline(
        adapter,
        PrecomputedSegmenter(segmentation),
        store,
        session_factory=init_db(DEMO_DB_PATH),
    )
    orchestrator = BatchOrchestrator(
        PoseVariantRenderer(adapter, store),
        ColorVariantRunner(pipeline),
        yaw_estimator=YawEstimator(adapter),
    )

    checks_passed = 0
    checks_failed = 0

    print("\n[1/2] Running recolor pipeline...")
    request = TransformRequest.model_validate(
        {
            "source_image_id": "demo-subject",
            "source_image_data": source_uri,
            "pipeline_config": {
                "cleanup": {"enabled": True, "targets": ["clutter"]},
                "recolor": {"target_category": "top", "color_source": {"type": "hex", "value": "#2E8B57"}},
            },
            "output_options": {"return_debug_masks": True},
        }
    )
    result = await pipeline.run(request)
    print(f"    Status: {result.status} (key={result.data.idempotency_key}, seed={result.data.seed})")
    print(f"    Final image: {result.data.final_image_url}")
    if result.data.warnings:
        print(f"    Warnings: {', '.join(result.data.warnings)}")
    if result.status != "fail":
        checks_passed += 1
    else:
        print(f"    FAIL: {result.error}")
        checks_failed += 1

    print("\n[2/2] Running pose batch...")
    batch = BatchRequest(
        source_image_id="demo-subject",
        source_image_data=source_uri,
        mode="pose",
        angles=["front", "left-30", "right-30", "left-side"],
        color_references=[{"label": "Crimson", "hex_override": "#DC143C"}],
    )
    job = orchestrator.create_job(batch)
    await orchestrator.run(job)
    for item in orchestrator.events(job.job_id).of_type(ITEM_COMPLETED):
        mirrored = " (mirrored)" if item.metadata.is_mirrored else ""
        print(f"    OK: {item.group}/{item.variant_param} yaw={item.estimated_yaw_deg}{mirrored}")
    print(f"    Job {job.job_id}: {job.status} ({job.completed_count}/{job.total})")
    if job.status == "success":
        checks_passed += 1
    else:
        checks_failed += 1

    print("\n" + "=" * 60)
    if checks_failed == 0:
        print(f"RESULT: ALL PASSED ({checks_passed} checks)")
        print("=" * 60)
        return 0
    print(f"RESULT: {checks_passed} passed, {checks_failed} failed")
    print("=" * 60)
    return 1


def main() -> int:
    """Main entry point."""
    configure_logging("WARNING")
    print("=" * 60)
    print("Atelier Offline Demo")
    print("=" * 60)
    return asyncio.run(run_demo())


if __name__ == "__main__":
    sys.exit(main())
