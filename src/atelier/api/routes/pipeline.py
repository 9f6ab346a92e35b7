"""Pipeline API endpoint.

POST /api/v1/pipeline/run - Run a single-image transform
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from atelier.api.state import Services, get_services
from atelier.models.types import PipelineResult, TransformRequest

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/pipeline/run", response_model=PipelineResult)
async def run_pipeline(
    request: TransformRequest,
    services: Services = Depends(get_services),
):
    """Run the transform pipeline on one image.

    Args:
        request: Transform request.
        services: Application services (injected).

    Returns:
        PipelineResult; HTTP 500 with the same body when the run failed.

    Raises:
        HTTPException: 400 if the source image cannot be resolved, 503 if no
            segmentation service is configured.
    """
    pipeline = services.require_pipeline()
    try:
        source = services.resolver.resolve_source(request.source_image_id, request.source_image_data)
    except (FileNotFoundError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Source image unavailable: {e}")

    result = await pipeline.run(request, source=source)
    if result.status == "fail":
        return JSONResponse(status_code=500, content=result.model_dump(mode="json"))
    return result
