import asyncio
import logging

from fastapi import APIRouter, HTTPException, Response

from terramesh.context import GenerationContext
from terramesh.errors import ConfigurationError
from terramesh.exporters import get_exporter

from backend.jobs import generation_manager
from backend.models import GenerateRequest, GenerationResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/generate", tags=["generate"])


def _response(context: GenerationContext) -> GenerationResponse:
    return GenerationResponse(
        generation_id=context.id,
        channel=context.channel,
        status=context.status.value,
        progress=context.progress,
        message=context.message,
        result=context.result,
        error=context.error,
    )


@router.post("", response_model=GenerationResponse)
async def start_generation(request: GenerateRequest):
    """Start (or restart) mesh generation for an area.

    Any generation still in flight on the same channel is cancelled and its
    output discarded. Unless ``debounce`` is false the new run waits for a
    quiet period first, so a burst of slider changes produces a single
    generation. Poll ``/status/{generation_id}`` for progress.
    """
    try:
        context = generation_manager.submit(request)
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return _response(context)


@router.get("/status/{generation_id}", response_model=GenerationResponse)
async def get_generation_status(generation_id: str):
    """Poll the status of a pending, running or finished generation."""
    context = generation_manager.get(generation_id)
    if context is None:
        raise HTTPException(status_code=404, detail="Generation not found")
    return _response(context)


@router.post("/cancel/{channel}")
async def cancel_generation(channel: str):
    """Cancel whatever is pending or running on *channel*."""
    return {"channel": channel, "cancelled": generation_manager.cancel(channel)}


@router.get("/{generation_id}/mesh")
async def download_mesh(generation_id: str, format: str = "obj"):
    """Export a finished generation's mesh in the requested format."""
    try:
        exporter = get_exporter(format)
    except ConfigurationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    result = generation_manager.get_result(generation_id)
    if result is None:
        raise HTTPException(status_code=404, detail="No finished mesh for this generation")

    data = await asyncio.to_thread(exporter.write, result.mesh)
    return Response(
        content=data,
        media_type=exporter.media_type,
        headers={"Content-Disposition":
                 f'attachment; filename="terrain-{generation_id[:8]}{exporter.suffix}"'},
    )
