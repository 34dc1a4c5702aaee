import asyncio
import logging
from typing import Callable, Optional

from terramesh.builder import GenerationResult, MeshGenerator
from terramesh.context import (
    Debouncer, GenerationContext, GenerationRegistry, GenerationStatus, request_signature,
)
from terramesh.errors import ConfigurationError, GenerationCancelled
from terramesh.exporters import get_exporter
from terramesh.models import BoundingBox, MeshSettings

from backend import config
from backend.models import GenerateRequest

logger = logging.getLogger(__name__)


def settings_from_request(request: GenerateRequest) -> MeshSettings:
    return MeshSettings(
        grid_width=request.grid_size,
        grid_height=request.grid_size,
        vertical_exaggeration=request.vertical_exaggeration,
        building_scale_factor=request.building_scale_factor,
        terrain_base_height=request.terrain_base_height,
        containment=request.containment,
        layers=tuple(request.layers),
    )


def _sync_export(result: GenerationResult, context_id: str, output_format: str) -> dict:
    """Write the finished mesh into OUTPUT_DIR; runs in a worker thread."""
    exporter = get_exporter(output_format)
    filename = f"{context_id}{exporter.suffix}"
    path = config.OUTPUT_DIR / filename
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(exporter.write(result.mesh))
    return {
        **result.summary(),
        "format": exporter.name,
        "model_url": f"/output/{filename}",
    }


class GenerationManager:
    """Debounced, cancellable generations, one active per channel."""

    def __init__(self, generator_factory: Callable[[], MeshGenerator] = MeshGenerator,
                 debounce_seconds: float = config.DEBOUNCE_SECONDS,
                 max_entries: int = config.MAX_GENERATIONS) -> None:
        self.generator_factory = generator_factory
        self.debounce_seconds = debounce_seconds
        self.registry = GenerationRegistry(max_entries)
        self.results: dict[str, GenerationResult] = {}
        self._debouncers: dict[str, Debouncer] = {}

    def get(self, context_id: str) -> Optional[GenerationContext]:
        return self.registry.get(context_id)

    def get_result(self, context_id: str) -> Optional[GenerationResult]:
        if context_id not in self.registry:
            self.results.pop(context_id, None)
            return None
        return self.results.get(context_id)

    def submit(self, request: GenerateRequest) -> GenerationContext:
        """Validate ``request`` and schedule it on its channel.

        Invalid input raises ``ConfigurationError`` before anything on the
        channel is cancelled. An unchanged request reuses the generation
        already running or finished for it.
        """
        BoundingBox.from_geojson(request.geometry)
        settings = settings_from_request(request)
        get_exporter(request.output_format)
        signature = request_signature(request.signature_params())

        active = self.registry.active(request.channel)
        if (active is not None and active.signature == signature
                and active.status in (GenerationStatus.pending, GenerationStatus.running,
                                      GenerationStatus.completed)):
            logger.info(f"Request unchanged, reusing generation {active.id}")
            return active

        # Parameters moved back to an earlier state whose mesh is still held
        previous = self.registry.find_completed(request.channel, signature)
        if previous is not None and previous.id in self.results:
            self.cancel(request.channel)
            logger.info(f"Reusing completed generation {previous.id}")
            return previous

        context = self.registry.start(request.channel, signature)
        self._prune_results()

        if request.debounce and self.debounce_seconds > 0:
            debouncer = self._debouncers.setdefault(
                request.channel, Debouncer(self.debounce_seconds))
            context.task = debouncer.trigger(
                lambda: self.run_generation(context, request, settings))
        else:
            context.task = asyncio.get_running_loop().create_task(
                self.run_generation(context, request, settings))
        return context

    def cancel(self, channel: str) -> bool:
        debouncer = self._debouncers.get(channel)
        if debouncer is not None:
            debouncer.cancel()
        return self.registry.cancel(channel)

    def shutdown(self) -> None:
        for debouncer in self._debouncers.values():
            debouncer.cancel()
        cancelled = self.registry.cancel_all()
        if cancelled:
            logger.info(f"Cancelled {cancelled} generations on shutdown")

    def _prune_results(self) -> None:
        for context_id in [cid for cid in self.results if cid not in self.registry]:
            del self.results[context_id]

    async def run_generation(self, context: GenerationContext, request: GenerateRequest,
                             settings: MeshSettings) -> None:
        """Execute the pipeline, updating *context* with progress."""
        def _update_progress(pct: float, msg: str) -> None:
            if not context.token.cancelled:
                context.progress = pct
                context.message = msg

        try:
            context.status = GenerationStatus.running
            _update_progress(5.0, "Starting generation...")

            generator = self.generator_factory()
            result = await generator.generate(
                request.geometry, settings, token=context.token,
                progress_callback=_update_progress)
            context.token.raise_if_cancelled()

            summary = await asyncio.to_thread(
                _sync_export, result, context.id, request.output_format)
            if context.publish(summary):
                self.results[context.id] = result
                self._prune_results()

        except GenerationCancelled:
            logger.info(f"Generation {context.id} cancelled")
            context.mark_cancelled()
        except asyncio.CancelledError:
            context.mark_cancelled()
            raise
        except ConfigurationError as exc:
            context.fail(f"Invalid request: {exc}")
        except Exception as exc:
            logger.exception("Generation failed for %s", context.id)
            context.fail(f"Generation failed: {exc}")


# Singleton instance used across the application
generation_manager = GenerationManager()
