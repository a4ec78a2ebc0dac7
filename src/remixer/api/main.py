"""Remixer — FastAPI Application.

This module is the single entry point for the web application.  It builds
the FastAPI ``app`` (via :func:`create_app`), wires the queue subsystem
together in the lifespan handler, defines all REST API routes, and provides
the ``main()`` CLI function that launches the uvicorn server.

Architecture
------------
- **Submissions** (``POST /api/generate``, ``POST /api/remix``) only write
  to the database.  They return ``202 Accepted`` as soon as the
  generation/queue-item pairs are committed and then signal the worker.
- **Processing** happens on a single background thread owned by
  :class:`~remixer.core.worker.QueueWorker`, which drains the queue through
  :class:`~remixer.core.processor.QueueProcessor`.
- **Clients poll** ``GET /api/generate/{id}/status`` until the generation is
  ``completed`` or ``failed``.
- **Generated images** are served by FastAPI's ``StaticFiles`` at
  ``/images/...``.

Endpoints
---------
========  ==================================  ================================
Method    Path                                Purpose
========  ==================================  ================================
POST      ``/api/generate``                   Enqueue a batch (1-4) of images
GET       ``/api/generate``                   Global queue snapshot
GET       ``/api/generate/{id}/status``       Generation status for polling
POST      ``/api/remix``                      Enqueue a fork/replace remix
GET       ``/api/queue``                      Active items and metrics
DELETE    ``/api/queue/{id}``                 Delete a still-queued item
GET       ``/api/queue/history``              Finished queue items
GET       ``/api/history``                    Paginated generations
GET       ``/api/history/{id}``               Single generation
DELETE    ``/api/history/{id}``               Delete generation and image
POST      ``/api/history/{id}/favorite``      Toggle favorite flag
POST      ``/api/history/{id}/hidden``        Toggle hidden flag
GET       ``/api/history/{id}/lineage``       Ancestors and children
========  ==================================  ================================

Usage
-----
CLI (installed entry point)::

    remixer

Direct invocation::

    python -m remixer.api.main
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from remixer import __version__
from remixer.api.models import GenerateRequest, RemixRequest
from remixer.core.config import RemixerConfig, config
from remixer.core.database import Database
from remixer.core.errors import NotFoundError, RemixValidationError
from remixer.core.generations import GenerationRepository
from remixer.core.image_storage import ImageStorage, ReferenceStore
from remixer.core.processor import QueueProcessor
from remixer.core.provider import ImageProvider
from remixer.core.queue_manager import QueueManager
from remixer.core.queue_repository import QueueRepository
from remixer.core.worker import QueueWorker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Dependencies: services are created in the lifespan and kept on app.state.
# ---------------------------------------------------------------------------


def get_queue_manager(request: Request) -> QueueManager:
    return request.app.state.queue_manager


def get_queue_repository(request: Request) -> QueueRepository:
    return request.app.state.queue_repository


def get_generations(request: Request) -> GenerationRepository:
    return request.app.state.generations


# ---------------------------------------------------------------------------
# Submission routes.
# ---------------------------------------------------------------------------


@router.post("/generate", status_code=202)
def submit_generation(
    req: GenerateRequest,
    manager: QueueManager = Depends(get_queue_manager),
) -> dict:
    """Enqueue ``count`` independent generations of one composed prompt.

    All pairs are created in a single transaction; if any insert fails the
    whole batch is rolled back.  The response describes the first item and
    lists every pair under ``batch``.

    Returns:
        Dictionary with ``queue_id``, ``generation_id``, ``position``,
        ``status``, and ``batch``.
    """
    submissions = manager.submit(
        req.prompt_json,
        count=req.count,
        reference_photo_ids=req.reference_photo_ids,
        inline_reference_paths=req.inline_reference_paths,
        components_used=req.components_used,
        google_search=req.google_search,
        safety_override=req.safety_override,
    )
    first = submissions[0]
    position = manager.get_queue_status(first.queue_item.id)["position"]

    return {
        "queue_id": first.queue_item.id,
        "generation_id": first.generation.id,
        # The worker may already have claimed the item.
        "position": position or 1,
        "status": first.queue_item.status.value,
        "batch": [submission.to_dict() for submission in submissions],
    }


@router.get("/generate")
def queue_snapshot(manager: QueueManager = Depends(get_queue_manager)) -> dict:
    """Return aggregate ``queued`` and ``processing`` counts."""
    return manager.get_queue_status()


@router.get("/generate/{generation_id}/status")
def generation_status(
    generation_id: str,
    manager: QueueManager = Depends(get_queue_manager),
) -> dict:
    """Return ``{status, image_path?, error?}`` for a generation.

    Raises:
        HTTPException: 404 if the generation does not exist.
    """
    return manager.get_generation_status(generation_id)


@router.post("/remix", status_code=202)
def submit_remix(
    req: RemixRequest,
    manager: QueueManager = Depends(get_queue_manager),
) -> dict:
    """Enqueue a remix of a finished generation.

    ``fork`` creates a new generation linked to the source by
    ``parent_id``.  ``replace`` writes the result back onto the source once
    the remix completes; the response then also carries ``original_id``.

    Raises:
        HTTPException: 404 for an unknown source, 400 for blank
            instructions or a source without an image.
    """
    submission = manager.submit_remix(
        req.source_id,
        req.edit_instructions,
        req.mode,
        safety_override=req.safety_override,
    )
    position = manager.get_queue_status(submission.queue_item.id)["position"]

    response = {
        "queue_id": submission.queue_item.id,
        "generation_id": submission.generation.id,
        "position": position or 1,
        "status": submission.queue_item.status.value,
        "mode": req.mode,
    }
    if req.mode == "replace":
        response["original_id"] = req.source_id
    return response


# ---------------------------------------------------------------------------
# Queue admin routes.
# ---------------------------------------------------------------------------


@router.get("/queue")
def active_queue(queue: QueueRepository = Depends(get_queue_repository)) -> dict:
    """Return active queue items (processing first) and queue metrics."""
    return {
        "items": [item.to_dict() for item in queue.list_active()],
        "metrics": asdict(queue.metrics()),
    }


@router.delete("/queue/{queue_item_id}")
def delete_queue_item(
    queue_item_id: str,
    manager: QueueManager = Depends(get_queue_manager),
) -> dict:
    """Delete a queue item that has not started processing.

    Raises:
        HTTPException: 404 for an unknown item, 400 if the item is already
            processing or finished.
    """
    result = manager.delete_queue_item(queue_item_id)
    if not result.success:
        raise HTTPException(status_code=400, detail=result.error)
    return {"success": True}


@router.get("/queue/history")
def queue_history(
    page: int = 1,
    limit: int = 20,
    status: str | None = None,
    queue: QueueRepository = Depends(get_queue_repository),
) -> dict:
    """Paginated finished queue items, most recently completed first.

    Args:
        status: ``completed`` or ``failed``; anything else returns both.
    """
    status_filter = status if status in ("completed", "failed") else "all"
    return queue.list_history(page=page, limit=limit, status_filter=status_filter).to_dict()


# ---------------------------------------------------------------------------
# Generation history routes.
# ---------------------------------------------------------------------------


@router.get("/history")
def list_history(
    page: int = 1,
    limit: int = 24,
    favorites: bool = False,
    include_hidden: bool = False,
    search: str | None = None,
    generations: GenerationRepository = Depends(get_generations),
) -> dict:
    """Paginated generations, newest first.  Hidden records are excluded
    unless ``include_hidden`` is set."""
    result = generations.list_generations(
        page,
        limit,
        favorites_only=favorites,
        include_hidden=include_hidden,
        search=search,
    )
    return result.to_dict()


@router.get("/history/{generation_id}")
def get_generation(
    generation_id: str,
    generations: GenerationRepository = Depends(get_generations),
) -> dict:
    generation = generations.get(generation_id)
    if generation is None:
        raise HTTPException(status_code=404, detail=f"Generation not found: {generation_id}")
    return generation.to_dict()


@router.delete("/history/{generation_id}")
def delete_generation(
    generation_id: str,
    generations: GenerationRepository = Depends(get_generations),
) -> dict:
    """Delete a generation and its image file.

    Raises:
        HTTPException: 404 if the generation does not exist.
    """
    if not generations.delete(generation_id):
        raise HTTPException(status_code=404, detail=f"Generation not found: {generation_id}")
    return {"success": True, "deleted": generation_id}


@router.post("/history/{generation_id}/favorite")
def toggle_favorite(
    generation_id: str,
    generations: GenerationRepository = Depends(get_generations),
) -> dict:
    is_favorite = generations.toggle_favorite(generation_id)
    return {"id": generation_id, "is_favorite": is_favorite}


@router.post("/history/{generation_id}/hidden")
def toggle_hidden(
    generation_id: str,
    generations: GenerationRepository = Depends(get_generations),
) -> dict:
    is_hidden = generations.toggle_hidden(generation_id)
    return {"id": generation_id, "is_hidden": is_hidden}


@router.get("/history/{generation_id}/lineage")
def generation_lineage(
    generation_id: str,
    generations: GenerationRepository = Depends(get_generations),
) -> dict:
    """Return the generation, its ancestors (nearest parent first) and its
    direct children.

    Raises:
        HTTPException: 404 if the generation does not exist.
    """
    generation = generations.get(generation_id)
    if generation is None:
        raise HTTPException(status_code=404, detail=f"Generation not found: {generation_id}")
    return {
        "generation": generation.to_dict(),
        "ancestors": [record.to_dict() for record in generations.get_lineage(generation_id)],
        "children": [record.to_dict() for record in generations.get_children(generation_id)],
    }


# ---------------------------------------------------------------------------
# Application factory.
# ---------------------------------------------------------------------------


def create_app(
    settings: RemixerConfig | None = None,
    provider: ImageProvider | None = None,
    *,
    start_worker: bool = True,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Configuration to use.  Defaults to the global ``config``.
        provider: Image provider for the processor.  Defaults to the local
            :class:`~remixer.core.model_manager.DiffusersProvider`.
        start_worker: Start the background queue worker on startup.  When
            ``False`` the queue is only drained by explicit
            ``app.state.processor.process_queue()`` calls.

    Returns:
        The configured application.
    """
    settings = settings or config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Wire the queue subsystem on startup and tear it down on shutdown.

        On startup:
            Opens the database, builds the repositories, storage, provider
            and processor, requeues every item left ``processing`` by a
            previous run, and starts the worker thread.

        On shutdown:
            Stops the worker (letting the current item finish) and releases
            the provider's resources.
        """
        # --- Startup -------------------------------------------------------
        db = Database(settings.database_path)
        storage = ImageStorage(settings.images_dir)
        references = ReferenceStore(settings.references_dir, settings.data_dir)
        generations = GenerationRepository(db, storage)
        queue = QueueRepository(db)

        image_provider = provider
        if image_provider is None:
            from remixer.core.model_manager import DiffusersProvider

            image_provider = DiffusersProvider(settings)

        processor = QueueProcessor(
            db,
            generations,
            queue,
            image_provider,
            storage,
            references,
            stale_processing_seconds=settings.stale_processing_seconds,
            history_retention=settings.queue_history_retention,
        )
        worker = QueueWorker(processor, settings.poll_interval_seconds)
        manager = QueueManager(
            db,
            generations,
            queue,
            notify=worker.trigger,
            max_batch_count=settings.max_batch_count,
        )

        # No worker exists yet, so every ``processing`` row is orphaned.
        recovered = processor.recover_stale(0)
        if recovered:
            logger.warning(f"Requeued {len(recovered)} item(s) left processing at shutdown")

        app.state.db = db
        app.state.storage = storage
        app.state.generations = generations
        app.state.queue_repository = queue
        app.state.processor = processor
        app.state.worker = worker
        app.state.queue_manager = manager

        if start_worker:
            worker.start()
            worker.trigger()
        logger.info(f"Remixer started with provider '{image_provider.name}'.")

        yield  # Application runs here.

        # --- Shutdown ------------------------------------------------------
        worker.stop()
        image_provider.close()
        logger.info("Remixer shut down.")

    app = FastAPI(
        title="Remixer",
        description="Image generation queue with fork/replace remixing.",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(RemixValidationError)
    async def validation_handler(request: Request, exc: RemixValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    app.include_router(router)
    app.mount("/images", StaticFiles(directory=str(settings.images_dir)), name="images")
    return app


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port and log level from :data:`~remixer.core.config.config`
    (``REMIXER_SERVER_HOST``, ``REMIXER_SERVER_PORT``, ``REMIXER_LOG_LEVEL``).
    Defaults to ``0.0.0.0:7860``.

    This function is registered as the ``remixer`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    uvicorn.run(
        "remixer.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
