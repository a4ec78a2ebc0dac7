"""Queue processor: drains queued items through the image provider.

State machine per queue item::

    queued -> processing -> completed
                         -> failed

A single drain guard (a non-blocking :class:`threading.Lock`) ensures at most
one drain loop runs per process.  Any number of callers may invoke
:meth:`QueueProcessor.process_queue`; callers that find the guard held return
immediately, and the running loop picks their work up because it re-reads the
queue on every iteration.

Database work is done in short transactions before and after the provider
call; no transaction is held while the provider runs.

Remix Handling
--------------
- **fork**: the paired generation is a new lineage child of the source and
  is completed like any other generation.
- **replace**: the new image is written onto the *source* generation; the
  paired working generation is marked completed without an image and stays
  hidden.
"""

from __future__ import annotations

import logging
import threading
import time

from remixer.core.database import Database
from remixer.core.errors import (
    GenerationNotFoundError,
    NotFoundError,
    ProviderError,
    QueueItemNotFoundError,
)
from remixer.core.generations import GenerationRepository
from remixer.core.image_storage import ImageStorage, ReferenceStore
from remixer.core.models import GenerationStatus, QueueItem
from remixer.core.prompt_compiler import compile_prompt
from remixer.core.provider import ImageProvider, ProviderRequest, ProviderResult
from remixer.core.queue_repository import QueueRepository

logger = logging.getLogger(__name__)


class QueueProcessor:
    """Single logical worker for the generation queue."""

    def __init__(
        self,
        db: Database,
        generations: GenerationRepository,
        queue: QueueRepository,
        provider: ImageProvider,
        storage: ImageStorage,
        references: ReferenceStore | None = None,
        *,
        stale_processing_seconds: float = 300.0,
        history_retention: int | None = 100,
    ):
        self._db = db
        self._generations = generations
        self._queue = queue
        self._provider = provider
        self._storage = storage
        self._references = references
        self._stale_processing_seconds = stale_processing_seconds
        self._history_retention = history_retention

        self._drain_lock = threading.Lock()
        self._current_item_id: str | None = None

    # -- Drain loop ---------------------------------------------------------

    def process_queue(self) -> int:
        """Drain the queue until no ``queued`` item remains.

        Returns immediately when another drain is already running.

        Returns:
            Number of items this call processed
        """
        if not self._drain_lock.acquire(blocking=False):
            logger.debug("Drain already in progress; skipping.")
            return 0

        processed = 0
        try:
            self.recover_stale(self._stale_processing_seconds)
            while True:
                item = self._claim_next()
                if item is None:
                    break
                self._current_item_id = item.id
                self._process_item(item)
                processed += 1
        finally:
            self._current_item_id = None
            self._drain_lock.release()

        if processed:
            logger.info(f"Drain finished after {processed} item(s)")
            if self._history_retention is not None:
                self._queue.cleanup(self._history_retention)
        return processed

    def recover_stale(self, older_than_seconds: float) -> list[QueueItem]:
        """Requeue ``processing`` items orphaned by a crash.

        Args:
            older_than_seconds: Minimum age of ``started_at``.  Pass ``0``
                at startup, when no item can legitimately be in flight.

        Returns:
            The requeued items
        """
        return self._queue.requeue_stale(older_than_seconds)

    def _claim_next(self) -> QueueItem | None:
        """Atomically select the oldest queued item and mark it processing."""
        with self._db.transaction():
            item = self._queue.next_queued()
            if item is None:
                return None
            if not self._queue.mark_processing(item.id):
                return None
            self._generations.update_status(item.generation_id, GenerationStatus.GENERATING)
        return item

    # -- Single item --------------------------------------------------------

    def _process_item(self, item: QueueItem) -> None:
        start_time = time.time()
        logger.info(f"Processing queue item {item.id} (generation {item.generation_id})")

        result: ProviderResult | None = None
        try:
            request = self._build_request(item)
            result = self._provider.generate(request)
            if not result.success:
                raise ProviderError(result.error or "Provider returned no image")
            image_path = self._storage.save(result.image_bytes, item.id)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.warning(f"Queue item {item.id} failed: {message}")
            self._record_failure(item, message, result.text_response if result else None)
            return

        try:
            self._record_success(item, image_path, result)
        except NotFoundError as e:
            self._storage.delete(image_path)
            if self._generations.get(item.generation_id) is None:
                # Deleted by the user mid-flight; the queue row went with it.
                logger.warning(f"Queue item {item.id} dropped: {e}")
                return
            # The replace target was deleted while the item was in flight.
            self._record_failure(item, str(e), result.text_response)
            return
        logger.info(f"Queue item {item.id} completed in {time.time() - start_time:.1f}s")

    def _build_request(self, item: QueueItem) -> ProviderRequest:
        options = item.options
        reference_images = []
        if self._references is not None:
            reference_images = self._references.load(
                options.reference_photo_ids,
                options.inline_reference_paths,
            )

        source_image = None
        if options.remix_source_id:
            source = self._generations.get(options.remix_source_id)
            if source is None or not source.image_path:
                raise ProviderError(f"Remix source unavailable: {options.remix_source_id}")
            source_image = self._storage.open(source.image_path)

        return ProviderRequest(
            prompt_json=item.prompt_json,
            prompt_text=compile_prompt(item.prompt_json, options.edit_instructions),
            reference_images=reference_images,
            source_image=source_image,
            edit_instructions=options.edit_instructions,
            google_search=options.google_search,
            safety_override=options.safety_override,
        )

    def _record_success(self, item: QueueItem, image_path: str, result: ProviderResult) -> None:
        """Store the result and complete the item in one transaction.

        Raises:
            NotFoundError: The paired generation, the queue row or the
                replace target disappeared while the item was in flight.
                Nothing is written in that case.
        """
        replaced_path = None
        with self._db.transaction():
            if item.options.is_replace:
                replaced_path = self._generations.apply_replacement(
                    item.options.remix_source_id,
                    image_path,
                    item.prompt_json,
                    result.text_response,
                )
                stored = self._generations.update_status(
                    item.generation_id,
                    GenerationStatus.COMPLETED,
                    api_response_text=result.text_response,
                )
            else:
                stored = self._generations.update_image(item.generation_id, image_path)
                if stored and result.text_response is not None:
                    self._generations.update_status(
                        item.generation_id,
                        GenerationStatus.COMPLETED,
                        api_response_text=result.text_response,
                    )
            if not stored:
                raise GenerationNotFoundError(item.generation_id)
            if not self._queue.mark_completed(item.id):
                raise QueueItemNotFoundError(item.id)

        if replaced_path and replaced_path != image_path:
            self._storage.delete(replaced_path)

    def _record_failure(self, item: QueueItem, error: str, text_response: str | None) -> None:
        with self._db.transaction():
            self._generations.update_status(
                item.generation_id,
                GenerationStatus.FAILED,
                error,
                api_response_text=text_response,
            )
            self._queue.mark_failed(item.id, error)

    # -- Introspection ------------------------------------------------------

    @property
    def is_draining(self) -> bool:
        return self._drain_lock.locked()

    @property
    def current_item_id(self) -> str | None:
        """ID of the queue item currently being processed, if any."""
        return self._current_item_id
