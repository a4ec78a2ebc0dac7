"""Queue manager: submission, status queries and queue-item deletion.

The manager owns the atomic "create generation + create queue item"
transaction.  Submissions never talk to the provider; after a submission
commits, the manager fires the ``notify`` callback (normally
:meth:`QueueWorker.trigger`) so that a drain notices the new work.

Usage
-----
::

    manager = QueueManager(db, generations, queue, notify=worker.trigger)
    pairs = manager.submit({"character": "a goblin"}, count=3)
    status = manager.get_queue_status(pairs[0].queue_item.id)
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from remixer.core.database import Database
from remixer.core.errors import (
    GenerationNotFoundError,
    QueueItemNotFoundError,
    RemixValidationError,
)
from remixer.core.generations import GenerationRepository
from remixer.core.models import (
    DeleteResult,
    GenerationRecord,
    GenerationStatus,
    QueueItem,
    QueueOptions,
    QueueStatus,
    RemixMode,
)
from remixer.core.queue_repository import QueueRepository

logger = logging.getLogger(__name__)

MIN_BATCH_COUNT = 1
DEFAULT_MAX_BATCH_COUNT = 4


@dataclass
class Submission:
    """A generation/queue-item pair created by one submission."""

    generation: GenerationRecord
    queue_item: QueueItem

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue_id": self.queue_item.id,
            "generation_id": self.generation.id,
            "status": self.queue_item.status.value,
        }


def clamp_count(count: int | None, max_count: int = DEFAULT_MAX_BATCH_COUNT) -> int:
    """Clamp a requested batch size into ``[1, max_count]``."""
    if count is None:
        return MIN_BATCH_COUNT
    return min(max(MIN_BATCH_COUNT, int(count)), max_count)


class QueueManager:
    """Public enqueue/query/delete API over the two repositories."""

    def __init__(
        self,
        db: Database,
        generations: GenerationRepository,
        queue: QueueRepository,
        *,
        notify: Callable[[], None] | None = None,
        max_batch_count: int = DEFAULT_MAX_BATCH_COUNT,
    ):
        self._db = db
        self._generations = generations
        self._queue = queue
        self._notify = notify
        self.max_batch_count = max_batch_count

    # -- Enqueue ------------------------------------------------------------

    def enqueue(
        self,
        prompt_json: dict[str, Any],
        generation_id: str,
        options: QueueOptions | None = None,
    ) -> QueueItem:
        """Queue work for a generation created in the same transaction.

        Must be called inside :meth:`Database.transaction` together with the
        generation insert, so that a failed queue insert leaves no orphaned
        generation row behind.

        Args:
            prompt_json: Prompt snapshot to process
            generation_id: Generation the item will populate
            options: Submission option snapshot

        Returns:
            The new ``queued`` item with its 1-based ``position``

        Raises:
            RuntimeError: If called outside a transaction
        """
        if not self._db.in_transaction:
            raise RuntimeError("enqueue() must run inside Database.transaction()")
        item = self._queue.insert(prompt_json, generation_id, options)
        logger.info(f"Enqueued {item.id} for generation {generation_id} (position {item.position})")
        return item

    def submit(
        self,
        prompt_json: dict[str, Any],
        *,
        count: int = 1,
        reference_photo_ids: list[str] | None = None,
        inline_reference_paths: list[str] | None = None,
        components_used: list[Any] | None = None,
        google_search: bool = False,
        safety_override: bool = False,
    ) -> list[Submission]:
        """Create ``count`` independent generation/queue pairs atomically.

        ``count`` is clamped to ``[1, max_batch_count]``.  Either every pair
        is persisted or none is.

        Raises:
            RemixValidationError: If ``prompt_json`` is not a mapping
        """
        if not isinstance(prompt_json, dict):
            raise RemixValidationError("prompt_json is required")

        count = clamp_count(count, self.max_batch_count)
        options = QueueOptions(
            reference_photo_ids=reference_photo_ids,
            inline_reference_paths=inline_reference_paths,
            google_search=google_search,
            safety_override=safety_override,
        )

        submissions: list[Submission] = []
        with self._db.transaction():
            for _ in range(count):
                generation = self._generations.create(
                    prompt_json,
                    reference_photo_ids,
                    components_used,
                    inline_reference_paths,
                )
                item = self.enqueue(prompt_json, generation.id, options)
                submissions.append(Submission(generation, item))

        logger.info(f"Submitted batch of {count} generation(s)")
        self._trigger()
        return submissions

    def submit_remix(
        self,
        source_id: str,
        edit_instructions: str,
        mode: RemixMode | str = RemixMode.FORK,
        *,
        safety_override: bool = False,
    ) -> Submission:
        """Queue a remix of a finished generation.

        ``fork`` creates a new generation whose ``parent_id`` is the source.
        ``replace`` creates a hidden, parentless working record; when it
        completes, the processor writes the new image onto the source.

        Raises:
            RemixValidationError: Empty instructions, unknown mode, or a
                source without an image
            GenerationNotFoundError: Unknown ``source_id``
        """
        instructions = (edit_instructions or "").strip()
        if not instructions:
            raise RemixValidationError("edit_instructions is required")
        try:
            mode = RemixMode(mode)
        except ValueError:
            raise RemixValidationError("mode must be 'fork' or 'replace'") from None

        source = self._generations.get(source_id)
        if source is None:
            raise GenerationNotFoundError(source_id)
        if not source.image_path:
            raise RemixValidationError("Source generation has no image")

        options = QueueOptions(
            reference_photo_ids=source.reference_photo_ids,
            inline_reference_paths=source.inline_reference_paths,
            safety_override=safety_override,
            remix_source_id=source.id,
            remix_mode=mode,
            edit_instructions=instructions,
        )
        is_fork = mode == RemixMode.FORK

        with self._db.transaction():
            generation = self._generations.create(
                source.prompt_json,
                source.reference_photo_ids,
                source.components_used,
                source.inline_reference_paths,
                parent_id=source.id if is_fork else None,
                edit_instructions=instructions,
                is_hidden=not is_fork,
            )
            item = self.enqueue(source.prompt_json, generation.id, options)

        logger.info(f"Submitted {mode.value} remix of {source.id} as generation {generation.id}")
        self._trigger()
        return Submission(generation, item)

    def _trigger(self) -> None:
        if self._notify is not None:
            self._notify()

    # -- Queries ------------------------------------------------------------

    def get_queue_status(self, queue_item_id: str | None = None) -> dict[str, Any]:
        """Queue snapshot, optionally for a single item.

        Without an id: aggregate ``queued`` and ``processing`` counts.  With
        an id: the item's ``status`` and 1-based ``position`` (``0`` once it
        is processing or finished) alongside the counts.

        Raises:
            QueueItemNotFoundError: Unknown ``queue_item_id``
        """
        counts = self._queue.count_by_status()
        snapshot: dict[str, Any] = {
            "queued": counts[QueueStatus.QUEUED.value],
            "processing": counts[QueueStatus.PROCESSING.value],
        }
        if queue_item_id is None:
            return snapshot

        item = self._queue.get(queue_item_id)
        if item is None:
            raise QueueItemNotFoundError(queue_item_id)
        snapshot.update(
            {
                "queue_id": item.id,
                "generation_id": item.generation_id,
                "status": item.status.value,
                "position": item.position or 0,
                "error": item.error,
            }
        )
        return snapshot

    def get_generation_status(self, generation_id: str) -> dict[str, Any]:
        """Client polling view of a generation.

        Raises:
            GenerationNotFoundError: Unknown ``generation_id``
        """
        generation = self._generations.get(generation_id)
        if generation is None:
            raise GenerationNotFoundError(generation_id)

        response: dict[str, Any] = {"status": generation.status.value}
        if generation.image_path and generation.status == GenerationStatus.COMPLETED:
            response["image_path"] = generation.image_path
        if generation.error_message and generation.status == GenerationStatus.FAILED:
            response["error"] = generation.error_message
        return response

    # -- Deletion -----------------------------------------------------------

    def delete_queue_item(self, queue_item_id: str) -> DeleteResult:
        """Remove an item that has not started processing.

        The paired generation is left ``pending`` for the caller to clean up
        or resubmit.

        Raises:
            QueueItemNotFoundError: Unknown ``queue_item_id``
        """
        with self._db.transaction():
            if self._queue.delete_queued(queue_item_id):
                logger.info(f"Deleted queued item {queue_item_id}")
                return DeleteResult(success=True)
            item = self._queue.get(queue_item_id)

        if item is None:
            raise QueueItemNotFoundError(queue_item_id)
        return DeleteResult(
            success=False,
            error=f"Cannot delete queue item in '{item.status.value}' state",
        )
