"""Queue repository: queue item persistence, transitions and queries.

Ordering is FIFO by ``created_at`` with ties broken by the ``seq`` insertion
counter.  Status transitions are conditional updates (``WHERE status = ...``)
so a terminal item can never be moved again and two drainers can never both
claim the same item.
"""

import logging
from typing import Any, Literal

from remixer.core.database import Database, generate_id, utc_ago, utcnow
from remixer.core.models import (
    Page,
    QueueItem,
    QueueMetrics,
    QueueOptions,
    QueueStatus,
    dump_json,
)

logger = logging.getLogger(__name__)

HistoryFilter = Literal["completed", "failed", "all"]

# Items that are ahead of row ``q`` in the queue.
_AHEAD_OF = """
    status IN ('queued', 'processing')
    AND (created_at < q.created_at OR (created_at = q.created_at AND seq < q.seq))
"""


class QueueRepository:
    """CRUD and query operations over the ``generation_queue`` table."""

    def __init__(self, db: Database):
        self._db = db

    # -- Writes -------------------------------------------------------------

    def insert(
        self,
        prompt_json: dict[str, Any],
        generation_id: str,
        options: QueueOptions | None = None,
    ) -> QueueItem:
        """Insert a new ``queued`` item bound to ``generation_id``."""
        options = options or QueueOptions()
        item_id = generate_id()
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO generation_queue (
                    id, generation_id, prompt_json, status, reference_photo_ids,
                    inline_reference_paths, google_search, safety_override,
                    remix_source_id, remix_mode, edit_instructions, created_at
                )
                VALUES (?, ?, ?, 'queued', ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item_id,
                    generation_id,
                    dump_json(prompt_json),
                    dump_json(options.reference_photo_ids),
                    dump_json(options.inline_reference_paths),
                    int(options.google_search),
                    int(options.safety_override),
                    options.remix_source_id,
                    options.remix_mode.value if options.remix_mode else None,
                    options.edit_instructions,
                    utcnow(),
                ),
            )
            return self._get(conn, item_id)

    def mark_processing(self, item_id: str) -> bool:
        """Claim a ``queued`` item for processing and stamp ``started_at``.

        Returns:
            True if this call performed the transition
        """
        return self._transition(
            item_id,
            QueueStatus.QUEUED,
            QueueStatus.PROCESSING,
            "started_at = ?",
            (utcnow(),),
        )

    def mark_completed(self, item_id: str) -> bool:
        return self._transition(
            item_id,
            QueueStatus.PROCESSING,
            QueueStatus.COMPLETED,
            "completed_at = ?",
            (utcnow(),),
        )

    def mark_failed(self, item_id: str, error: str) -> bool:
        return self._transition(
            item_id,
            QueueStatus.PROCESSING,
            QueueStatus.FAILED,
            "completed_at = ?, error = ?",
            (utcnow(), error),
        )

    def _transition(
        self,
        item_id: str,
        expected: QueueStatus,
        target: QueueStatus,
        extra_sql: str,
        extra_values: tuple,
    ) -> bool:
        with self._db.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE generation_queue
                SET status = ?, {extra_sql}
                WHERE id = ? AND status = ?
                """,
                (target.value, *extra_values, item_id, expected.value),
            )
            changed = cursor.rowcount > 0
        if changed:
            logger.info(f"Queue item {item_id}: {expected.value} -> {target.value}")
        else:
            logger.warning(
                f"Queue item {item_id}: refused {target.value}, expected {expected.value}"
            )
        return changed

    def delete_queued(self, item_id: str) -> bool:
        """Delete an item only while it is still ``queued``."""
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM generation_queue WHERE id = ? AND status = 'queued'",
                (item_id,),
            )
            return cursor.rowcount > 0

    def requeue_stale(self, older_than_seconds: float) -> list[QueueItem]:
        """Return orphaned ``processing`` items to ``queued``.

        An item counts as orphaned when its ``started_at`` is at or before the
        cutoff.  The paired generation goes back to ``pending`` if it was left
        in ``generating``.

        Returns:
            The items that were requeued
        """
        cutoff = utc_ago(older_than_seconds)
        with self._db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM generation_queue
                WHERE status = 'processing' AND (started_at IS NULL OR started_at <= ?)
                """,
                (cutoff,),
            ).fetchall()
            items = [QueueItem.from_row(row) for row in rows]
            for item in items:
                conn.execute(
                    """
                    UPDATE generation_queue SET status = 'queued', started_at = NULL
                    WHERE id = ? AND status = 'processing'
                    """,
                    (item.id,),
                )
                conn.execute(
                    """
                    UPDATE generations SET status = 'pending'
                    WHERE id = ? AND status = 'generating'
                    """,
                    (item.generation_id,),
                )
        for item in items:
            logger.warning(f"Requeued orphaned queue item {item.id} (started {item.started_at})")
        return items

    def cleanup(self, keep: int) -> int:
        """Prune finished items beyond the ``keep`` most recent.

        Returns:
            Number of rows deleted
        """
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """
                DELETE FROM generation_queue
                WHERE status IN ('completed', 'failed')
                AND id NOT IN (
                    SELECT id FROM generation_queue
                    WHERE status IN ('completed', 'failed')
                    ORDER BY completed_at DESC, seq DESC
                    LIMIT ?
                )
                """,
                (keep,),
            )
            deleted = cursor.rowcount
        if deleted:
            logger.info(f"Pruned {deleted} finished queue items")
        return deleted

    # -- Reads --------------------------------------------------------------

    def get(self, item_id: str) -> QueueItem | None:
        with self._db.transaction() as conn:
            return self._get(conn, item_id)

    @staticmethod
    def _get(conn, item_id: str) -> QueueItem | None:
        row = conn.execute(
            f"""
            SELECT q.*,
                CASE WHEN q.status = 'queued'
                    THEN (SELECT COUNT(*) FROM generation_queue WHERE {_AHEAD_OF}) + 1
                    ELSE NULL END AS position
            FROM generation_queue q
            WHERE q.id = ?
            """,
            (item_id,),
        ).fetchone()
        return QueueItem.from_row(row) if row else None

    def next_queued(self) -> QueueItem | None:
        """Oldest ``queued`` item, FIFO by ``created_at`` then ``seq``."""
        with self._db.transaction() as conn:
            row = conn.execute("""
                SELECT * FROM generation_queue
                WHERE status = 'queued'
                ORDER BY created_at ASC, seq ASC
                LIMIT 1
                """).fetchone()
        return QueueItem.from_row(row) if row else None

    def position_of(self, item_id: str) -> int:
        """1-based position of a queued item.

        Counts every ``queued`` or ``processing`` item ahead of it, plus one.
        Returns 0 once the item is processing, finished, or unknown.
        """
        item = self.get(item_id)
        if item is None or item.position is None:
            return 0
        return item.position

    def count_by_status(self) -> dict[str, int]:
        with self._db.transaction() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) FROM generation_queue GROUP BY status"
            ).fetchall()
        counts = {status.value: 0 for status in QueueStatus}
        counts.update({row[0]: row[1] for row in rows})
        return counts

    def list_active(self) -> list[QueueItem]:
        """``processing`` items first, then ``queued`` items in FIFO order."""
        with self._db.transaction() as conn:
            rows = conn.execute(f"""
                SELECT q.*,
                    CASE WHEN q.status = 'queued'
                        THEN (SELECT COUNT(*) FROM generation_queue WHERE {_AHEAD_OF}) + 1
                        ELSE NULL END AS position
                FROM generation_queue q
                WHERE q.status IN ('queued', 'processing')
                ORDER BY CASE q.status WHEN 'processing' THEN 0 ELSE 1 END,
                    q.created_at, q.seq
                """).fetchall()
        return [QueueItem.from_row(row) for row in rows]

    def list_history(
        self,
        page: int = 1,
        limit: int = 20,
        status_filter: HistoryFilter = "all",
    ) -> Page:
        """Finished items, most recently completed first.

        Each entry carries the paired generation's ``image_path`` and the
        total ``duration_seconds`` from enqueue to completion.
        """
        page = max(page, 1)
        limit = max(limit, 1)
        if status_filter == "completed":
            where = "q.status = 'completed'"
        elif status_filter == "failed":
            where = "q.status = 'failed'"
        else:
            where = "q.status IN ('completed', 'failed')"

        with self._db.transaction() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM generation_queue q WHERE {where}"
            ).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT q.*, g.image_path,
                    CASE WHEN q.completed_at IS NOT NULL
                        THEN (julianday(q.completed_at) - julianday(q.created_at)) * 86400
                        ELSE NULL END AS duration_seconds
                FROM generation_queue q
                LEFT JOIN generations g ON q.generation_id = g.id
                WHERE {where}
                ORDER BY q.completed_at DESC, q.seq DESC
                LIMIT ? OFFSET ?
                """,
                (limit, (page - 1) * limit),
            ).fetchall()

        items = []
        for row in rows:
            entry = QueueItem.from_row(row).to_dict()
            entry["image_path"] = row["image_path"]
            entry["duration_seconds"] = row["duration_seconds"]
            items.append(entry)
        return Page(items=items, total=total, page=page, limit=limit)

    def metrics(self) -> QueueMetrics:
        """Dashboard counters; rates cover the last hour."""
        hour_ago = utc_ago(3600)
        counts = self.count_by_status()
        with self._db.transaction() as conn:
            avg_wait = conn.execute(
                """
                SELECT AVG((julianday(started_at) - julianday(created_at)) * 86400)
                FROM generation_queue
                WHERE started_at IS NOT NULL AND created_at >= ?
                """,
                (hour_ago,),
            ).fetchone()[0]
            finished = conn.execute(
                """
                SELECT
                    COALESCE(SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END), 0)
                FROM generation_queue
                WHERE status IN ('completed', 'failed') AND completed_at >= ?
                """,
                (hour_ago,),
            ).fetchone()

        completed_1h, failed_1h = finished[0], finished[1]
        total_1h = completed_1h + failed_1h
        return QueueMetrics(
            queued_count=counts[QueueStatus.QUEUED.value],
            processing_count=counts[QueueStatus.PROCESSING.value],
            avg_wait_time_seconds=avg_wait,
            completed_1h=completed_1h,
            failed_1h=failed_1h,
            success_rate_1h=(completed_1h / total_1h) * 100 if total_1h else None,
        )
