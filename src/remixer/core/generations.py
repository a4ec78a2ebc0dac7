"""Generation repository: records, result updates, flags and lineage."""

import logging
from typing import TYPE_CHECKING, Any

from remixer.core.database import Database, generate_id, utcnow
from remixer.core.errors import GenerationNotFoundError
from remixer.core.models import GenerationRecord, GenerationStatus, Page, dump_json

if TYPE_CHECKING:
    from remixer.core.image_storage import ImageStorage

logger = logging.getLogger(__name__)


class GenerationRepository:
    """CRUD and lineage operations over the ``generations`` table.

    Provenance fields (reference ids, components, inline paths) are written
    once at creation and never updated.  Status transitions to
    ``generating``/``completed``/``failed`` are issued by the processor only.
    """

    def __init__(self, db: Database, storage: "ImageStorage | None" = None):
        self._db = db
        self._storage = storage

    def create(
        self,
        prompt_json: dict[str, Any],
        reference_photo_ids: list[str] | None = None,
        components_used: list[Any] | None = None,
        inline_reference_paths: list[str] | None = None,
        *,
        parent_id: str | None = None,
        edit_instructions: str | None = None,
        is_hidden: bool = False,
    ) -> GenerationRecord:
        """Insert a new ``pending`` generation.

        Args:
            prompt_json: Composed prompt document, stored verbatim
            reference_photo_ids: Selected reference photo ids
            components_used: Components the prompt was composed from
            inline_reference_paths: Component inline reference files
            parent_id: Generation this one was forked from
            edit_instructions: Remix instructions, forked records only
            is_hidden: Create the record hidden from history listings

        Returns:
            The stored record
        """
        generation_id = generate_id()
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO generations (
                    id, prompt_json, status, reference_photo_ids, components_used,
                    inline_reference_paths, parent_id, edit_instructions, is_hidden,
                    created_at
                )
                VALUES (?, ?, 'pending', ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    generation_id,
                    dump_json(prompt_json),
                    dump_json(reference_photo_ids),
                    dump_json(components_used),
                    dump_json(inline_reference_paths),
                    parent_id,
                    edit_instructions,
                    int(is_hidden),
                    utcnow(),
                ),
            )
            return self._get(conn, generation_id)

    def get(self, generation_id: str) -> GenerationRecord | None:
        with self._db.transaction() as conn:
            return self._get(conn, generation_id)

    @staticmethod
    def _get(conn, generation_id: str) -> GenerationRecord | None:
        row = conn.execute("SELECT * FROM generations WHERE id = ?", (generation_id,)).fetchone()
        return GenerationRecord.from_row(row) if row else None

    def update_status(
        self,
        generation_id: str,
        status: GenerationStatus,
        error: str | None = None,
        *,
        api_response_text: str | None = None,
    ) -> bool:
        """Move a generation to ``status``.

        ``error`` is only stored for ``failed``; entering ``completed`` or
        ``failed`` stamps ``completed_at``.

        Returns:
            True if a row was updated
        """
        updates = ["status = ?"]
        values: list[Any] = [status.value]

        if status == GenerationStatus.FAILED:
            updates.append("error_message = ?")
            values.append(error)
        if api_response_text is not None:
            updates.append("api_response_text = ?")
            values.append(api_response_text)
        if status in (GenerationStatus.COMPLETED, GenerationStatus.FAILED):
            updates.append("completed_at = ?")
            values.append(utcnow())

        values.append(generation_id)
        with self._db.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE generations SET {', '.join(updates)} WHERE id = ?",
                values,
            )
            return cursor.rowcount > 0

    def update_image(self, generation_id: str, image_path: str) -> bool:
        """Attach a finished image and mark the generation ``completed``."""
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE generations
                SET image_path = ?, status = 'completed', error_message = NULL,
                    completed_at = ?
                WHERE id = ?
                """,
                (image_path, utcnow(), generation_id),
            )
            return cursor.rowcount > 0

    def apply_replacement(
        self,
        generation_id: str,
        image_path: str,
        prompt_json: dict[str, Any],
        api_response_text: str | None = None,
    ) -> str | None:
        """Overwrite a generation's result in place for a replace remix.

        Returns:
            The image path that was replaced, or None if the source had none

        Raises:
            GenerationNotFoundError: The source generation no longer exists
        """
        with self._db.transaction() as conn:
            current = self._get(conn, generation_id)
            if current is None:
                raise GenerationNotFoundError(generation_id)
            conn.execute(
                """
                UPDATE generations
                SET image_path = ?, prompt_json = ?, api_response_text = ?,
                    status = 'completed', error_message = NULL, completed_at = ?
                WHERE id = ?
                """,
                (image_path, dump_json(prompt_json), api_response_text, utcnow(), generation_id),
            )
            return current.image_path

    def toggle_favorite(self, generation_id: str) -> bool:
        """Flip the favorite flag.

        Returns:
            True if now favorited, False if unfavorited
        """
        return self._toggle(generation_id, "is_favorite")

    def toggle_hidden(self, generation_id: str) -> bool:
        """Flip the hidden flag.

        Returns:
            True if now hidden, False if visible
        """
        return self._toggle(generation_id, "is_hidden")

    def _toggle(self, generation_id: str, column: str) -> bool:
        with self._db.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE generations SET {column} = 1 - {column} WHERE id = ?",
                (generation_id,),
            )
            if cursor.rowcount == 0:
                raise GenerationNotFoundError(generation_id)
            row = conn.execute(
                f"SELECT {column} FROM generations WHERE id = ?", (generation_id,)
            ).fetchone()
        value = bool(row[0])
        logger.info(f"Set {column}={value} on generation {generation_id}")
        return value

    def get_lineage(self, generation_id: str) -> list[GenerationRecord]:
        """Walk ``parent_id`` links from a generation up to its root.

        Returns:
            Ancestors ordered nearest parent first; empty for a root
        """
        ancestors: list[GenerationRecord] = []
        seen = {generation_id}
        with self._db.transaction() as conn:
            current = self._get(conn, generation_id)
            while current is not None and current.parent_id:
                if current.parent_id in seen:
                    logger.warning(f"Lineage cycle detected at generation {current.parent_id}")
                    break
                seen.add(current.parent_id)
                current = self._get(conn, current.parent_id)
                if current is not None:
                    ancestors.append(current)
        return ancestors

    def get_children(self, generation_id: str) -> list[GenerationRecord]:
        with self._db.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM generations WHERE parent_id = ? ORDER BY created_at ASC, rowid ASC",
                (generation_id,),
            ).fetchall()
        return [GenerationRecord.from_row(row) for row in rows]

    def list_generations(
        self,
        page: int = 1,
        limit: int = 20,
        *,
        favorites_only: bool = False,
        include_hidden: bool = False,
        search: str | None = None,
    ) -> Page:
        """Paginated history listing, newest first."""
        page = max(page, 1)
        limit = max(limit, 1)
        clauses = ["1=1"]
        params: list[Any] = []

        if favorites_only:
            clauses.append("is_favorite = 1")
        if not include_hidden:
            clauses.append("is_hidden = 0")
        if search:
            clauses.append("prompt_json LIKE ?")
            params.append(f"%{search}%")

        where = " AND ".join(clauses)
        with self._db.transaction() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM generations WHERE {where}", params
            ).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT * FROM generations WHERE {where}
                ORDER BY created_at DESC, rowid DESC
                LIMIT ? OFFSET ?
                """,
                [*params, limit, (page - 1) * limit],
            ).fetchall()

        return Page(
            items=[GenerationRecord.from_row(row) for row in rows],
            total=total,
            page=page,
            limit=limit,
        )

    def delete(self, generation_id: str) -> bool:
        """Delete a generation and its image file.

        Returns:
            True if deleted, False if no such generation
        """
        with self._db.transaction() as conn:
            record = self._get(conn, generation_id)
            if record is None:
                return False
            conn.execute("DELETE FROM generations WHERE id = ?", (generation_id,))

        if record.image_path and self._storage is not None:
            self._storage.delete(record.image_path)
        logger.info(f"Deleted generation {generation_id}")
        return True
