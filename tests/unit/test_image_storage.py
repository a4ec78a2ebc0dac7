"""Tests for remixer.core.image_storage — image files and reference lookup."""

from __future__ import annotations

import pytest
from PIL import Image

from remixer.core.errors import InvalidImageError, ProviderError
from remixer.core.image_storage import ImageStorage, ReferenceStore


class TestImageStorage:
    def test_save_png(self, storage: ImageStorage, make_png):
        path = storage.save(make_png(), "queue-1")

        assert path == "/images/queue-1.png"
        assert (storage.images_dir / "queue-1.png").exists()

    def test_extension_follows_format(self, storage: ImageStorage, make_png):
        assert storage.save(make_png(image_format="JPEG"), "q").endswith(".jpg")
        assert storage.save(make_png(image_format="WEBP"), "w").endswith(".webp")

    def test_same_name_overwrites(self, storage: ImageStorage, make_png):
        """Re-processing a queue item replaces its file instead of duplicating it."""
        storage.save(make_png((255, 0, 0)), "queue-1")
        storage.save(make_png((0, 255, 0)), "queue-1")

        assert len(list(storage.images_dir.iterdir())) == 1
        assert storage.open("/images/queue-1.png").getpixel((0, 0)) == (0, 255, 0)

    def test_empty_bytes_rejected(self, storage: ImageStorage):
        with pytest.raises(InvalidImageError, match="empty"):
            storage.save(b"", "queue-1")

    def test_garbage_rejected(self, storage: ImageStorage):
        with pytest.raises(InvalidImageError):
            storage.save(b"definitely not an image", "queue-1")
        assert list(storage.images_dir.iterdir()) == []

    def test_invalid_image_is_a_provider_error(self):
        assert issubclass(InvalidImageError, ProviderError)

    def test_open_returns_loaded_copy(self, storage: ImageStorage, make_png):
        path = storage.save(make_png(), "queue-1")
        image = storage.open(path)
        assert isinstance(image, Image.Image)
        assert image.size == (8, 8)

    def test_resolve_ignores_directories_in_path(self, storage: ImageStorage):
        assert storage.resolve("/images/../../etc/passwd") == storage.images_dir / "passwd"

    def test_delete(self, storage: ImageStorage, make_png):
        path = storage.save(make_png(), "queue-1")
        assert storage.delete(path) is True
        assert storage.delete(path) is False


class TestReferenceStore:
    def test_resolves_reference_ids(self, references: ReferenceStore, make_png):
        (references.references_dir / "ref-1.jpg").write_bytes(make_png(image_format="JPEG"))

        paths = references.resolve_reference_ids(["ref-1", "ref-2"])

        assert paths == [references.references_dir / "ref-1.jpg"]

    def test_resolves_inline_paths(self, references: ReferenceStore, make_png):
        target = references.data_dir / "inline" / "c1.png"
        target.parent.mkdir(parents=True)
        target.write_bytes(make_png())

        assert references.resolve_inline_paths(["/inline/c1.png", "inline/c1.png"]) == [
            target.resolve(),
            target.resolve(),
        ]

    def test_load_skips_missing_and_unreadable(self, references: ReferenceStore, make_png):
        (references.references_dir / "good.png").write_bytes(make_png())
        (references.references_dir / "bad.png").write_bytes(b"corrupt")

        images = references.load(["good", "bad", "gone"], None)

        assert len(images) == 1

    def test_load_nothing(self, references: ReferenceStore):
        assert references.load(None, None) == []

    @pytest.mark.parametrize(
        "inline_path", ["../outside.png", "/../outside.png", "inline/../../outside.png"]
    )
    def test_inline_paths_outside_data_dir_rejected(
        self, references: ReferenceStore, make_png, inline_path
    ):
        (references.data_dir.parent / "outside.png").write_bytes(make_png())

        assert references.resolve_inline_paths([inline_path]) == []
        assert references.load(None, [inline_path]) == []

    def test_inline_directory_is_not_a_reference(self, references: ReferenceStore):
        (references.data_dir / "inline").mkdir()
        assert references.resolve_inline_paths(["inline"]) == []

    @pytest.mark.parametrize("reference_id", ["*", "ref-?", "../secret", "[r]ef-1", ""])
    def test_reference_ids_must_be_plain_names(
        self, references: ReferenceStore, make_png, reference_id
    ):
        (references.references_dir / "ref-1.png").write_bytes(make_png())
        (references.data_dir / "secret.png").write_bytes(make_png())

        assert references.resolve_reference_ids([reference_id]) == []
