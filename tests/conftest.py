"""Shared pytest fixtures for Remixer tests."""

import io
import shutil
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from remixer.core.config import RemixerConfig
from remixer.core.database import Database
from remixer.core.generations import GenerationRepository
from remixer.core.image_storage import ImageStorage, ReferenceStore
from remixer.core.processor import QueueProcessor
from remixer.core.provider import ImageProvider, ProviderRequest, ProviderResult
from remixer.core.queue_manager import QueueManager
from remixer.core.queue_repository import QueueRepository


def _encode(color: tuple[int, int, int], image_format: str = "PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), color=color).save(buffer, format=image_format)
    return buffer.getvalue()


class FakeProvider(ImageProvider):
    """In-memory provider that records requests and replays canned outcomes.

    Each call pops the next entry from ``responses``: a ``ProviderResult`` is
    returned as-is, an exception is raised, and ``None`` (or an empty list)
    produces a small successful PNG.
    """

    name = "fake"

    def __init__(self):
        self.requests: list[ProviderRequest] = []
        self.responses: list[ProviderResult | Exception | None] = []
        self.closed = False

    def generate(self, request: ProviderRequest) -> ProviderResult:
        self.requests.append(request)
        response = self.responses.pop(0) if self.responses else None
        if isinstance(response, Exception):
            raise response
        if response is None:
            return ProviderResult(
                success=True,
                image_bytes=_encode((0, 128, 255)),
                text_response="fake response",
            )
        return response

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> RemixerConfig:
    """Create a test configuration with temporary directories.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        RemixerConfig instance for testing
    """
    data_dir = temp_dir / "data"
    return RemixerConfig(
        data_dir=data_dir,
        images_dir=data_dir / "images",
        references_dir=data_dir / "references",
        database_path=data_dir / "test.db",
        models_dir=temp_dir / "models",
        model_id="stabilityai/sdxl-turbo",  # Won't actually load in tests
        device="cpu",
        torch_dtype="float32",
        default_width=512,
        default_height=512,
        poll_interval_seconds=0.05,
    )


@pytest.fixture
def make_png() -> Callable[..., bytes]:
    """Factory for small encoded test images.

    Returns:
        ``make_png(color=(r, g, b), image_format="PNG") -> bytes``
    """

    def factory(color: tuple[int, int, int] = (255, 0, 0), image_format: str = "PNG") -> bytes:
        return _encode(color, image_format)

    return factory


@pytest.fixture
def database(test_config: RemixerConfig) -> Database:
    return Database(test_config.database_path)


@pytest.fixture
def storage(test_config: RemixerConfig) -> ImageStorage:
    return ImageStorage(test_config.images_dir)


@pytest.fixture
def references(test_config: RemixerConfig) -> ReferenceStore:
    return ReferenceStore(test_config.references_dir, test_config.data_dir)


@pytest.fixture
def generations(database: Database, storage: ImageStorage) -> GenerationRepository:
    return GenerationRepository(database, storage)


@pytest.fixture
def queue_repo(database: Database) -> QueueRepository:
    return QueueRepository(database)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def manager(
    database: Database,
    generations: GenerationRepository,
    queue_repo: QueueRepository,
) -> QueueManager:
    return QueueManager(database, generations, queue_repo)


@pytest.fixture
def processor(
    database: Database,
    generations: GenerationRepository,
    queue_repo: QueueRepository,
    fake_provider: FakeProvider,
    storage: ImageStorage,
    references: ReferenceStore,
) -> QueueProcessor:
    return QueueProcessor(
        database,
        generations,
        queue_repo,
        fake_provider,
        storage,
        references,
    )


@pytest.fixture
def completed_generation(generations: GenerationRepository, storage: ImageStorage, make_png):
    """A finished generation with an image on disk, ready to be remixed."""
    record = generations.create(
        {"character": "a goblin tinkerer", "pose": "crouching"},
        reference_photo_ids=["ref-1"],
        components_used=[{"id": "c1", "category": "character"}],
    )
    image_path = storage.save(make_png((10, 200, 10)), f"seed-{record.id}")
    generations.update_image(record.id, image_path)
    return generations.get(record.id)


@pytest.fixture
def test_client(test_config: RemixerConfig, fake_provider: FakeProvider) -> Generator:
    """TestClient for an app wired to the fake provider.

    The background worker is not started; tests drain the queue explicitly
    with ``test_client.app.state.processor.process_queue()``.
    """
    from remixer.api.main import create_app

    app = create_app(test_config, fake_provider, start_worker=False)
    with TestClient(app) as client:
        yield client
