"""Core queue and generation machinery.

Architecture Overview
---------------------
1. **Configuration** (config.py): environment-based settings using Pydantic
   Settings, all prefixed with ``REMIXER_``.
2. **Persistence** (database.py, generations.py, queue_repository.py):
   SQLite tables for generation records and queue items, with
   thread-scoped transactions that compose across repositories.
3. **Queue** (queue_manager.py, processor.py, worker.py): atomic
   submission, a single guarded drain loop, and the background thread that
   triggers it.
4. **Provider** (provider.py, model_manager.py, prompt_compiler.py): the
   image provider interface and its local diffusers implementation.
5. **Files** (image_storage.py): generated image storage and reference
   image lookup.

Usage Example
-------------
::

    from remixer.core import Database, GenerationRepository, QueueManager, QueueRepository

    db = Database("data/remixer.db")
    manager = QueueManager(db, GenerationRepository(db), QueueRepository(db))
    manager.submit({"character": "a goblin tinkerer"}, count=2)
"""

from remixer.core.config import RemixerConfig, config
from remixer.core.database import Database
from remixer.core.generations import GenerationRepository
from remixer.core.models import GenerationRecord, GenerationStatus, QueueItem, QueueStatus
from remixer.core.queue_manager import QueueManager
from remixer.core.queue_repository import QueueRepository

__all__ = [
    "Database",
    "GenerationRecord",
    "GenerationRepository",
    "GenerationStatus",
    "QueueItem",
    "QueueManager",
    "QueueRepository",
    "QueueStatus",
    "RemixerConfig",
    "config",
]
