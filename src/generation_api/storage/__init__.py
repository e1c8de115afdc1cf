"""Storage backends."""

from generation_api.storage.base import GenerationStore
from generation_api.storage.memory import InMemoryGenerationStore
from generation_api.storage.postgres import PostgresGenerationStore

__all__ = [
    "GenerationStore",
    "InMemoryGenerationStore",
    "PostgresGenerationStore",
]
