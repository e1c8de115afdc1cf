from __future__ import annotations

import os

import pytest

from generation_api.storage.postgres import PostgresGenerationStore


@pytest.fixture
def postgres_store() -> PostgresGenerationStore:
    if os.getenv("RUN_POSTGRES_INTEGRATION_TESTS") != "1":
        pytest.skip(
            "Set RUN_POSTGRES_INTEGRATION_TESTS=1 and GENERATION_DATABASE_URL "
            "to run integration tests against PostgreSQL."
        )
    database_url = os.getenv("GENERATION_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not database_url:
        pytest.skip("GENERATION_DATABASE_URL is required for integration tests.")
    store = PostgresGenerationStore(database_url)
    store.migrate()
    return store
