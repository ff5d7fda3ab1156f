"""Shared fixtures for the update ingestion tests."""
from datetime import datetime, timezone

import pytest

from config import Settings
from extraction_pipeline import UpdateExtractor
from ingestion_orchestrator import InMemoryRepository, UpdateOrchestrator


@pytest.fixture
def settings():
    return Settings(_env_file=None, log_format="text")


@pytest.fixture
def extractor(settings):
    return UpdateExtractor(settings)


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def orchestrator(repo, settings):
    return UpdateOrchestrator(repo, settings)


@pytest.fixture
def now():
    return datetime(2025, 11, 16, 9, 30, tzinfo=timezone.utc)
