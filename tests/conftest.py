from __future__ import annotations

import logging
from typing import Iterator

import pytest

from repoaudit.stores.archive_cache import RepoArchiveCache
from repoaudit.stores.archive_store import ArchiveStore
from tests._fixtures.builders import FakeHost


@pytest.fixture(autouse=True)
def _reset_repoaudit_logger() -> Iterator[None]:
    """Undo CLI logging setup so caplog sees records from every test."""
    logger = logging.getLogger("repoaudit")
    yield
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def archive_store() -> Iterator[ArchiveStore]:
    """In-memory SQLite archive store closed after the test."""
    store = ArchiveStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def archive_cache(archive_store: ArchiveStore) -> Iterator[RepoArchiveCache]:
    cache = RepoArchiveCache(archive_store)
    yield cache
    cache.close()


@pytest.fixture
def fake_host() -> FakeHost:
    return FakeHost(
        {
            "src/app.py": "print('hello')\n",
            "src/util.py": "def helper():\n    return 1\n",
            "README.md": "# widgets\n",
        }
    )
