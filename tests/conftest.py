"""
Shared fixtures for the block store test suite.
"""

import os
import tempfile

import pytest

from indexer.blockstore.config import SqliteConfig, StoreConfig
from indexer.blockstore.schema import EntityRegistry

from .helpers import Account, Document, Marker, Thing, Transfer, create_tables


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def db_path(data_dir):
    """SQLite file with the test entity tables."""
    path = os.path.join(data_dir, "blocks.db")
    create_tables(path)
    return path


@pytest.fixture
def config(db_path):
    """Store configuration pointing at the temporary database."""
    return StoreConfig(sqlite=SqliteConfig(path=db_path))


@pytest.fixture
def registry():
    """Registry with the test entities, parents first."""
    reg = EntityRegistry()
    reg.register(Account)
    reg.register(Transfer)
    reg.register(Thing)
    reg.register(Document)
    reg.register(Marker)
    return reg
