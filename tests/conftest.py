import sys
from pathlib import Path

import pytest


# Ensure tests can import the project modules regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from db_manager import SongsDatabase  # noqa: E402


@pytest.fixture
def db(tmp_path):
    database = SongsDatabase(str(tmp_path / "songs.db"))
    database.connect()
    database.create_tables()
    yield database
    database.close()
