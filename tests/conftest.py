# tests/conftest.py
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# modules live at the repository root
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def mock_db():
    """psycopg2-like connection whose cursor() always returns the same MagicMock."""
    db = MagicMock(name='connection')
    cur = MagicMock(name='cursor')
    db.cursor.return_value = cur
    return db, cur
