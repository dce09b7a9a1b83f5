"""Pytest configuration for preview_plane tests."""
import sys
from pathlib import Path

# Add src/ to path for src-layout imports
_PROJECT_ROOT = Path(__file__).parent.parent
_SRC = _PROJECT_ROOT / "src"
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

import pytest


@pytest.fixture
def session_key():
    """A session key for the repository under edit."""
    from preview_plane.app.sessions.model import SessionKey

    return SessionKey("proj-1", "acme", "storefront")
