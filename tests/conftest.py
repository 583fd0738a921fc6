"""
Pytest configuration and fixtures for tabletop-engine tests.
"""

import os
import sys
import tempfile
from pathlib import Path
import pytest

# Add src directory to Python path to allow importing tabletop_engine
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

# Importing the package starts the server module, which creates its storage
# directory. Keep it out of the working tree during tests.
os.environ.setdefault("TABLETOP_STORAGE_DIR", tempfile.mkdtemp(prefix="tabletop-tests-"))


# Configure anyio to only use asyncio (not trio)
@pytest.fixture
def anyio_backend():
    return "asyncio"
