"""
Pytest configuration and fixtures.
"""

import os
import sys
import tempfile

# Add app directory to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

# Set test environment BEFORE any app module reads it
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)

os.environ["TESTING"] = "1"
os.environ["DATABASE_PATH"] = _test_db_path
os.environ["OAUTH_CLIENT_ID"] = "test-client-id"
os.environ["TOURNAMENT_DIRECTOR"] = "director"
os.environ["SESSION_SECRET"] = "test-session-secret"
os.environ["SESSION_SALT"] = "test-session-salt"
os.environ["APP_BASE_URL"] = "http://testserver"

import pytest


@pytest.fixture(scope="session", autouse=True)
def cleanup_db():
    """Remove the default test database after the run."""
    yield
    if os.path.exists(_test_db_path):
        os.remove(_test_db_path)
