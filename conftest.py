# conftest.py

import os

import pytest

# Set testing environment BEFORE importing app so app.py uses TestingConfig
os.environ["FLASK_ENV"] = "testing"

# Now import app and other modules after environment is set
from app import app as flask_app
from legacy_bridge.migrator.connections import dispose_engines
from legacy_bridge.models import db


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create and configure a test Flask application"""
    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
            "LOG_LEVEL": "DEBUG",
            "LOG_DIR": str(tmp_path / "logs"),
            "MIGRATOR_ENABLED": True,
            "MIGRATOR_PROGRESS_DIR": str(tmp_path),
            "MIGRATOR_SKIP_REPORT_DIR": None,
            "TENANT_ID": None,
            "SOURCE_DATABASE_URL": None,
            "DESTINATION_DATABASE_URL": None,
            "SRC_HOST": None,
            "DST_HOST": None,
            "MIGRATOR_TASKS_DEFAULT_TYPE": False,
            "MIGRATOR_TAGS_ASSIGN_ALL_USERS": False,
        }
    )

    # Re-initialize logging with updated config to pick up LOG_LEVEL=DEBUG
    from legacy_bridge.utils.logging_config import setup_logging

    setup_logging(flask_app)

    with flask_app.app_context():
        # Drop any existing tables to ensure clean state
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()
    dispose_engines(flask_app)
    flask_app.extensions.pop("migrator_enum_tables", None)


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers and ensure testing environment"""
    os.environ["FLASK_ENV"] = "testing"

    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers"""
    for item in items:
        if "integration" in item.nodeid:
            item.add_marker(pytest.mark.slow)
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
