"""Shared fixtures for the docserver test suite."""

from pathlib import Path

import pytest

from docserver import IgnoreEngine, ServerConfig, create_app


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests - fast, isolated component tests")
    config.addinivalue_line("markers", "e2e: End-to-end tests through the Flask test client")
    config.addinivalue_line("markers", "cli: Tests related to command-line interface")


@pytest.fixture
def docs_root(tmp_path: Path) -> Path:
    """An empty, resolved directory to serve."""
    root = tmp_path / "docs"
    root.mkdir()
    return root.resolve()


@pytest.fixture
def make_client(docs_root):
    """Build a test client for ``docs_root`` with a fresh ignore cache."""

    def _make(root: Path = docs_root, **kwargs):
        kwargs.setdefault("ignore_engine", IgnoreEngine(ignore_file_name=".gitignore"))
        app = create_app(ServerConfig(root=root), **kwargs)
        app.config["TESTING"] = True
        return app.test_client()

    return _make
