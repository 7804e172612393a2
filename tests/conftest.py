# tests/conftest.py
import pytest


@pytest.fixture(autouse=True)
def _errors_log(tmp_path, monkeypatch):
    """Keep errors.log out of the working tree."""
    monkeypatch.setenv("ERRORS_LOG", str(tmp_path / "errors.log"))
