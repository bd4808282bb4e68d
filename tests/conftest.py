import pytest


@pytest.fixture(autouse=True)
def _isolated_log_dir(monkeypatch, tmp_path):
    monkeypatch.setenv("BRIDGE_LOG_DIR", str(tmp_path / "logs"))
