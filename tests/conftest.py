import os
import tempfile

import pytest

# scanner configures its log file on import; keep it out of the real home
_TMP = tempfile.mkdtemp(prefix="qbfm-tests-")
os.environ["QBFM_LOG_DIR"] = os.path.join(_TMP, "logs")
os.environ["QBFM_CONFIG"] = os.path.join(_TMP, "config.yml")


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Per-test config file and no QBT_* variables leaking in from the shell."""
    cfg = tmp_path / "cfg" / "config.yml"
    monkeypatch.setenv("QBFM_CONFIG", str(cfg))
    for var in ("QBT_URL", "QBT_USERNAME", "QBT_PASSWORD"):
        monkeypatch.delenv(var, raising=False)
    return cfg


@pytest.fixture
def make_file(tmp_path):
    def _make(rel: str, size: int) -> str:
        p = tmp_path / "disk" / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(b"x" * size)
        return str(p)
    return _make
