import sys
from pathlib import Path

import pytest

# Ensure the repo root is on sys.path so tests can import the local `termide/` package.
ROOT = str(Path(__file__).resolve().parents[1])
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


@pytest.fixture(autouse=True)
def _isolated_data_dir(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    # Keep projects, uploads and db.json out of the working tree.
    data = tmp_path / "data"
    monkeypatch.setenv("TERMIDE_DATA_DIR", str(data))
    for name in ("TERMIDE_PROJECTS_DIR", "TERMIDE_UPLOADS_DIR", "TERMIDE_DB_FILE"):
        monkeypatch.delenv(name, raising=False)
    return data
