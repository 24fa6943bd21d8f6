import json
import sys
from pathlib import Path

import pytest

# Tests import `scripts.*`; make the repo root importable without an install.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def index_file(tmp_path: Path) -> Path:
    """A tiny built spatial index, ready to upload."""
    p = tmp_path / "precincts-with-results-spatial-index.json"
    p.write_text(json.dumps({"type": "FeatureCollection", "features": []}), encoding="utf-8")
    return p
