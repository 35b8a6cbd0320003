from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
for entry in (ROOT, ROOT / "src"):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))


import pytest

from tests.build_helpers import env_scope, make_workspace


@pytest.fixture(autouse=True)
def _no_inherited_zr_env():
    leaked = {key: None for key in os.environ if key.startswith("ZR_")}
    with env_scope(leaked):
        yield


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    make_workspace(tmp_path)
    return tmp_path


@pytest.fixture
def source(workspace: Path) -> Path:
    return workspace / "res"
