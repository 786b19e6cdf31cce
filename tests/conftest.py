# SPDX-License-Identifier: LGPL-3.0-or-later
import os
import sys
from pathlib import Path

import pytest

_THIS_DIR = Path(__file__).resolve().parent
_REPO_ROOT = _THIS_DIR.parent

for p in (_REPO_ROOT, _THIS_DIR):
    if str(p) not in sys.path:
        sys.path.insert(0, str(p))

os.environ.setdefault("PYTHONPATH", str(_REPO_ROOT))


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without external resources")
    config.addinivalue_line("markers", "integration: end-to-end conversions on temporary files")


@pytest.fixture(autouse=True)
def _no_config_from_env(monkeypatch):
    # a developer's VMI_CONFIG must not leak into tests
    monkeypatch.delenv("VMI_CONFIG", raising=False)
