from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


import pytest

from fstar_lsp.config import AssistantSettings
from tests.fakes import RecordingEvents


@pytest.fixture
def fast_settings() -> AssistantSettings:
    return AssistantSettings(
        change_debounce_ms=10,
        publish_interval_ms=10,
        solver_restart_grace_ms=0,
    )


@pytest.fixture
def events() -> RecordingEvents:
    return RecordingEvents()
