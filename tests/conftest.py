from __future__ import annotations

import os

import pytest


@pytest.fixture(autouse=True)
def _isolate_settings_env(monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory) -> None:
    for key in list(os.environ):
        if key.startswith("LOGSCOUT_") or key in {"OPENAI_API_KEY", "OPENAI_RATE_LIMIT_RETRY_WAIT_MS"}:
            monkeypatch.delenv(key, raising=False)
    # keep a developer's .env out of the settings under test
    monkeypatch.chdir(tmp_path_factory.mktemp("cwd"))
