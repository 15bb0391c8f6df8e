from __future__ import annotations

import pytest

from sound_design_pipeline.config import get_settings


@pytest.fixture(autouse=True)
def _test_env(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    root = tmp_path_factory.mktemp("sd_test")
    (root / "data" / "jobs").mkdir(parents=True, exist_ok=True)
    (root / "uploads").mkdir(parents=True, exist_ok=True)
    (root / "logs").mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("APP_ROOT", str(root))
    monkeypatch.setenv("SOUND_DESIGN_STATE_DIR", str(root / "data" / "jobs"))
    monkeypatch.setenv("SOUND_DESIGN_UPLOADS_DIR", str(root / "uploads"))
    monkeypatch.setenv("SOUND_DESIGN_LOG_DIR", str(root / "logs"))
    monkeypatch.setenv("SOUND_DESIGN_COLLABORATORS", "")
    monkeypatch.setenv("LOUDNESS_NORMALIZE", "0")
    monkeypatch.setenv("SSE_POLL_INTERVAL_SEC", "0.01")
    monkeypatch.delenv("ENV", raising=False)
    monkeypatch.delenv("APP_ENV", raising=False)
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _reset_sse_exit_event(monkeypatch: pytest.MonkeyPatch) -> None:
    # sse-starlette keeps a process-global exit event bound to the first event loop.
    from sse_starlette.sse import AppStatus  # type: ignore

    monkeypatch.setattr(AppStatus, "should_exit_event", None, raising=False)
