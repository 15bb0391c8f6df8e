from __future__ import annotations

import sys
from pathlib import Path

# Ensure `src/` is importable when running `uvicorn main:app` from repo root.
REPO_ROOT = Path(__file__).resolve().parent
SRC_DIR = REPO_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from sound_design_pipeline.web.app import create_app  # noqa: E402

app = create_app()
