from __future__ import annotations

import sys

from sound_design_pipeline.cli import main

if __name__ == "__main__":
    sys.exit(main())
