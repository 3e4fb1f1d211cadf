from __future__ import annotations

import sys

from prompt_composer.cli import main

raise SystemExit(main(sys.argv[1:]))
