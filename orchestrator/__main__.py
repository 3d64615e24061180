"""Allow ``python -m orchestrator``."""

import sys

from .cli import main


sys.exit(main())
