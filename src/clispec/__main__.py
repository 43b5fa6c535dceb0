"""Allow ``python -m clispec``."""

import sys

from clispec.cli import main

sys.exit(main())
