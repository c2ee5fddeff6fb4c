"""Allow ``python -m forgeupdate``."""

import sys

from forgeupdate.cli import main

sys.exit(main())
