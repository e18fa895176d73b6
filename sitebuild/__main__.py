"""Allow running as python -m sitebuild."""

import sys

from sitebuild.cli import main

sys.exit(main())
