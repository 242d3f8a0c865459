"""Allow ``python -m cloudvm``."""

import sys

from cloudvm import cli

sys.exit(cli.main())
