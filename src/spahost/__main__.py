"""``python -m spahost``: same as the ``spahost`` command."""

import sys

from spahost.cli import main

if __name__ == "__main__":
    sys.exit(main())
