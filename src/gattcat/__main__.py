"""
Entry point for running gattcat as a module.

Usage:
    python -m gattcat serve --one-shot /bin/cat
    python -m gattcat connect AA:BB:CC:DD:EE:FF
"""

import sys

from .cli import main


if __name__ == "__main__":
    sys.exit(main())
