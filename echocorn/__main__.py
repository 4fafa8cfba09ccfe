"""
echocorn/__main__.py - Enables `python -m echocorn` invocation.
"""

import sys
from echocorn.cli import main

if __name__ == "__main__":
    sys.exit(main())
