#!/usr/bin/env python3
"""
Command-line entry point for the deprecation engine when the package is not installed.
"""

import sys
from pathlib import Path

# Add the repository root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from schema_sunset.cli import main


if __name__ == "__main__":
    sys.exit(main())
