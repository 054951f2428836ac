#!/usr/bin/env python3
"""
Entry point for the kill switch watchdog.

CRITICAL: Run this in a SEPARATE process from the tracked process.

Usage:
    python scripts/run_killswitch.py start
    python scripts/run_killswitch.py kill
    python scripts/run_killswitch.py status --pid-file ./data/main.pid
"""

import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from killswitch.cli import main


if __name__ == "__main__":
    sys.exit(main())
