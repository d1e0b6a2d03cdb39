"""
Pytest configuration for the MIPS emulator test suite.

Makes the tools/ modules importable straight from a checkout:

    python -m pytest
"""

import os
import sys

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
TOOLS_DIR = os.path.join(ROOT, "tools")
PROGRAMS_DIR = os.path.join(ROOT, "programs")

if TOOLS_DIR not in sys.path:
    sys.path.insert(0, TOOLS_DIR)
