# Keep the repository root on sys.path so the flat modules import when
# tests are run from another working directory.
import os
import sys

root = os.path.dirname(os.path.abspath(__file__))
if root not in sys.path:
    sys.path.insert(0, root)
