"""
pytest configuration for control plane tests.

Adds the scripts/ directory to sys.path so that
'from controlplane.engine.xxx import ...' works correctly.
"""

import sys
from pathlib import Path

# Ensure scripts/ is on the path (controlplane package lives at scripts/controlplane/)
scripts_dir = Path(__file__).parent.parent.parent
if str(scripts_dir) not in sys.path:
    sys.path.insert(0, str(scripts_dir))
