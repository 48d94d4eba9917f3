"""Root-level conftest.py: run the tests against this checkout's cityctl.

Prepends the repository root to sys.path so the local package shadows any
installed copy, and drops stale cached imports of it.
"""

import sys
from pathlib import Path

_root = str(Path(__file__).parent)
if _root not in sys.path:
    sys.path.insert(0, _root)

for _mod in list(sys.modules):
    if _mod == "cityctl" or _mod.startswith("cityctl."):
        del sys.modules[_mod]
