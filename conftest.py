"""Root conftest.py for pytest.

Puts the project root on sys.path so config, core and gateway import
without an install.
"""
import os
import sys

project_root = os.path.dirname(os.path.abspath(__file__))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

# Keep settings deterministic regardless of the developer's shell
os.environ.setdefault("LOG_FORMAT", "text")
