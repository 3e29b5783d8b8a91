import os
import sys

# Ensure project root is on sys.path so tests can import qsh_converter.py and api.py as modules,
# and the tests directory so they can import the fake_qsh helpers
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
TESTS_DIR = os.path.abspath(os.path.dirname(__file__))
for path in (PROJECT_ROOT, TESTS_DIR):
    if path not in sys.path:
        sys.path.insert(0, path)
