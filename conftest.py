"""Root conftest.py: put the project root on sys.path before tests import imagebuilder."""
import os
import sys

project_root = os.path.dirname(os.path.abspath(__file__))


def pytest_configure(config):
    """Make ``imagebuilder`` importable without an editable install."""
    if project_root not in sys.path:
        sys.path.insert(0, project_root)
