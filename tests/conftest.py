# tests/conftest.py
import os
import sys

import pytest

# Ensure repository root is on PYTHONPATH for tests
repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if repo_root not in sys.path:
    sys.path.insert(0, repo_root)


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add --unit-stubs, which skips tests that need a live Neo4j or model endpoint."""
    parser.addoption(
        "--unit-stubs",
        action="store_true",
        default=False,
        help="Run only hermetic tests; skip integration and slow suites.",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if not config.getoption("--unit-stubs"):
        return

    skip_marker = pytest.mark.skip(reason="skipped by --unit-stubs")
    heavy_markers = {"integration", "slow"}
    for item in items:
        if any(m.name in heavy_markers for m in item.iter_markers()):
            item.add_marker(skip_marker)
