import os
import sys

import pytest

# Ensure src is importable
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))


def pytest_addoption(parser):
    parser.addoption(
        "--flip-debug",
        action="store_true",
        help="Enable FLIP debug logging during tests",
    )
    parser.addoption(
        "--skip-slow",
        action="store_true",
        help="Skip tests that step a full simulation",
    )


def pytest_configure(config):
    if config.getoption("--flip-debug"):
        os.environ["FLIP_DEBUG"] = "1"
        from src.common.debug import enable

        enable(True)
    config.addinivalue_line(
        "markers",
        "slow: tests that initialize and step a FlipSim",
    )


def pytest_collection_modifyitems(config, items):
    if not config.getoption("--skip-slow"):
        return
    skip = pytest.mark.skip(reason="--skip-slow given")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip)


@pytest.fixture(params=[1, 4])
def num_workers(request):
    """Worker counts for the data-parallel passes: inline and threaded."""
    return request.param
