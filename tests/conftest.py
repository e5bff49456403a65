"""
pytest configuration for altpp tests.
"""

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Add the parent directory to sys.path to ensure imports work
sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture
def scatter_data():
    """100 points with distinct x positions, random y and unique names."""
    rng = np.random.default_rng(1001)
    return pd.DataFrame(
        {
            "a": np.arange(100, dtype=float),
            "b": rng.normal(size=100),
            "name": [f"p{i}" for i in range(100)],
            "kind": np.repeat(["A", "B"], 50),
        }
    )


@pytest.fixture
def two_groups():
    """Two groups of 20 and 17 observations."""
    rng = np.random.default_rng(67821)
    return pd.DataFrame(
        {
            "x": np.arange(37, dtype=float),
            "y": rng.normal(10, size=37),
            "grp": ["A"] * 20 + ["B"] * 17,
        }
    )


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
