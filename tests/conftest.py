import pytest
import numpy as np


@pytest.fixture
def two_groups():
    """Ten samples in two well-separated groups of five (0-4 and 5-9)."""
    np.random.seed(42)
    a = np.random.randn(5, 2) * 0.2
    b = np.random.randn(5, 2) * 0.2 + 10
    return np.vstack([a, b])


@pytest.fixture
def three_groups():
    """Sixty samples in three tight groups of twenty, at the corners of a triangle."""
    np.random.seed(42)
    centers = np.array([[0.0, 0.0], [10.0, 0.0], [0.0, 10.0]])
    points = np.vstack([np.random.randn(20, 2) * 0.5 + c for c in centers])
    truth = np.repeat([0, 1, 2], 20)
    return points, truth


@pytest.fixture
def expression_data():
    """Forty-five samples in three groups; feature 0 separates group 0, feature 1 group 2."""
    np.random.seed(0)
    data = np.random.randn(45, 6)
    data[:15, 0] += 8
    data[30:, 1] += 8
    truth = np.repeat([0, 1, 2], 15)
    return data, truth
