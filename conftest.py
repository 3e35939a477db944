import pytest

from dynamics import init_taichi


@pytest.fixture(scope="session", autouse=True)
def taichi_runtime():
    """Taichi on the CPU backend, f64, once per session."""
    init_taichi("cpu")
