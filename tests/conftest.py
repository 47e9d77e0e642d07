"""
Shared fixtures: device engines on the software kernels and on the jax CPU device.
"""

import pytest

from ntuple.neural.accelerator import DeviceConfig, DeviceEngine


@pytest.fixture
def software_engine():
    """Engine forced onto the numpy kernels."""
    engine = DeviceEngine(DeviceConfig(enabled=False, batch_size=8))
    engine.initialize()
    yield engine
    engine.dispose()


@pytest.fixture
def jax_cpu_engine():
    """Engine running the jax kernels on the host CPU device."""
    engine = DeviceEngine(DeviceConfig(batch_size=8, platforms=('cpu',)))
    engine.initialize()
    yield engine
    engine.dispose()


@pytest.fixture(params=['software', 'jax_cpu'], ids=['software', 'jax'])
def engine(request):
    """Both engines, so every test checks both backends."""
    return request.getfixturevalue(f'{request.param}_engine')
