import numpy as np
import pytest

from histogram_equalizer.equalizer import HistogramEqualizer
from histogram_equalizer.numpy_backend import NumbaAccelerator


@pytest.fixture
def accelerator():
    acc = NumbaAccelerator()
    yield acc
    acc.dispose()


@pytest.fixture
def equalizer(accelerator):
    return HistogramEqualizer(accelerator)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
