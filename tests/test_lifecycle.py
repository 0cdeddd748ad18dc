import pytest

import histogram_equalizer
from histogram_equalizer import ImageBuffer, UseAfterDispose


@pytest.fixture(autouse=True)
def _shutdown():
    yield
    histogram_equalizer.shutdown()


def test_init_and_shutdown():
    assert not histogram_equalizer.get_is_initialized()
    assert histogram_equalizer.get_device().name == ""

    equalizer = histogram_equalizer.init(backend="cpu")
    assert histogram_equalizer.get_is_initialized()
    assert histogram_equalizer.get_device() == equalizer.device
    # 2回目は同じインスタンス
    assert histogram_equalizer.init(backend="cpu") is equalizer

    accelerator = equalizer.accelerator
    histogram_equalizer.shutdown()
    assert not histogram_equalizer.get_is_initialized()
    assert accelerator.disposed
    with pytest.raises(UseAfterDispose):
        equalizer.get_histogram(ImageBuffer(1, 1, 1, b"\x00"))
