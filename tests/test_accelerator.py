import dataclasses
import sys

import numpy as np
import pytest

from histogram_equalizer.accelerator import (
    DeviceDescriptor,
    cores_per_multiprocessor,
    create_accelerator,
    describe,
)
from histogram_equalizer.errors import (
    DeviceOperationFailure,
    InitializationError,
    InvalidDimensions,
    UseAfterDispose,
)
from histogram_equalizer.numpy_backend import (
    NumbaAccelerator,
    rgb_to_ycbcr_kernel,
    ycbcr_to_rgb_kernel,
)


@pytest.mark.parametrize("arch, cores", [
    ((2, 1), 48),
    ((3, 5), 192),
    ((6, 0), 64),
    ((7, 5), 64),
    ((8, 6), 128),
    ((9, 0), 128),
    # テーブルにない組み合わせ
    ((6, 9), 128),
    ((10, 0), 64),
])
def test_cores_per_multiprocessor(arch, cores):
    assert cores_per_multiprocessor(*arch) == cores


def test_descriptor_is_immutable(accelerator):
    with pytest.raises(dataclasses.FrozenInstanceError):
        accelerator.descriptor.name = "other"
    assert accelerator.core_count == 0
    assert accelerator.name


def test_describe_without_accelerator():
    assert describe(None) == DeviceDescriptor(name="", core_count=0)


def test_create_cpu_accelerator():
    with create_accelerator("cpu") as acc:
        assert isinstance(acc, NumbaAccelerator)
    assert acc.disposed


def test_create_unknown_backend():
    with pytest.raises(ValueError):
        create_accelerator("cuda")


def test_histogram_kernel_counts_exactly(accelerator, rng):
    plane = rng.integers(0, 256, size=10007, dtype=np.uint8)
    with accelerator.scope() as scope:
        source = scope.upload(plane)
        histogram = scope.zeros(256, np.int32)
        accelerator.histogram(source, histogram)
        result = histogram.read()
    assert result.sum() == plane.size
    assert np.array_equal(result, np.bincount(plane, minlength=256))


def test_histogram_kernel_single_bin_contention(accelerator):
    plane = np.full(4096, 7, dtype=np.uint8)
    with accelerator.scope() as scope:
        source = scope.upload(plane)
        histogram = scope.zeros(256, np.int32)
        accelerator.histogram(source, histogram)
        result = histogram.read()
    assert result[7] == 4096
    assert result.sum() == 4096


def test_apply_lut_kernel(accelerator):
    lut = (255 - np.arange(256)).astype(np.uint8)
    plane = np.array([0, 1, 128, 255], dtype=np.uint8)
    with accelerator.scope() as scope:
        source = scope.upload(plane)
        destination = scope.empty(plane.size, np.uint8)
        accelerator.apply_lut(source, destination, scope.upload(lut))
        assert destination.read().tolist() == [255, 254, 127, 0]


def test_color_round_trip_within_tolerance(accelerator, rng):
    rgb = rng.integers(0, 256, size=3 * 5000, dtype=np.uint8)
    with accelerator.scope() as scope:
        source = scope.upload(rgb)
        ycbcr = scope.empty(rgb.size, np.uint8)
        back = scope.empty(rgb.size, np.uint8)
        accelerator.rgb_to_ycbcr(source, ycbcr)
        accelerator.ycbcr_to_rgb(ycbcr, back)
        result = back.read()
    diff = np.abs(result.astype(np.int64) - rgb.astype(np.int64))
    assert diff.max() <= 3


def test_forward_transform_values(accelerator):
    rgb = np.array([255, 255, 255, 0, 0, 0, 255, 0, 0], dtype=np.uint8)
    with accelerator.scope() as scope:
        source = scope.upload(rgb)
        ycbcr = scope.empty(rgb.size, np.uint8)
        accelerator.rgb_to_ycbcr(source, ycbcr)
        result = ycbcr.read().reshape(-1, 3)
    # 白: Y は 254 か 255（浮動小数の切り捨て）、色差は128付近
    assert result[0, 0] >= 254
    assert abs(int(result[0, 1]) - 128) <= 1
    assert result[1].tolist() == [0, 128, 128]
    # 赤: Y = 76, Cr = 255
    assert result[2, 0] == 76
    assert result[2, 2] == 255


def test_partial_trailing_pixel_is_skipped():
    rgb = np.arange(8, dtype=np.uint8)
    ycbcr = np.full(8, 99, dtype=np.uint8)
    rgb_to_ycbcr_kernel(rgb, ycbcr, 3)
    assert ycbcr[6:].tolist() == [99, 99]

    back = np.full(8, 99, dtype=np.uint8)
    ycbcr_to_rgb_kernel(ycbcr, back, 3)
    assert back[6:].tolist() == [99, 99]


def test_scope_releases_buffers_on_error(accelerator):
    with pytest.raises(RuntimeError):
        with accelerator.scope() as scope:
            scope.zeros(256, np.int32)
            scope.upload(np.zeros(16, dtype=np.uint8))
            assert accelerator.live_buffers == 2
            raise RuntimeError("boom")
    assert accelerator.live_buffers == 0
    assert accelerator.allocations == 2


def test_released_buffer_cannot_be_read(accelerator):
    with accelerator.scope() as scope:
        buffer = scope.zeros(4, np.uint8)
    assert buffer.released
    with pytest.raises(DeviceOperationFailure):
        buffer.read()


def test_backend_error_becomes_device_operation_failure():
    class FailingAccelerator(NumbaAccelerator):
        def _apply_lut(self, n, source, destination, lut):
            raise MemoryError("out of device memory")

    acc = FailingAccelerator()
    with pytest.raises(DeviceOperationFailure) as excinfo:
        with acc.scope() as scope:
            source = scope.zeros(4, np.uint8)
            acc.apply_lut(source, scope.empty(4, np.uint8), scope.zeros(256, np.uint8))
    assert isinstance(excinfo.value.__cause__, MemoryError)
    assert acc.live_buffers == 0


def test_use_after_dispose(accelerator):
    accelerator.dispose()
    with pytest.raises(UseAfterDispose):
        accelerator.scope()
    # 2回目の dispose は何もしない
    accelerator.dispose()


@pytest.fixture
def without_pyopencl(monkeypatch):
    # pyopencl を import できない環境を再現する
    monkeypatch.setitem(sys.modules, "pyopencl", None)
    monkeypatch.delitem(sys.modules, "histogram_equalizer.opencl_backend", raising=False)


def test_opencl_backend_without_pyopencl(without_pyopencl):
    with pytest.raises(InitializationError):
        create_accelerator("opencl")


def test_auto_backend_falls_back_to_cpu(without_pyopencl, capsys):
    with create_accelerator("auto") as acc:
        assert isinstance(acc, NumbaAccelerator)
    assert acc.disposed
    assert "falling back to CPU" in capsys.readouterr().out


def test_histogram_rejects_empty_plane(accelerator):
    with accelerator.scope() as scope:
        plane = scope.empty(0, np.uint8)
        histogram = scope.zeros(256, np.int32)
        with pytest.raises(InvalidDimensions):
            accelerator.histogram(plane, histogram)
    assert accelerator.live_buffers == 0


def test_histogram_rejects_wrong_bin_count(accelerator):
    with accelerator.scope() as scope:
        plane = scope.upload(np.arange(256, dtype=np.uint8))
        histogram = scope.zeros(16, np.int32)
        with pytest.raises(InvalidDimensions):
            accelerator.histogram(plane, histogram)
        # カーネルは起動されていない
        assert histogram.read().sum() == 0


def test_apply_lut_rejects_short_destination(accelerator):
    with accelerator.scope() as scope:
        source = scope.upload(np.arange(64, dtype=np.uint8))
        destination = scope.zeros(4, np.uint8)
        lut = scope.upload(np.arange(256, dtype=np.uint8))
        with pytest.raises(InvalidDimensions):
            accelerator.apply_lut(source, destination, lut)
        assert destination.read().tolist() == [0, 0, 0, 0]


@pytest.mark.parametrize("lut_length", [0, 255, 257])
def test_apply_lut_rejects_wrong_lut_length(accelerator, lut_length):
    with accelerator.scope() as scope:
        source = scope.upload(np.arange(8, dtype=np.uint8))
        destination = scope.empty(8, np.uint8)
        lut = scope.zeros(lut_length, np.uint8)
        with pytest.raises(InvalidDimensions):
            accelerator.apply_lut(source, destination, lut)


def test_apply_lut_rejects_empty_source(accelerator):
    with accelerator.scope() as scope:
        source = scope.empty(0, np.uint8)
        with pytest.raises(InvalidDimensions):
            accelerator.apply_lut(source, scope.empty(4, np.uint8), scope.zeros(256, np.uint8))


def test_color_transforms_reject_short_output(accelerator):
    with accelerator.scope() as scope:
        rgb = scope.upload(np.zeros(12, dtype=np.uint8))
        short = scope.zeros(9, np.uint8)
        with pytest.raises(InvalidDimensions):
            accelerator.rgb_to_ycbcr(rgb, short)
        with pytest.raises(InvalidDimensions):
            accelerator.ycbcr_to_rgb(rgb, short)
        assert short.read().sum() == 0


def test_color_transforms_reject_empty_input(accelerator):
    with accelerator.scope() as scope:
        empty = scope.empty(0, np.uint8)
        out = scope.empty(3, np.uint8)
        with pytest.raises(InvalidDimensions):
            accelerator.rgb_to_ycbcr(empty, out)
        with pytest.raises(InvalidDimensions):
            accelerator.ycbcr_to_rgb(empty, out)


def test_luma_rejects_short_rgb(accelerator):
    with accelerator.scope() as scope:
        rgb = scope.upload(np.zeros(9, dtype=np.uint8))
        plane = scope.zeros(4, np.uint8)
        with pytest.raises(InvalidDimensions):
            accelerator.luma(rgb, plane)
        with pytest.raises(InvalidDimensions):
            accelerator.luma(rgb, scope.empty(0, np.uint8))
