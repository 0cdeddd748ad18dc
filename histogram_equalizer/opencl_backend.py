# histogram_equalizer.opencl_backend.py

from typing import Any, List
import numpy as np
import pyopencl as cl

from .accelerator import Accelerator, cores_per_multiprocessor
from .errors import InitializationError


KERNEL_SOURCE = """
// 小数部を切り捨てて [0, 255] にクリップ
inline uchar clamp_byte(float value) {
    int v = convert_int_rtz(value);
    return (uchar)clamp(v, 0, 255);
}

// ヒストグラム計算カーネル（1ワーカー = 1ピクセル）
__kernel void compute_histogram(
    __global const uchar* plane,
    __global int* histogram,
    const int n
) {
    int gid = get_global_id(0);
    if (gid >= n) return;

    atomic_inc(&histogram[plane[gid]]);
}

// LUT適用カーネル
__kernel void apply_lut(
    __global const uchar* source,
    __global uchar* destination,
    __global const uchar* lut,
    const int n
) {
    int gid = get_global_id(0);
    if (gid >= n) return;

    destination[gid] = lut[source[gid]];
}

// RGB -> YCbCr（BT.601, フルレンジ）
__kernel void rgb_to_ycbcr(
    __global const uchar* rgb,
    __global uchar* ycbcr,
    const int num_pixels,
    const int length
) {
    int gid = get_global_id(0);
    int base = gid * 3;
    if (gid >= num_pixels || base + 2 >= length) return;

    float r = rgb[base];
    float g = rgb[base + 1];
    float b = rgb[base + 2];

    ycbcr[base] = clamp_byte(0.299f * r + 0.587f * g + 0.114f * b);
    ycbcr[base + 1] = clamp_byte(128.0f - 0.168736f * r - 0.331264f * g + 0.5f * b);
    ycbcr[base + 2] = clamp_byte(128.0f + 0.5f * r - 0.418688f * g - 0.081312f * b);
}

// YCbCr -> RGB（フルレンジ）
__kernel void ycbcr_to_rgb(
    __global const uchar* ycbcr,
    __global uchar* rgb,
    const int num_pixels,
    const int length
) {
    int gid = get_global_id(0);
    int base = gid * 3;
    if (gid >= num_pixels || base + 2 >= length) return;

    float y = ycbcr[base];
    float d = (float)ycbcr[base + 1] - 128.0f;
    float e = (float)ycbcr[base + 2] - 128.0f;

    rgb[base] = clamp_byte(y + 1.402f * e);
    rgb[base + 1] = clamp_byte(y - 0.344136f * d - 0.714136f * e);
    rgb[base + 2] = clamp_byte(y + 1.772f * d);
}

// 輝度面のみ計算
__kernel void compute_luma(
    __global const uchar* rgb,
    __global uchar* plane,
    const int num_pixels,
    const int length
) {
    int gid = get_global_id(0);
    int base = gid * 3;
    if (gid >= num_pixels || base + 2 >= length) return;

    plane[gid] = clamp_byte(0.299f * rgb[base] + 0.587f * rgb[base + 1] + 0.114f * rgb[base + 2]);
}
"""


def supports_int_atomics(device: cl.Device) -> bool:
    """32bit整数のグローバルアトミック操作に対応しているか"""
    if "cl_khr_global_int32_base_atomics" in device.extensions:
        return True
    # "OpenCL <major>.<minor> <vendor>"
    try:
        major, minor = device.version.split()[1].split(".")[:2]
        return (int(major), int(minor)) >= (1, 1)
    except (IndexError, ValueError):
        return False


def list_compatible_devices() -> List[cl.Device]:
    """アトミック操作に対応したOpenCLデバイスを列挙する"""
    devices = []
    try:
        platforms = cl.get_platforms()
    except cl.Error as e:
        raise InitializationError(f"no OpenCL platform found: {e}") from e
    for platform in platforms:
        try:
            platform_devices = platform.get_devices()
        except cl.Error:
            # デバイスのないプラットフォーム
            continue
        devices.extend(d for d in platform_devices if supports_int_atomics(d))
    return devices


def estimate_core_count(device: cl.Device) -> int:
    """NVIDIAデバイスのみ Compute Capability からコア数を推定する。それ以外は0。"""
    if "cl_nv_device_attribute_query" not in device.extensions:
        return 0
    major = device.compute_capability_major_nv
    minor = device.compute_capability_minor_nv
    return device.max_compute_units * cores_per_multiprocessor(major, minor)


class OpenCLAccelerator(Accelerator):
    """OpenCL（pyopencl）バックエンド"""

    backend_name = "opencl"
    device_errors = (MemoryError, cl.Error)

    def __init__(self, device_index: int = 0):
        devices = list_compatible_devices()
        if not devices:
            raise InitializationError("no OpenCL device with integer atomics found")
        if not 0 <= device_index < len(devices):
            raise InitializationError(
                f"device_index {device_index} is out of range ({len(devices)} devices)"
            )

        self.device = devices[device_index]
        try:
            self.context = cl.Context([self.device])
            self.queue = cl.CommandQueue(self.context)
            # カーネルプログラムをビルド
            self.program = cl.Program(self.context, KERNEL_SOURCE).build()
            core_count = estimate_core_count(self.device)
        except cl.Error as e:
            raise InitializationError(f"Failed to initialize OpenCL device: {e}") from e

        super().__init__(name=self.device.name.strip(), core_count=core_count)
        print(
            f"Accelerator initialized. Device: {self.name}, "
            f"Backend: {self.backend_name} ({self.device.platform.name.strip()}), "
            f"Cores: {self.core_count}"
        )

    def _allocate(self, host: np.ndarray) -> Any:
        mf = cl.mem_flags
        return cl.Buffer(self.context, mf.READ_WRITE | mf.COPY_HOST_PTR, hostbuf=host)

    def _allocate_empty(self, length: int, dtype: np.dtype) -> Any:
        return cl.Buffer(self.context, cl.mem_flags.READ_WRITE, size=max(1, length * dtype.itemsize))

    def _release(self, handle: Any) -> None:
        handle.release()

    def _read(self, handle: Any, out: np.ndarray) -> None:
        cl.enqueue_copy(self.queue, out, handle)
        self.queue.finish()

    def _write(self, handle: Any, host: np.ndarray) -> None:
        cl.enqueue_copy(self.queue, handle, host)
        self.queue.finish()

    def synchronize(self) -> None:
        self.queue.finish()

    def _dispose(self) -> None:
        try:
            self.queue.finish()
        finally:
            self.program = None
            self.queue = None
            self.context = None

    def _histogram(self, n, plane, histogram):
        self.program.compute_histogram(self.queue, (n,), None, plane, histogram, np.int32(n))

    def _apply_lut(self, n, source, destination, lut):
        self.program.apply_lut(self.queue, (n,), None, source, destination, lut, np.int32(n))

    def _rgb_to_ycbcr(self, n, rgb, ycbcr):
        self.program.rgb_to_ycbcr(self.queue, (n,), None, rgb, ycbcr, np.int32(n), np.int32(n * 3))

    def _ycbcr_to_rgb(self, n, ycbcr, rgb):
        self.program.ycbcr_to_rgb(self.queue, (n,), None, ycbcr, rgb, np.int32(n), np.int32(n * 3))

    def _luma(self, n, rgb, plane):
        self.program.compute_luma(self.queue, (n,), None, rgb, plane, np.int32(n), np.int32(n * 3))
