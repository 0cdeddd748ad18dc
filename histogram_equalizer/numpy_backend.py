# histogram_equalizer.numpy_backend.py

import platform
from typing import Any
import numpy as np
import numba
from numba import njit, prange
from numba.core.errors import NumbaError

from .accelerator import Accelerator


@njit
def clamp_byte(value: float) -> np.uint8:
    """小数部を切り捨てて [0, 255] にクリップする"""
    v = int(value)
    if v < 0:
        v = 0
    elif v > 255:
        v = 255
    return np.uint8(v)


@njit(parallel=True)
def histogram_kernel(plane: np.ndarray, histogram: np.ndarray, num_chunks: int) -> None:
    """
    256ビンのヒストグラムを計算します。
    チャンクごとのローカルヒストグラムを集計してから加算するため、
    スケジューリングに関係なく結果は正確です。
    Args:
        plane (np.ndarray): 入力チャンネル面（uint8）
        histogram (np.ndarray): 出力ヒストグラム（int32, 256, ゼロ初期化済み）
        num_chunks (int): 分割数
    """
    n = plane.shape[0]
    chunk = (n + num_chunks - 1) // num_chunks
    local = np.zeros((num_chunks, 256), dtype=np.int64)
    for c in prange(num_chunks):
        start = c * chunk
        end = min(start + chunk, n)
        for i in range(start, end):
            local[c, plane[i]] += 1
    # マージ
    for c in range(num_chunks):
        for b in range(256):
            histogram[b] += local[c, b]


@njit(parallel=True)
def apply_lut_kernel(source: np.ndarray, destination: np.ndarray, lut: np.ndarray) -> None:
    for i in prange(source.shape[0]):
        destination[i] = lut[source[i]]


@njit(parallel=True)
def rgb_to_ycbcr_kernel(rgb: np.ndarray, ycbcr: np.ndarray, num_pixels: int) -> None:
    """RGB -> YCbCr（BT.601, フルレンジ）"""
    length = rgb.shape[0]
    for p in prange(num_pixels):
        base = p * 3
        if base + 2 < length:
            r = float(rgb[base])
            g = float(rgb[base + 1])
            b = float(rgb[base + 2])
            ycbcr[base] = clamp_byte(0.299 * r + 0.587 * g + 0.114 * b)
            ycbcr[base + 1] = clamp_byte(128.0 - 0.168736 * r - 0.331264 * g + 0.5 * b)
            ycbcr[base + 2] = clamp_byte(128.0 + 0.5 * r - 0.418688 * g - 0.081312 * b)


@njit(parallel=True)
def ycbcr_to_rgb_kernel(ycbcr: np.ndarray, rgb: np.ndarray, num_pixels: int) -> None:
    """YCbCr -> RGB（フルレンジ）"""
    length = ycbcr.shape[0]
    for p in prange(num_pixels):
        base = p * 3
        if base + 2 < length:
            y = float(ycbcr[base])
            d = float(ycbcr[base + 1]) - 128.0
            e = float(ycbcr[base + 2]) - 128.0
            rgb[base] = clamp_byte(y + 1.402 * e)
            rgb[base + 1] = clamp_byte(y - 0.344136 * d - 0.714136 * e)
            rgb[base + 2] = clamp_byte(y + 1.772 * d)


@njit(parallel=True)
def luma_kernel(rgb: np.ndarray, plane: np.ndarray, num_pixels: int) -> None:
    length = rgb.shape[0]
    for p in prange(num_pixels):
        base = p * 3
        if base + 2 < length:
            plane[p] = clamp_byte(0.299 * float(rgb[base]) + 0.587 * float(rgb[base + 1]) + 0.114 * float(rgb[base + 2]))


class NumbaAccelerator(Accelerator):
    """
    CPUの並列forバックエンド（Numba）

    デバイスバッファはホスト上のプライベートなコピー。
    """

    backend_name = "numba"
    device_errors = (MemoryError, NumbaError)

    def __init__(self, num_threads: int | None = None):
        if num_threads is not None:
            numba.set_num_threads(num_threads)
        self.num_threads = numba.get_num_threads()
        name = platform.processor() or platform.machine() or "CPU"
        super().__init__(name=f"{name} (numba, {self.num_threads} threads)", core_count=0)
        print(f"Accelerator initialized. Device: {self.name}, Backend: {self.backend_name}")

    def _allocate(self, host: np.ndarray) -> Any:
        return host.copy()

    def _allocate_empty(self, length: int, dtype: np.dtype) -> Any:
        return np.empty(length, dtype=dtype)

    def _release(self, handle: Any) -> None:
        pass

    def _read(self, handle: Any, out: np.ndarray) -> None:
        out[:] = handle

    def _write(self, handle: Any, host: np.ndarray) -> None:
        handle[:] = host

    def synchronize(self) -> None:
        # numba の prange は呼び出し元に戻る時点で完了している
        pass

    def _histogram(self, n, plane, histogram):
        num_chunks = max(1, min(self.num_threads, n))
        histogram_kernel(plane, histogram, num_chunks)

    def _apply_lut(self, n, source, destination, lut):
        apply_lut_kernel(source, destination, lut)

    def _rgb_to_ycbcr(self, n, rgb, ycbcr):
        rgb_to_ycbcr_kernel(rgb, ycbcr, n)

    def _ycbcr_to_rgb(self, n, ycbcr, rgb):
        ycbcr_to_rgb_kernel(ycbcr, rgb, n)

    def _luma(self, n, rgb, plane):
        luma_kernel(rgb, plane, n)
