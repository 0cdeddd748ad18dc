# histogram_equalizer.accelerator.py

from contextlib import ExitStack
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
import numpy as np

from .errors import DeviceOperationFailure, InitializationError, InvalidDimensions, UseAfterDispose
from .lut import NUM_BINS

# Compute Capability (major, minor) -> SMあたりのコア数
CORES_PER_MULTIPROCESSOR: Dict[Tuple[int, int], int] = {
    # Fermi
    (2, 0): 32,
    (2, 1): 48,
    # Kepler
    (3, 0): 192,
    (3, 2): 192,
    (3, 5): 192,
    (3, 7): 192,
    # Maxwell
    (5, 0): 128,
    (5, 2): 128,
    (5, 3): 128,
    # Pascal
    (6, 0): 64,
    (6, 1): 128,
    (6, 2): 128,
    # Volta
    (7, 0): 64,
    (7, 2): 64,
    # Turing
    (7, 5): 64,
    # Ampere
    (8, 0): 64,
    (8, 6): 128,
    (8, 7): 128,
    (8, 9): 128,
    # Hopper
    (9, 0): 128,
}


def cores_per_multiprocessor(major: int, minor: int) -> int:
    """
    アーキテクチャのバージョンからSMあたりのコア数を返す。
    テーブルにない場合は major >= 7 なら64、それ以外は128。
    """
    cores = CORES_PER_MULTIPROCESSOR.get((major, minor))
    if cores is None:
        cores = 64 if major >= 7 else 128
    return cores


@dataclass(frozen=True)
class DeviceDescriptor:
    """デバイス名と推定コア数"""
    name: str
    core_count: int = 0


class DeviceBuffer:
    """
    アクセラレータ上のバッファ。

    BufferScope からのみ作成され、スコープ終了時に必ず解放される。
    """

    def __init__(self, accelerator: "Accelerator", handle: Any, length: int, dtype: np.dtype):
        self.accelerator = accelerator
        self.handle = handle
        self.length = length
        self.dtype = np.dtype(dtype)
        self.released = False

    @property
    def nbytes(self) -> int:
        return self.length * self.dtype.itemsize

    def read(self) -> np.ndarray:
        """デバイス -> ホスト"""
        self._ensure_valid()
        out = np.empty(self.length, dtype=self.dtype)
        self.accelerator._device_call("read", self.accelerator._read, self.handle, out)
        return out

    def write(self, host: np.ndarray) -> None:
        """ホスト -> デバイス"""
        self._ensure_valid()
        host = np.ascontiguousarray(host, dtype=self.dtype).reshape(-1)
        if host.size != self.length:
            raise ValueError(f"buffer length mismatch: {host.size} != {self.length}")
        self.accelerator._device_call("write", self.accelerator._write, self.handle, host)

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self.accelerator.live_buffers -= 1
        self.accelerator._device_call("release", self.accelerator._release, self.handle)
        self.handle = None

    def _ensure_valid(self):
        if self.released:
            raise DeviceOperationFailure("device buffer has already been released")
        self.accelerator._ensure_alive()


class BufferScope:
    """
    1回のカーネル呼び出し列のためのバッファスコープ。

    with accelerator.scope() as scope:
        plane = scope.upload(pixels)
        hist = scope.zeros(256, np.int32)

    with ブロックを抜けるとき（例外時も含む）、確保したバッファを逆順にすべて解放する。
    """

    def __init__(self, accelerator: "Accelerator"):
        self.accelerator = accelerator
        self._stack = ExitStack()

    def __enter__(self) -> "BufferScope":
        self.accelerator._ensure_alive()
        self._stack.__enter__()
        return self

    def __exit__(self, exc_type, exc, tb):
        return self._stack.__exit__(exc_type, exc, tb)

    def _register(self, handle: Any, length: int, dtype) -> DeviceBuffer:
        buffer = DeviceBuffer(self.accelerator, handle, length, dtype)
        self.accelerator.live_buffers += 1
        self.accelerator.allocations += 1
        self._stack.callback(buffer.release)
        return buffer

    def upload(self, host: np.ndarray) -> DeviceBuffer:
        """ホスト配列をコピーしたバッファを確保する"""
        self.accelerator._ensure_alive()
        host = np.ascontiguousarray(host).reshape(-1)
        handle = self.accelerator._device_call("allocate", self.accelerator._allocate, host)
        return self._register(handle, host.size, host.dtype)

    def zeros(self, length: int, dtype) -> DeviceBuffer:
        """ゼロ初期化されたバッファを確保する"""
        return self.upload(np.zeros(length, dtype=dtype))

    def empty(self, length: int, dtype) -> DeviceBuffer:
        """未初期化のバッファを確保する"""
        self.accelerator._ensure_alive()
        dtype = np.dtype(dtype)
        handle = self.accelerator._device_call(
            "allocate", self.accelerator._allocate_empty, length, dtype
        )
        return self._register(handle, length, dtype)


class Accelerator:
    """
    並列計算デバイスのハンドル。

    バックエンドは以下を実装する:
        _allocate / _allocate_empty / _release / _read / _write / synchronize
        _histogram / _apply_lut / _rgb_to_ycbcr / _ycbcr_to_rgb / _luma

    スレッドセーフではない。複数スレッドから使う場合は外部で直列化すること。
    """

    backend_name: str = "abstract"
    # バックエンドのランタイムが送出する例外。DeviceOperationFailure に変換される
    device_errors: Tuple[type, ...] = (MemoryError,)

    def __init__(self, name: str, core_count: int = 0):
        self.descriptor = DeviceDescriptor(name=name, core_count=max(0, int(core_count)))
        self.disposed = False
        self.live_buffers = 0
        self.allocations = 0

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def core_count(self) -> int:
        return self.descriptor.core_count

    def __repr__(self):
        return f"{type(self).__name__}(name={self.name!r}, core_count={self.core_count})"

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.dispose()

    def _ensure_alive(self):
        if self.disposed:
            raise UseAfterDispose(f"{self.name} has already been disposed")

    def scope(self) -> BufferScope:
        self._ensure_alive()
        return BufferScope(self)

    def dispose(self) -> None:
        """デバイスとコンテキストを解放する。2回目以降は何もしない。"""
        if self.disposed:
            return
        self.disposed = True
        self._dispose()
        print(f"Accelerator disposed: {self.name}")

    def _device_call(self, operation: str, func, *args):
        try:
            return func(*args)
        except self.device_errors as e:
            raise DeviceOperationFailure(f"{self.backend_name} {operation} failed: {e}") from e

    def _dispatch(self, kernel: str, func, num_workers: int, *buffers: DeviceBuffer) -> None:
        # カーネルを起動し、完了まで待機する
        self._ensure_alive()
        for buffer in buffers:
            buffer._ensure_valid()
        handles = [buffer.handle for buffer in buffers]
        self._device_call(kernel, func, num_workers, *handles)
        self._device_call("synchronize", self.synchronize)

    # --- カーネル ---
    @staticmethod
    def _require(condition: bool, message: str) -> None:
        # デバイスに触れる前にバッファの大きさを確認する
        if not condition:
            raise InvalidDimensions(message)

    def histogram(self, plane: DeviceBuffer, histogram: DeviceBuffer) -> None:
        """plane の各値の出現回数を histogram（ゼロ初期化済み, 256要素）に加算する"""
        self._require(plane.length > 0, "plane is empty")
        self._require(histogram.length == NUM_BINS,
                      f"histogram must have {NUM_BINS} bins, got {histogram.length}")
        self._dispatch("histogram", self._histogram, plane.length, plane, histogram)

    def apply_lut(self, source: DeviceBuffer, destination: DeviceBuffer, lut: DeviceBuffer) -> None:
        """destination[i] = lut[source[i]]"""
        self._require(source.length > 0, "source is empty")
        self._require(lut.length == NUM_BINS, f"lut must have {NUM_BINS} entries, got {lut.length}")
        self._require(destination.length >= source.length,
                      f"destination ({destination.length}) is shorter than source ({source.length})")
        self._dispatch("apply_lut", self._apply_lut, source.length, source, destination, lut)

    def rgb_to_ycbcr(self, rgb: DeviceBuffer, ycbcr: DeviceBuffer) -> None:
        self._require(rgb.length > 0, "rgb buffer is empty")
        self._require(ycbcr.length >= rgb.length,
                      f"ycbcr ({ycbcr.length}) is shorter than rgb ({rgb.length})")
        self._dispatch("rgb_to_ycbcr", self._rgb_to_ycbcr, rgb.length // 3, rgb, ycbcr)

    def ycbcr_to_rgb(self, ycbcr: DeviceBuffer, rgb: DeviceBuffer) -> None:
        self._require(ycbcr.length > 0, "ycbcr buffer is empty")
        self._require(rgb.length >= ycbcr.length,
                      f"rgb ({rgb.length}) is shorter than ycbcr ({ycbcr.length})")
        self._dispatch("ycbcr_to_rgb", self._ycbcr_to_rgb, ycbcr.length // 3, ycbcr, rgb)

    def luma(self, rgb: DeviceBuffer, plane: DeviceBuffer) -> None:
        """RGB から輝度面のみを計算する（色差は計算しない）"""
        self._require(plane.length > 0, "plane is empty")
        self._require(rgb.length >= 3 * plane.length,
                      f"rgb ({rgb.length}) is shorter than 3 * plane ({3 * plane.length})")
        self._dispatch("luma", self._luma, plane.length, rgb, plane)

    # --- バックエンド実装 ---
    def _allocate(self, host: np.ndarray) -> Any:
        raise NotImplementedError

    def _allocate_empty(self, length: int, dtype: np.dtype) -> Any:
        raise NotImplementedError

    def _release(self, handle: Any) -> None:
        raise NotImplementedError

    def _read(self, handle: Any, out: np.ndarray) -> None:
        raise NotImplementedError

    def _write(self, handle: Any, host: np.ndarray) -> None:
        raise NotImplementedError

    def synchronize(self) -> None:
        raise NotImplementedError

    def _dispose(self) -> None:
        pass

    def _histogram(self, n, plane, histogram):
        raise NotImplementedError

    def _apply_lut(self, n, source, destination, lut):
        raise NotImplementedError

    def _rgb_to_ycbcr(self, n, rgb, ycbcr):
        raise NotImplementedError

    def _ycbcr_to_rgb(self, n, ycbcr, rgb):
        raise NotImplementedError

    def _luma(self, n, rgb, plane):
        raise NotImplementedError


def create_accelerator(backend: str = "auto", device_index: int = 0) -> Accelerator:
    """
    アクセラレータを作成する。

    Args:
        backend (str): "opencl", "cpu", "auto"（OpenCLを試し、失敗したらCPU）
        device_index (int): OpenCLデバイスの番号

    Returns:
        Accelerator: 作成されたアクセラレータ
    """
    if backend not in ("auto", "opencl", "cpu"):
        raise ValueError(f"unknown backend: {backend}")

    if backend in ("auto", "opencl"):
        try:
            from .opencl_backend import OpenCLAccelerator
            return OpenCLAccelerator(device_index=device_index)
        except (ImportError, InitializationError) as e:
            if backend == "opencl":
                if isinstance(e, InitializationError):
                    raise
                raise InitializationError(f"pyopencl is not available: {e}") from e
            print(f"OpenCL is not available, falling back to CPU: {e}")

    from .numpy_backend import NumbaAccelerator
    return NumbaAccelerator()


def describe(accelerator: Optional[Accelerator]) -> DeviceDescriptor:
    """アクセラレータがない場合は空のディスクリプタを返す"""
    if accelerator is None:
        return DeviceDescriptor(name="", core_count=0)
    return accelerator.descriptor
