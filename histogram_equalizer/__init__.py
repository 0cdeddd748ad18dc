# __init__.py

from typing import Optional

from .accelerator import (
    Accelerator,
    DeviceDescriptor,
    cores_per_multiprocessor,
    create_accelerator,
    describe,
)
from .equalizer import HistogramEqualizer
from .errors import (
    AcceleratorError,
    DeviceOperationFailure,
    EqualizationCancelled,
    EqualizerError,
    InitializationError,
    InputError,
    InvalidDimensions,
    NullInput,
    UnsupportedChannelCount,
    UseAfterDispose,
)
from .lut import build_lut
from .pixel_adapter import ImageBuffer, PixelFormat, RawFrame
from .records import ConversionLog, ConversionRecord
from .settings import EngineSettings

ACCELERATOR: Optional[Accelerator] = None
EQUALIZER: Optional[HistogramEqualizer] = None
is_initialized = False


def init(backend: str = "auto", device_index: int = 0, record_sink=None) -> HistogramEqualizer:
    """
    histogram_equalizer を初期化します。

    Args:
        backend (str): "auto", "opencl", "cpu"
        device_index (int): OpenCLデバイスの番号
        record_sink: equalize ごとに ConversionRecord を受け取る関数

    Returns:
        HistogramEqualizer: 初期化済みのパイプライン
    """
    global ACCELERATOR
    global EQUALIZER
    global is_initialized

    if is_initialized:
        print("Already initialized.")
        return EQUALIZER

    ACCELERATOR = create_accelerator(backend=backend, device_index=device_index)
    EQUALIZER = HistogramEqualizer(ACCELERATOR, record_sink=record_sink)
    is_initialized = True
    return EQUALIZER


def shutdown() -> None:
    """アクセラレータを解放します。"""
    global ACCELERATOR
    global EQUALIZER
    global is_initialized

    if ACCELERATOR is not None:
        ACCELERATOR.dispose()
    ACCELERATOR = None
    EQUALIZER = None
    is_initialized = False


def get_device() -> DeviceDescriptor:
    """
    現在のデバイス情報を返す（未初期化の場合は空）
    """
    return describe(ACCELERATOR)


def get_is_initialized() -> bool:
    """初期化されているかどうかを返します。"""
    return is_initialized
