# histogram_equalizer.lut.py

import numpy as np

NUM_BINS = 256


def cumulative_histogram(histogram: np.ndarray) -> np.ndarray:
    """累積ヒストグラム（int64）"""
    return np.cumsum(np.asarray(histogram, dtype=np.int64))


def build_lut(histogram: np.ndarray, pixel_count: int) -> np.ndarray:
    """
    累積ヒストグラムから正規化された256要素のLUTを作成する。

    lut[i] = clamp(floor(cumulative[i] * 255 / pixel_count), 0, 255)

    整数演算で計算するので cumulative == pixel_count のとき必ず255になる。
    浮動小数の cumulative * (255 / pixel_count) とは丸めの境界で結果が異なる
    ことがあるが、この差は意図したもので、整数版を正とする。

    Args:
        histogram (np.ndarray): 256ビンのヒストグラム
        pixel_count (int): 画素数（> 0）

    Returns:
        np.ndarray: LUT, shape=(256,), uint8, 単調非減少
    """
    histogram = np.asarray(histogram)
    if histogram.shape != (NUM_BINS,):
        raise ValueError(f"histogram must have {NUM_BINS} bins, got shape {histogram.shape}")
    if pixel_count <= 0:
        raise ValueError("pixel_count must be positive")

    cumulative = cumulative_histogram(histogram)
    lut = cumulative * 255 // int(pixel_count)
    return np.clip(lut, 0, 255).astype(np.uint8)
