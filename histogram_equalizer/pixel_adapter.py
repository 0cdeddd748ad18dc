# histogram_equalizer.pixel_adapter.py

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Tuple, Union
import numpy as np
from PIL import Image

from .errors import InputError, InvalidDimensions, NullInput, UnsupportedChannelCount


SUPPORTED_CHANNELS = (1, 3, 4)

BytesLike = Union[bytes, bytearray, memoryview, np.ndarray]


class PixelFormat(Enum):
    """フレームバッファのピクセル形式。値は Pillow の rawmode。"""
    INDEXED_1BPP = "P;1"
    INDEXED_4BPP = "P;4"
    INDEXED_8BPP = "P"
    GRAY_8BPP = "L"
    RGB_24BPP = "RGB"
    RGB_32BPP = "RGBX"
    ARGB_32BPP = "RGBA"
    PARGB_32BPP = "RGBa"
    # 以下はフォールバック（RGBへ変換）でのみ扱う
    GRAY_ALPHA_16BPP = "LA"
    CMYK_32BPP = "CMYK"
    YCBCR_24BPP = "YCbCr"


BITS_PER_PIXEL = {
    PixelFormat.INDEXED_1BPP: 1,
    PixelFormat.INDEXED_4BPP: 4,
    PixelFormat.INDEXED_8BPP: 8,
    PixelFormat.GRAY_8BPP: 8,
    PixelFormat.RGB_24BPP: 24,
    PixelFormat.RGB_32BPP: 32,
    PixelFormat.ARGB_32BPP: 32,
    PixelFormat.PARGB_32BPP: 32,
    PixelFormat.GRAY_ALPHA_16BPP: 16,
    PixelFormat.CMYK_32BPP: 32,
    PixelFormat.YCBCR_24BPP: 24,
}

INDEXED_FORMATS = (PixelFormat.INDEXED_1BPP, PixelFormat.INDEXED_4BPP, PixelFormat.INDEXED_8BPP)


@dataclass(frozen=True)
class FormatPlan:
    """ピクセル形式ごとの変換方針"""
    channels: int
    target: PixelFormat
    fallback: bool = False


_FORMAT_PLANS = {
    # インデックスカラーはRGBに変換
    PixelFormat.INDEXED_1BPP: FormatPlan(3, PixelFormat.RGB_24BPP),
    PixelFormat.INDEXED_4BPP: FormatPlan(3, PixelFormat.RGB_24BPP),
    PixelFormat.INDEXED_8BPP: FormatPlan(3, PixelFormat.RGB_24BPP),
    PixelFormat.GRAY_8BPP: FormatPlan(1, PixelFormat.GRAY_8BPP),
    PixelFormat.RGB_24BPP: FormatPlan(3, PixelFormat.RGB_24BPP),
    # 32bit系はRGBA
    PixelFormat.RGB_32BPP: FormatPlan(4, PixelFormat.ARGB_32BPP),
    PixelFormat.ARGB_32BPP: FormatPlan(4, PixelFormat.ARGB_32BPP),
    PixelFormat.PARGB_32BPP: FormatPlan(4, PixelFormat.ARGB_32BPP),
}

FALLBACK_PLAN = FormatPlan(3, PixelFormat.RGB_24BPP, fallback=True)

CHANNELS_TO_FORMAT = {
    1: PixelFormat.GRAY_8BPP,
    3: PixelFormat.RGB_24BPP,
    4: PixelFormat.ARGB_32BPP,
}

# Pillow のモード -> ピクセル形式
PIL_MODE_FORMATS = {
    "1": PixelFormat.INDEXED_1BPP,
    "P": PixelFormat.INDEXED_8BPP,
    "L": PixelFormat.GRAY_8BPP,
    "RGB": PixelFormat.RGB_24BPP,
    "RGBX": PixelFormat.RGB_32BPP,
    "RGBA": PixelFormat.ARGB_32BPP,
    "RGBa": PixelFormat.PARGB_32BPP,
    "LA": PixelFormat.GRAY_ALPHA_16BPP,
    "CMYK": PixelFormat.CMYK_32BPP,
    "YCbCr": PixelFormat.YCBCR_24BPP,
}


def plan_for(pixel_format: PixelFormat) -> FormatPlan:
    """
    ピクセル形式からチャンネル数と変換先を決める。
    未対応の形式は警告を出してRGBへのフォールバック変換とする。
    """
    plan = _FORMAT_PLANS.get(pixel_format)
    if plan is None:
        print(f"Warning: Unsupported format {pixel_format}, converting to RGB")
        return FALLBACK_PLAN
    return plan


@dataclass
class ImageBuffer:
    """
    正規化された画像（行パディングなし）

    pixels: uint8, 長さ width * height * channels
    channels: 1 = グレースケール, 3 = RGB, 4 = RGBA（アルファは最後）
    """
    width: int
    height: int
    channels: int
    pixels: Any

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    @classmethod
    def from_array(cls, array: np.ndarray) -> "ImageBuffer":
        """(H, W) または (H, W, C) の uint8 配列から作成する"""
        array = np.asarray(array)
        if array.ndim == 2:
            height, width = array.shape
            channels = 1
        elif array.ndim == 3:
            height, width, channels = array.shape
        else:
            raise InvalidDimensions(f"expected a 2D or 3D array, got shape {array.shape}")
        return cls(width=width, height=height, channels=channels, pixels=array.reshape(-1))

    def to_array(self) -> np.ndarray:
        pixels = np.asarray(self.pixels, dtype=np.uint8)
        if self.channels == 1:
            return pixels.reshape(self.height, self.width)
        return pixels.reshape(self.height, self.width, self.channels)


def as_uint8(data: BytesLike) -> np.ndarray:
    """バイト列を1次元のuint8配列にする"""
    if isinstance(data, np.ndarray):
        if data.dtype != np.uint8:
            raise InputError(f"pixel data must be uint8, got {data.dtype}")
        return np.ascontiguousarray(data).reshape(-1)
    return np.frombuffer(data, dtype=np.uint8)


def validate_image(image: ImageBuffer) -> ImageBuffer:
    """
    入力画像を検証し、pixels を uint8 配列にした ImageBuffer を返す。
    デバイスには一切触れない。
    """
    if image is None or image.pixels is None:
        raise NullInput("pixel buffer is None")
    if image.width <= 0 or image.height <= 0:
        raise InvalidDimensions(f"invalid image dimensions: {image.width}x{image.height}")
    if image.channels not in SUPPORTED_CHANNELS:
        raise UnsupportedChannelCount(f"Unsupported channel count: {image.channels}")

    pixels = as_uint8(image.pixels)
    expected = image.width * image.height * image.channels
    if pixels.size != expected:
        raise InvalidDimensions(f"pixel buffer length {pixels.size} != {expected}")
    return ImageBuffer(image.width, image.height, image.channels, pixels)


# --- 行パディング ---
def aligned_stride(width: int, bytes_per_pixel: int, alignment: int = 4) -> int:
    """行を alignment バイト境界に揃えたストライド"""
    row = width * bytes_per_pixel
    return (row + alignment - 1) // alignment * alignment


def strip_row_padding(data: BytesLike, width: int, height: int, bytes_per_pixel: int, stride: int) -> np.ndarray:
    """
    各行末尾のパディングを取り除き、詰めたバッファを返す。

    Args:
        data: 元のバッファ（長さ >= stride * height）
        width (int): 幅
        height (int): 高さ
        bytes_per_pixel (int): 1ピクセルのバイト数
        stride (int): 1行のバイト数（>= width * bytes_per_pixel）

    Returns:
        np.ndarray: 長さ width * height * bytes_per_pixel の uint8 配列
    """
    row = width * bytes_per_pixel
    if stride < row:
        raise InvalidDimensions(f"stride {stride} is smaller than row size {row}")
    buffer = as_uint8(data)
    if buffer.size < stride * height:
        raise InvalidDimensions(f"buffer length {buffer.size} < stride * height ({stride * height})")
    rows = buffer[: stride * height].reshape(height, stride)
    return rows[:, :row].copy().reshape(-1)


def insert_row_padding(packed: BytesLike, width: int, height: int, bytes_per_pixel: int, stride: int) -> np.ndarray:
    """strip_row_padding の逆。パディングはゼロで埋める。"""
    row = width * bytes_per_pixel
    if stride < row:
        raise InvalidDimensions(f"stride {stride} is smaller than row size {row}")
    packed = as_uint8(packed)
    if packed.size != row * height:
        raise InvalidDimensions(f"packed length {packed.size} != {row * height}")
    out = np.zeros(stride * height, dtype=np.uint8)
    out.reshape(height, stride)[:, :row] = packed.reshape(height, row)
    return out


# --- チャンネル操作 ---
def extract_channel(interleaved: np.ndarray, channel: int, channels: int) -> np.ndarray:
    """インターリーブされたバッファから1チャンネルを取り出す"""
    return np.ascontiguousarray(interleaved.reshape(-1, channels)[:, channel])


def insert_channel(interleaved: np.ndarray, plane: np.ndarray, channel: int, channels: int) -> np.ndarray:
    """plane を指定チャンネルに書き戻したコピーを返す"""
    out = interleaved.reshape(-1, channels).copy()
    out[:, channel] = plane
    return out.reshape(-1)


def split_alpha(rgba: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """RGBA -> (RGB, アルファ面)"""
    pixels = rgba.reshape(-1, 4)
    return np.ascontiguousarray(pixels[:, :3]).reshape(-1), pixels[:, 3].copy()


def merge_alpha(rgb: np.ndarray, alpha: np.ndarray) -> np.ndarray:
    """(RGB, アルファ面) -> RGBA"""
    out = np.empty((alpha.size, 4), dtype=np.uint8)
    out[:, :3] = rgb.reshape(-1, 3)
    out[:, 3] = alpha
    return out.reshape(-1)


# --- フレームバッファ ---
@dataclass
class RawFrame:
    """
    ストライド付きのフレームバッファ

    palette はインデックスカラーのみ使用（[r, g, b, r, g, b, ...] または (N, 3)）
    """
    width: int
    height: int
    stride: int
    pixel_format: PixelFormat
    data: Any
    palette: Optional[Any] = field(default=None, repr=False)

    @property
    def row_bytes(self) -> int:
        return row_bytes(self.pixel_format, self.width)


def row_bytes(pixel_format: PixelFormat, width: int) -> int:
    return (width * BITS_PER_PIXEL[pixel_format] + 7) // 8


def _validate_frame(frame: RawFrame) -> np.ndarray:
    if frame is None or frame.data is None:
        raise NullInput("frame buffer is None")
    if frame.width <= 0 or frame.height <= 0:
        raise InvalidDimensions(f"invalid frame dimensions: {frame.width}x{frame.height}")
    pixel_format = PixelFormat(frame.pixel_format)
    row = row_bytes(pixel_format, frame.width)
    if frame.stride < row:
        raise InvalidDimensions(f"stride {frame.stride} is smaller than row size {row}")
    data = as_uint8(frame.data)
    if data.size < frame.stride * frame.height:
        raise InvalidDimensions(f"frame buffer length {data.size} < {frame.stride * frame.height}")
    return data


def _default_palette(pixel_format: PixelFormat) -> list:
    # グレースケールのランプ
    levels = 2 ** BITS_PER_PIXEL[pixel_format]
    step = 255 // (levels - 1)
    palette = []
    for i in range(levels):
        palette.extend([i * step] * 3)
    return palette


def _palette_list(palette: Any) -> list:
    values = np.asarray(palette, dtype=np.int64).reshape(-1)
    return [int(v) for v in np.clip(values, 0, 255)[:768]]


def decode_frame(frame: RawFrame) -> Image.Image:
    """Pillow の raw デコーダ（ストライド指定）で PIL.Image にする"""
    data = _validate_frame(frame)
    pixel_format = PixelFormat(frame.pixel_format)
    mode = "P" if pixel_format in INDEXED_FORMATS else pixel_format.value
    image = Image.frombuffer(
        mode, (frame.width, frame.height), data[: frame.stride * frame.height].tobytes(),
        "raw", pixel_format.value, frame.stride, 1
    )
    if mode == "P":
        palette = frame.palette if frame.palette is not None else _default_palette(pixel_format)
        image.putpalette(_palette_list(palette))
    return image


def to_canonical(frame: RawFrame) -> Tuple[ImageBuffer, FormatPlan]:
    """
    フレームバッファを正規化された画像に変換する。

    Returns:
        Tuple[ImageBuffer, FormatPlan]: 画像と変換方針
    """
    data = _validate_frame(frame)
    pixel_format = PixelFormat(frame.pixel_format)
    plan = plan_for(pixel_format)
    w, h = frame.width, frame.height

    if pixel_format in (PixelFormat.GRAY_8BPP, PixelFormat.RGB_24BPP, PixelFormat.ARGB_32BPP):
        pixels = strip_row_padding(data, w, h, plan.channels, frame.stride)
    elif pixel_format is PixelFormat.RGB_32BPP:
        # 4バイト目は未使用なので不透明にする
        pixels = strip_row_padding(data, w, h, 4, frame.stride)
        pixels.reshape(-1, 4)[:, 3] = 255
    else:
        # インデックスカラー・乗算済みアルファ・未対応形式は Pillow で変換
        target_mode = CHANNELS_TO_FORMAT[plan.channels].value
        converted = decode_frame(frame).convert(target_mode)
        pixels = np.asarray(converted, dtype=np.uint8).reshape(-1)

    return ImageBuffer(w, h, plan.channels, pixels), plan


def from_canonical(image: ImageBuffer, stride: Optional[int] = None) -> RawFrame:
    """
    正規化された画像をフレームバッファに戻す（行パディングを再挿入）。

    Args:
        image (ImageBuffer): 画像
        stride (int): 出力ストライド。None の場合は4バイト境界に揃える。
    """
    image = validate_image(image)
    pixel_format = CHANNELS_TO_FORMAT[image.channels]
    if stride is None:
        stride = aligned_stride(image.width, image.channels)
    data = insert_row_padding(image.pixels, image.width, image.height, image.channels, stride)
    return RawFrame(image.width, image.height, stride, pixel_format, data)


# --- Pillow との境界 ---
def frame_from_pil(image: Image.Image) -> RawFrame:
    """PIL.Image -> RawFrame"""
    if image is None:
        raise NullInput("image is None")
    pixel_format = PIL_MODE_FORMATS.get(image.mode)
    if pixel_format is None:
        print(f"Warning: Unsupported mode {image.mode}, converting to RGB")
        image = image.convert("RGB")
        pixel_format = PixelFormat.RGB_24BPP

    width, height = image.size
    palette = None
    if pixel_format is PixelFormat.INDEXED_1BPP:
        # "1" モードは1bitで詰められている
        palette = [0, 0, 0, 255, 255, 255]
    elif pixel_format is PixelFormat.INDEXED_8BPP:
        palette = image.getpalette()

    data = np.frombuffer(image.tobytes(), dtype=np.uint8)
    return RawFrame(width, height, row_bytes(pixel_format, width), pixel_format, data, palette)


def frame_to_pil(frame: RawFrame) -> Image.Image:
    """RawFrame -> PIL.Image"""
    return decode_frame(frame).copy()


def image_to_pil(image: ImageBuffer) -> Image.Image:
    """ImageBuffer -> PIL.Image"""
    image = validate_image(image)
    return Image.fromarray(image.to_array())
