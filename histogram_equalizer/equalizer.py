# histogram_equalizer.equalizer.py

import threading
import time
from typing import Callable, Optional
import numpy as np

from .accelerator import Accelerator, DeviceDescriptor
from .errors import DeviceOperationFailure, EqualizationCancelled
from .lut import NUM_BINS, build_lut
from .pixel_adapter import (
    ImageBuffer,
    PixelFormat,
    RawFrame,
    extract_channel,
    from_canonical,
    insert_channel,
    merge_alpha,
    split_alpha,
    to_canonical,
    validate_image,
)
from .records import ConversionRecord


def _checkpoint(cancel_event: Optional[threading.Event], stage: str) -> None:
    # ステージ間でのみキャンセルを確認する
    if cancel_event is not None and cancel_event.is_set():
        raise EqualizationCancelled(f"equalization cancelled before {stage}")


class HistogramEqualizer:
    """
    ヒストグラム平坦化のパイプライン

    各ステージ（ヒストグラム -> LUT作成 -> LUT適用）は前のステージの完了を待ってから実行される。
    1つのアクセラレータを共有する呼び出しはロックで直列化される。
    呼び出しはブロックするので、UIスレッドからはワーカースレッドで実行すること。

    Parameters:
        accelerator (Accelerator): 使用するアクセラレータ
        record_sink (Callable): equalize 成功ごとに ConversionRecord を受け取る関数
    """

    def __init__(self, accelerator: Accelerator,
                 record_sink: Optional[Callable[[ConversionRecord], None]] = None):
        self.accelerator = accelerator
        self.record_sink = record_sink
        self._lock = threading.Lock()

    @property
    def device(self) -> DeviceDescriptor:
        return self.accelerator.descriptor

    # --- 公開API ---
    def get_histogram(self, image: ImageBuffer) -> np.ndarray:
        """
        画像のヒストグラムを返す。カラー画像は輝度（BT.601）のヒストグラム。

        Returns:
            np.ndarray: shape=(256,), int64, 合計 = width * height
        """
        image = validate_image(image)
        with self._lock:
            return self._histogram(image)

    def equalize(self, image: ImageBuffer, cancel_event: Optional[threading.Event] = None) -> ImageBuffer:
        """
        ヒストグラム平坦化した新しい画像を返す。入力画像は変更しない。

        Args:
            image (ImageBuffer): 1, 3, 4 チャンネルの画像
            cancel_event (threading.Event): セットされるとステージ間で中断する

        Returns:
            ImageBuffer: 同じ形状の画像。4チャンネルの場合アルファはそのまま。
        """
        image = validate_image(image)
        print(f"Equalizing image: {image.width}x{image.height}, {image.channels} channels")

        try:
            with self._lock:
                # ロック待ちの時間は計測に含めない
                start = time.perf_counter()
                if image.channels == 1:
                    pixels = self._equalize_plane(image.pixels, cancel_event)
                elif image.channels == 3:
                    pixels = self._equalize_rgb(image.pixels, cancel_event)
                else:
                    pixels = self._equalize_rgba(image.pixels, cancel_event)
                elapsed_ms = (time.perf_counter() - start) * 1000.0
        except DeviceOperationFailure as e:
            print(f"Error in equalize: {e}")
            raise

        if self.record_sink is not None:
            self.record_sink(ConversionRecord(
                pixel_count=image.pixel_count,
                device_name=self.device.name,
                core_count=self.device.core_count,
                elapsed_ms=elapsed_ms,
            ))
        return ImageBuffer(image.width, image.height, image.channels, pixels)

    def get_frame_histogram(self, frame: RawFrame) -> np.ndarray:
        """フレームバッファ（任意のピクセル形式・ストライド）のヒストグラム"""
        image, _ = to_canonical(frame)
        return self.get_histogram(image)

    def equalize_frame(self, frame: RawFrame, cancel_event: Optional[threading.Event] = None) -> RawFrame:
        """
        フレームバッファを平坦化する。

        出力は変換先の形式（RGB_24BPP, ARGB_32BPP, GRAY_8BPP）のフレーム。
        形式が変わらない場合は元のストライドを保つ。入力フレームは変更しない。
        """
        image, plan = to_canonical(frame)
        result = self.equalize(image, cancel_event)
        stride = frame.stride if plan.target is PixelFormat(frame.pixel_format) else None
        return from_canonical(result, stride=stride)

    # --- ステージ ---
    def _histogram(self, image: ImageBuffer) -> np.ndarray:
        with self.accelerator.scope() as scope:
            if image.channels == 1:
                plane = scope.upload(image.pixels)
            else:
                rgb = image.pixels if image.channels == 3 else split_alpha(image.pixels)[0]
                rgb_buffer = scope.upload(rgb)
                plane = scope.empty(image.pixel_count, np.uint8)
                self.accelerator.luma(rgb_buffer, plane)
            histogram = scope.zeros(NUM_BINS, np.int32)
            self.accelerator.histogram(plane, histogram)
            return histogram.read().astype(np.int64)

    def _equalize_plane(self, plane: np.ndarray, cancel_event: Optional[threading.Event]) -> np.ndarray:
        pixel_count = plane.size
        with self.accelerator.scope() as scope:
            source = scope.upload(plane)
            histogram = scope.zeros(NUM_BINS, np.int32)
            self.accelerator.histogram(source, histogram)

            # LUTはCPUで作成
            lut = build_lut(histogram.read(), pixel_count)
            _checkpoint(cancel_event, "apply_lut")

            lut_buffer = scope.upload(lut)
            destination = scope.empty(pixel_count, np.uint8)
            self.accelerator.apply_lut(source, destination, lut_buffer)
            return destination.read()

    def _equalize_rgb(self, rgb: np.ndarray, cancel_event: Optional[threading.Event]) -> np.ndarray:
        with self.accelerator.scope() as scope:
            # 1. RGB -> YCbCr
            rgb_buffer = scope.upload(rgb)
            ycbcr_buffer = scope.empty(rgb.size, np.uint8)
            self.accelerator.rgb_to_ycbcr(rgb_buffer, ycbcr_buffer)
            ycbcr = ycbcr_buffer.read()
            _checkpoint(cancel_event, "luma equalization")

            # 2. Yチャンネルを平坦化して書き戻す
            luma = extract_channel(ycbcr, 0, 3)
            equalized = self._equalize_plane(luma, cancel_event)
            ycbcr_buffer.write(insert_channel(ycbcr, equalized, 0, 3))
            _checkpoint(cancel_event, "ycbcr_to_rgb")

            # 3. YCbCr -> RGB
            result = scope.empty(rgb.size, np.uint8)
            self.accelerator.ycbcr_to_rgb(ycbcr_buffer, result)
            return result.read()

    def _equalize_rgba(self, rgba: np.ndarray, cancel_event: Optional[threading.Event]) -> np.ndarray:
        rgb, alpha = split_alpha(rgba)
        return merge_alpha(self._equalize_rgb(rgb, cancel_event), alpha)
