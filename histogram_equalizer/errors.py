# histogram_equalizer.errors.py


class EqualizerError(Exception):
    """histogram_equalizer が送出する例外の基底クラス"""


# --- 入力エラー（呼び出し側で修正可能） ---
class InputError(EqualizerError):
    """画像の形状・内容が不正"""


class NullInput(InputError, TypeError):
    """ピクセルバッファが None"""


class InvalidDimensions(InputError, ValueError):
    """幅・高さが0以下、またはバッファ長が width*height*channels と一致しない"""


class UnsupportedChannelCount(InputError, ValueError):
    """チャンネル数が 1, 3, 4 以外"""


# --- 環境エラー（ハードウェア・ドライバ側の問題） ---
class AcceleratorError(EqualizerError, RuntimeError):
    """アクセラレータ関連のエラー"""


class InitializationError(AcceleratorError):
    """互換性のあるデバイスが見つからない"""


class DeviceOperationFailure(AcceleratorError):
    """カーネル起動・同期・転送の失敗"""


class UseAfterDispose(AcceleratorError):
    """dispose() 済みのアクセラレータを使用した"""


class EqualizationCancelled(EqualizerError):
    """ステージ間のチェックでキャンセルが検出された"""
