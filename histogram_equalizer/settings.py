# histogram_equalizer.settings.py

import json
import traceback
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

BACKENDS = ("auto", "opencl", "cpu")


@dataclass
class EngineSettings:
    """エンジンの設定を管理するデータクラス"""
    backend: str = "auto"
    device_index: int = 0
    record_log_path: Optional[Path] = None

    # 設定ファイルのパス（初期化後に設定）
    settings_path: Path = None

    def __post_init__(self):
        if self.settings_path is None:
            self.settings_path = Path.home() / ".histogram_equalizer" / "settings.json"
        self.settings_path = Path(self.settings_path)
        if self.record_log_path is not None:
            self.record_log_path = Path(self.record_log_path)

    def load(self) -> "EngineSettings":
        """設定をJSONファイルから読み込む。失敗した場合は現在の値を保持する。"""
        if not self.settings_path.exists():
            return self
        try:
            with open(self.settings_path, "r", encoding="utf-8") as f:
                settings = json.load(f)

            backend = settings.get("backend", self.backend)
            if backend in BACKENDS:
                self.backend = backend
            else:
                print(f"Unknown backend in settings: {backend}")

            device_index = int(settings.get("device", self.device_index))
            self.device_index = device_index if device_index >= 0 else 0

            record_log_path = settings.get("record_log_path")
            if record_log_path:
                self.record_log_path = Path(record_log_path)
        except (OSError, ValueError, TypeError, AttributeError) as e:
            traceback.print_exc()
            print(f"設定ファイルの読み込みに失敗しました: {e}")
        return self

    def save(self) -> None:
        """現在の設定をJSONファイルに保存する"""
        settings = {
            "backend": self.backend,
            "device": self.device_index,
            "record_log_path": str(self.record_log_path) if self.record_log_path else None,
        }
        try:
            self.settings_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.settings_path, "w", encoding="utf-8") as f:
                json.dump(settings, f, indent=2, ensure_ascii=False)
        except OSError as e:
            traceback.print_exc()
            print(f"設定の保存に失敗しました: {e}")
            raise e
