# histogram_equalizer.records.py

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Union


@dataclass
class ConversionRecord:
    """equalize 1回分の計測記録"""
    pixel_count: int
    device_name: str
    core_count: int
    elapsed_ms: float
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat(timespec="seconds"))


class ConversionLog:
    """
    ConversionRecord をためておき、JSONで入出力する。

    HistogramEqualizer の record_sink にそのまま渡せる:
        log = ConversionLog()
        equalizer = HistogramEqualizer(accelerator, record_sink=log.append)
    """

    def __init__(self, records: List[ConversionRecord] | None = None):
        self.records: List[ConversionRecord] = list(records or [])

    def __len__(self):
        return len(self.records)

    def __iter__(self):
        return iter(self.records)

    def append(self, record: ConversionRecord) -> None:
        self.records.append(record)

    def export_json(self, path: Union[str, Path]) -> None:
        """記録をJSONファイルに書き出す"""
        with open(path, "w", encoding="utf-8") as f:
            json.dump([asdict(r) for r in self.records], f, indent=2, ensure_ascii=False)

    @classmethod
    def import_json(cls, path: Union[str, Path]) -> "ConversionLog":
        """JSONファイルから記録を読み込む"""
        with open(path, "r", encoding="utf-8") as f:
            items = json.load(f)
        if not isinstance(items, list):
            raise ValueError(f"{path}: expected a list of records")
        return cls([ConversionRecord(**item) for item in items])
