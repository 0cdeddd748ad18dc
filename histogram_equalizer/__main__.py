# histogram_equalizer.__main__.py

import argparse
import statistics
import sys
import time
from pathlib import Path

import numpy as np
from PIL import Image

from .accelerator import create_accelerator
from .equalizer import HistogramEqualizer
from .errors import EqualizerError
from .pixel_adapter import frame_from_pil, frame_to_pil
from .records import ConversionLog
from .settings import BACKENDS, EngineSettings


def _load_log(path: Path | None) -> ConversionLog:
    if path is not None and path.exists():
        return ConversionLog.import_json(path)
    return ConversionLog()


def cmd_equalize(equalizer: HistogramEqualizer, args, log: ConversionLog) -> None:
    with Image.open(args.input) as image:
        frame = frame_from_pil(image)
    result = equalizer.equalize_frame(frame)
    frame_to_pil(result).save(args.output)
    record = log.records[-1]
    print(f"saved: {args.output} ({record.pixel_count} px, {record.elapsed_ms:.2f} ms)")


def cmd_histogram(equalizer: HistogramEqualizer, args, log: ConversionLog) -> None:
    with Image.open(args.input) as image:
        frame = frame_from_pil(image)
    histogram = equalizer.get_frame_histogram(frame)
    for value, count in enumerate(histogram):
        if count or args.all:
            print(f"{value}\t{count}")


def cmd_benchmark(equalizer: HistogramEqualizer, args, log: ConversionLog) -> None:
    """ヒストグラム -> 平坦化 -> 結果のヒストグラム を繰り返し計測する"""
    with Image.open(args.input) as image:
        frame = frame_from_pil(image)

    # ウォームアップ（JITコンパイル・カーネルビルドを除外）
    for _ in range(args.warmup):
        equalizer.equalize_frame(frame)

    timings = []
    for _ in range(args.repeat):
        start = time.perf_counter()
        equalizer.get_frame_histogram(frame)
        result = equalizer.equalize_frame(frame)
        equalizer.get_frame_histogram(result)
        timings.append((time.perf_counter() - start) * 1000.0)

    timings = np.asarray(timings)
    print("\n" + ("-" * 5) + "Benchmark" + ("-" * 21))
    print(f"device: {equalizer.device.name} (cores: {equalizer.device.core_count})")
    print(f"image: {frame.width}x{frame.height}")
    print(f"iterations: {args.repeat}")
    print(f"mean: {timings.mean():.3f} ms")
    print(f"stdev: {statistics.pstdev(timings.tolist()):.3f} ms")
    print(f"min: {timings.min():.3f} ms")
    print("-" * 35)


def cmd_records(args, log: ConversionLog, log_path: Path | None) -> None:
    """記録の一覧表示・書き出し・取り込み（デバイスは使わない）"""
    if args.action == "list":
        for record in log:
            print(f"{record.timestamp}\t{record.device_name}\t{record.pixel_count} px\t{record.elapsed_ms:.2f} ms")
        print(f"records: {len(log)}")
    elif args.action == "export":
        log.export_json(args.path)
        print(f"exported {len(log)} records: {args.path}")
    else:
        if log_path is None:
            raise ValueError("records import needs --log or record_log_path in settings")
        imported = ConversionLog.import_json(args.path)
        for record in imported:
            log.append(record)
        log.export_json(log_path)
        print(f"imported {len(imported)} records into {log_path}")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="histogram_equalizer", description="Histogram equalization on OpenCL / CPU")
    ap.add_argument("--backend", choices=BACKENDS, default=None, help="Accelerator backend (default: from settings)")
    ap.add_argument("--device", type=int, default=None, help="OpenCL device index")
    ap.add_argument("--settings", type=Path, default=None, help="Settings JSON path")
    ap.add_argument("--log", type=Path, default=None, help="Conversion record JSON path")

    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("equalize", help="Equalize an image file")
    p.add_argument("input", type=Path)
    p.add_argument("output", type=Path)
    p.set_defaults(func=cmd_equalize)

    p = sub.add_parser("histogram", help="Print the luma histogram of an image file")
    p.add_argument("input", type=Path)
    p.add_argument("--all", action="store_true", help="Print empty bins too")
    p.set_defaults(func=cmd_histogram)

    p = sub.add_parser("benchmark", help="Measure histogram + equalize + histogram")
    p.add_argument("input", type=Path)
    p.add_argument("--repeat", type=int, default=5)
    p.add_argument("--warmup", type=int, default=3)
    p.set_defaults(func=cmd_benchmark)

    p = sub.add_parser("devices", help="Show the selected device")
    p.set_defaults(func=None)

    p = sub.add_parser("records", help="List, export, or import conversion records")
    records = p.add_subparsers(dest="action", required=True)
    records.add_parser("list", help="Print the records in the log")
    for action, text in (("export", "Write the log to PATH"), ("import", "Merge records from PATH into the log")):
        r = records.add_parser(action, help=text)
        r.add_argument("path", type=Path)
    p.set_defaults(func=cmd_records)

    return ap


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    settings = EngineSettings(settings_path=args.settings).load()
    backend = args.backend or settings.backend
    device_index = settings.device_index if args.device is None else args.device
    log_path = args.log or settings.record_log_path

    if args.command == "records":
        try:
            cmd_records(args, _load_log(log_path), log_path)
        except (OSError, ValueError, TypeError) as e:
            print(f"error: {e}", file=sys.stderr)
            return 1
        return 0

    try:
        log = _load_log(log_path)
        with create_accelerator(backend=backend, device_index=device_index) as accelerator:
            if args.func is None:
                print(f"name: {accelerator.name}")
                print(f"cores: {accelerator.core_count}")
                return 0
            equalizer = HistogramEqualizer(accelerator, record_sink=log.append)
            args.func(equalizer, args, log)
        if log_path is not None:
            log.export_json(log_path)
    except EqualizerError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
