from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TextIO

from .config import DECODER_NAMES, Settings
from .errors import AppError
from .flow import ScreenFlow
from .inference.engine import InferenceEngine
from .logging import get_logger, init_logging
from .pipeline import FreshnessPipeline
from .preprocess import validate_image_name
from .report import result_card


@dataclass(frozen=True)
class ScanArgs:
    images: tuple[Path, ...]
    as_json: bool
    decoder: str | None


def parse_args(argv: Sequence[str] | None = None) -> ScanArgs:
    ap = argparse.ArgumentParser(prog="fruit-freshness", description="Fruit freshness classifier")
    sub = ap.add_subparsers(dest="command", required=True)
    scan = sub.add_parser("scan", help="Classify one or more fruit photos")
    scan.add_argument("images", nargs="+", help="JPEG or PNG files")
    scan.add_argument("--json", action="store_true", help="Print one JSON object per photo")
    scan.add_argument("--decoder", choices=DECODER_NAMES, default=None, help="Image decoder")
    a = ap.parse_args(argv)
    return ScanArgs(
        images=tuple(Path(str(p)) for p in a.images),
        as_json=bool(a.json),
        decoder=str(a.decoder) if a.decoder is not None else None,
    )


def run_scan(args: ScanArgs, pipeline: FreshnessPipeline, out: TextIO) -> int:
    """Drive the screen flow over each image; returns the number of failed photos."""
    logger = get_logger()
    flow = ScreenFlow()
    pipeline.engine.ensure_loaded()
    flow.model_loaded()

    failures = 0
    for path in args.images:
        if not validate_image_name(path.name):
            logger.warning("scan_skipped path=%s reason=unsupported_extension", path.as_posix())
            _emit_error(out, path, "unsupported file type", args.as_json)
            failures += 1
            continue
        flow.photo_captured(path.as_posix())
        try:
            raw = path.read_bytes()
            result = pipeline.scan(raw)
        except (AppError, OSError) as exc:
            flow.prediction_failed()
            _emit_error(out, path, str(exc), args.as_json)
            failures += 1
            continue
        flow.prediction_completed(result)
        if args.as_json:
            out.write(json.dumps({"image": path.as_posix(), **result.to_dict()}) + "\n")
        else:
            out.write(f"{path.as_posix()}\n")
            for line in result_card(result).lines():
                out.write(f"  {line}\n")
        flow.retake()
    return failures


def _emit_error(out: TextIO, path: Path, message: str, as_json: bool) -> None:
    if as_json:
        out.write(json.dumps({"image": path.as_posix(), "error": message}) + "\n")
    else:
        out.write(f"{path.as_posix()}\n  Error: {message}\n")


def main(argv: Sequence[str] | None = None) -> int:
    init_logging()
    args = parse_args(argv)
    try:
        settings = Settings.load()
    except (RuntimeError, ValueError) as exc:
        sys.stderr.write(f"fruit-freshness: {exc}\n")
        return 2
    if args.decoder is not None:
        settings = replace(settings, model=replace(settings.model, decoder=args.decoder))
    engine = InferenceEngine(settings)
    try:
        pipeline = FreshnessPipeline(settings, engine)
        failures = run_scan(args, pipeline, sys.stdout)
    except AppError as exc:
        sys.stderr.write(f"fruit-freshness: {exc.message}\n")
        return 2
    finally:
        engine.dispose()
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
