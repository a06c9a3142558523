from __future__ import annotations

import argparse
import json
import mimetypes
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TextIO

from cifar_ai.config import Settings
from cifar_ai.errors import AppError, ErrorCode, app_error
from cifar_ai.inference.engine import InferenceEngine
from cifar_ai.logging import get_logger
from cifar_ai.preprocess import decode_image, run_preprocess
from cifar_ai.render import ResultSummary, format_percent, summarize


@dataclass(frozen=True)
class ClassifyArgs:
    files: tuple[Path, ...]
    sources: tuple[str, ...]
    as_json: bool


def parse_args(argv: list[str] | None = None) -> ClassifyArgs:
    ap = argparse.ArgumentParser(description="Classify image files with the CIFAR-10 model")
    ap.add_argument("files", nargs="+", help="Image files, classified in order")
    ap.add_argument(
        "--source",
        action="append",
        default=[],
        help="Model base URL or directory; repeat for fallbacks (default: configured sources)",
    )
    ap.add_argument("--json", action="store_true", help="Emit one JSON object per line")
    a = ap.parse_args(argv)
    return ClassifyArgs(
        files=tuple(Path(str(f)) for f in a.files),
        sources=tuple(str(s) for s in a.source),
        as_json=bool(a.json),
    )


def _format_text(path: Path, summary: ResultSummary) -> str:
    lines = [
        f"{path.as_posix()}: {summary.top.label} ({format_percent(summary.top.probability)})"
    ]
    for p in summary.secondary:
        lines.append(f"  {p.label} ({format_percent(p.probability)})")
    return "\n".join(lines) + "\n"


def classify_file(engine: InferenceEngine, settings: Settings, path: Path) -> ResultSummary:
    if settings.classify.check_mime:
        mime, _ = mimetypes.guess_type(path.name)
        if mime is None or not mime.startswith("image/"):
            raise app_error(ErrorCode.unsupported_media_type)
    try:
        raw = path.read_bytes()
    except OSError as exc:
        raise app_error(ErrorCode.file_read_failed, f"Failed to read file: {exc}") from None
    pre = run_preprocess(decode_image(raw))
    if not engine.ensure_loaded():
        raise app_error(ErrorCode.model_load_failed, engine.last_error)
    ranked = engine.classify(pre.tensor)
    c = settings.classify
    return summarize(ranked, c.top_k, c.min_secondary_probability)


def run(args: ClassifyArgs, settings: Settings, engine: InferenceEngine, out: TextIO) -> int:
    failures = 0
    for path in args.files:
        try:
            summary = classify_file(engine, settings, path)
        except AppError as exc:
            failures += 1
            get_logger().error(
                "classify_file_failed file=%s code=%s", path.as_posix(), exc.code.value
            )
            if args.as_json:
                out.write(json.dumps({"file": path.as_posix(), "error": exc.message}) + "\n")
            else:
                out.write(f"{path.as_posix()}: error: {exc.message}\n")
            continue
        if args.as_json:
            body = {"file": path.as_posix(), "model_id": summary.model_id, **summary.to_dict()}
            out.write(json.dumps(body) + "\n")
        else:
            out.write(_format_text(path, summary))
    return 1 if failures else 0


def main(argv: list[str] | None = None) -> int:  # pragma: no cover - tiny glue
    from cifar_ai.logging import init_logging

    init_logging()
    args = parse_args(argv)
    settings = Settings.load()
    if args.sources:
        settings = replace(settings, model=replace(settings.model, sources=args.sources))
    engine = InferenceEngine(settings)
    try:
        return run(args, settings, engine, sys.stdout)
    finally:
        engine.shutdown()


if __name__ == "__main__":
    raise SystemExit(main())
