from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from localcaption.captioning.errors import (
    BackendNotAvailableError,
    ConfigurationError,
    LoadError,
    ValidationError,
)
from localcaption.captioning.orchestrator import CaptionOrchestrator
from localcaption.captioning.preprocess import is_supported_image
from localcaption.captioning.types import CaptionJob, DownloadProgress
from localcaption.utils.logger import configure_logging
from localcaption.utils.settings import CaptioningSettings, load_settings
from localcaption.version import get_version


def _load_settings(args: argparse.Namespace) -> CaptioningSettings:
    settings = load_settings(args.settings)
    if args.models_dir:
        settings.models_dir = str(Path(args.models_dir).expanduser())
    return settings


def _build_orchestrator(settings: CaptioningSettings) -> CaptionOrchestrator:
    return CaptionOrchestrator.from_settings(settings)


def _collect_images(paths: List[str]) -> List[str]:
    """Expand directories into their supported images, keeping argument order."""
    images: List[str] = []
    for raw in paths:
        path = Path(raw).expanduser()
        if path.is_dir():
            images.extend(
                str(p) for p in sorted(path.iterdir()) if p.is_file() and is_supported_image(p)
            )
        else:
            images.append(str(path))
    return images


def _print_download_progress(progress: DownloadProgress) -> None:
    pct = progress.percentage
    prefix = f"[{pct:5.1f}%] " if pct >= 0 else ""
    print(f"[localcaption] {prefix}{progress.message}", file=sys.stderr)


def _cmd_models(args: argparse.Namespace) -> int:
    orchestrator = _build_orchestrator(_load_settings(args))
    rows = [info.to_dict() for info in orchestrator.list_variants()]
    print(json.dumps(rows, indent=2))
    return 0


def _cmd_download(args: argparse.Namespace) -> int:
    orchestrator = _build_orchestrator(_load_settings(args))

    async def _run() -> bool:
        return await orchestrator.download(args.key, on_progress=_print_download_progress)

    ok = bool(asyncio.run(_run()))
    print(json.dumps({"downloaded": ok, "key": args.key}, indent=2))
    return 0 if ok else 1


def _cmd_delete(args: argparse.Namespace) -> int:
    orchestrator = _build_orchestrator(_load_settings(args))

    async def _run() -> None:
        await orchestrator.delete(args.key)

    asyncio.run(_run())
    print(json.dumps({"deleted": True, "key": args.key}, indent=2))
    return 0


def _cmd_caption(args: argparse.Namespace) -> int:
    settings = _load_settings(args)
    orchestrator = _build_orchestrator(settings)
    job = CaptionJob(
        image_paths=_collect_images(args.paths),
        variant_key=args.key,
        system_prompt=args.prompt if args.prompt is not None else settings.default_system_prompt,
        trigger_word=args.trigger,
        blacklist=[w.strip() for w in (args.blacklist or "").split(",") if w.strip()],
        output_dir=args.output_dir,
        overwrite=bool(args.overwrite),
        temperature=(
            args.temperature if args.temperature is not None else settings.default_temperature
        ),
    )

    async def _run():
        try:
            return await orchestrator.generate_many(job)
        finally:
            await orchestrator.close()

    outcomes = asyncio.run(_run())
    rows = [
        {
            "image": o.image_path,
            "status": o.status,
            "caption": o.caption,
            "output": o.output_path,
            "error": o.error or o.skip_reason,
        }
        for o in outcomes
    ]
    print(json.dumps(rows, indent=2, ensure_ascii=False))
    return 1 if any(o.status == "failed" for o in outcomes) else 0


def _build_root_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="localcaption",
        description="Caption images with a locally running vision-language model.",
    )
    p.add_argument("--version", action="version", version=get_version())
    p.add_argument("--settings", default=None, help="Path to a settings YAML file.")
    p.add_argument("--models-dir", default=None, help="Override the model storage directory.")
    p.add_argument(
        "--log-dir",
        default=None,
        help="Directory for log files. Pass an empty string to log to stderr only.",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    sub = p.add_subparsers(dest="command", required=True)

    models_p = sub.add_parser("models", help="List model variants and their state.")
    models_p.set_defaults(_handler=_cmd_models)

    download_p = sub.add_parser("download", help="Download a model variant.")
    download_p.add_argument("key", help="Model variant key.")
    download_p.set_defaults(_handler=_cmd_download)

    delete_p = sub.add_parser("delete", help="Delete a downloaded model variant.")
    delete_p.add_argument("key", help="Model variant key.")
    delete_p.set_defaults(_handler=_cmd_delete)

    caption_p = sub.add_parser("caption", help="Caption images or folders of images.")
    caption_p.add_argument("key", help="Model variant key.")
    caption_p.add_argument("paths", nargs="+", help="Image files or directories.")
    caption_p.add_argument("--prompt", default=None, help="Instruction sent with each image.")
    caption_p.add_argument("--trigger", default=None, help="Word prepended to every caption.")
    caption_p.add_argument(
        "--blacklist", default=None, help="Comma-separated words removed from captions."
    )
    caption_p.add_argument(
        "--output-dir", default=None, help="Write captions here instead of beside images."
    )
    caption_p.add_argument(
        "--overwrite", action="store_true", help="Replace existing caption files."
    )
    caption_p.add_argument("--temperature", type=float, default=None)
    caption_p.set_defaults(_handler=_cmd_caption)
    return p


def main(argv: Optional[list[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    p = _build_root_parser()
    args = p.parse_args(argv)
    configure_logging(
        logging.DEBUG if args.verbose else logging.INFO, log_dir=args.log_dir
    )

    try:
        return int(args._handler(args))
    except (ConfigurationError, ValidationError) as exc:
        print(f"[localcaption] {exc}", file=sys.stderr)
        return 2
    except (BackendNotAvailableError, LoadError) as exc:
        print(f"[localcaption] {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("[localcaption] Cancelled.", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
