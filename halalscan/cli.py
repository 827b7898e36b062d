"""CLI entry point for halal-scan."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime

from dotenv import load_dotenv

from .camera import OpenCVStreamProvider, PromptHostBridge
from .config import load_config
from .imaging import load_image
from .models import HalalStatus
from .pipeline import ScanPipeline

_STATUS_ICONS = {
    HalalStatus.HALAL: "✅",
    HalalStatus.HARAM: "⛔",
    HalalStatus.DOUBTFUL: "⚠️",
    HalalStatus.NON_FOOD: "❔",
}


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="halal-scan",
        description="Scan a product's ingredients and check whether it is halal",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default=None,
        help="Path to the config file (TOML)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable debug logging"
    )

    sub = parser.add_subparsers(dest="command")

    # cameras
    sub.add_parser("cameras", help="List available cameras")

    # scan
    scan_parser = sub.add_parser("scan", help="Capture or load images and classify them")
    source = scan_parser.add_mutually_exclusive_group()
    source.add_argument(
        "--image", type=str, nargs="+", help="Use existing image files (up to 4)"
    )
    source.add_argument("--text", type=str, default=None, help="Ingredient list as text")
    scan_parser.add_argument(
        "--shots", type=int, default=1, help="Number of camera shots (up to 4)"
    )
    scan_parser.add_argument(
        "--enhance", action="store_true", help="Boost contrast and sharpen before sending"
    )
    scan_parser.add_argument(
        "--language", choices=["ar", "en"], default=None, help="Language of the verdict"
    )
    scan_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # history
    history_parser = sub.add_parser("history", help="Show recent scans")
    history_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # status
    sub.add_parser("status", help="Show identity and remaining free scans")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    load_dotenv()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_config(args.config)

    match args.command:
        case "cameras":
            _cmd_cameras()
        case "scan":
            if args.enhance:
                config.imaging.enhance = True
            asyncio.run(_cmd_scan(config, args))
        case "history":
            _cmd_history(config, args)
        case "status":
            asyncio.run(_cmd_status(config))


def _cmd_cameras() -> None:
    cameras = OpenCVStreamProvider.list_cameras()
    if not cameras:
        print("No cameras found.")
        return
    print(f"Available cameras: {len(cameras)}")
    for idx in cameras:
        print(f"  camera {idx}")


def _print_progress(value: float) -> None:
    print(f"\r   analyzing... {int(value):3d}%", end="", flush=True)


async def _cmd_scan(config, args) -> None:
    pipeline = ScanPipeline(
        config,
        host=PromptHostBridge(),
        on_progress=None if args.json else _print_progress,
        on_feedback=lambda event: print(f"📷 {event.replace('_', ' ')}"),
    )
    async with pipeline:
        if args.text:
            outcome = await pipeline.scan(text=args.text, language=args.language)
        else:
            if args.image:
                for path in args.image:
                    pipeline.add_image(load_image(path))
            else:
                print("📷 Capturing...")
                captured = await pipeline.capture_images(args.shots)
                print(f"   {len(captured)} image(s) captured")
            outcome = await pipeline.scan(language=args.language)

    if not args.json:
        print()

    if outcome.error is not None:
        if args.json:
            print(json.dumps(
                {"error": outcome.error.kind.value, "message": outcome.message},
                ensure_ascii=False,
                indent=2,
            ))
        else:
            print(outcome.message, file=sys.stderr)
            if outcome.upgrade_required:
                print("Upgrade to premium for unlimited scans.", file=sys.stderr)
        sys.exit(1)

    result = outcome.result
    if args.json:
        print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
        return
    if result.is_failure:
        print(result.reason, file=sys.stderr)
        sys.exit(1)

    print(f"{_STATUS_ICONS[result.status]} {result.status.value} ({result.confidence}%)")
    print(f"   {result.reason}")
    if result.ingredients:
        print(f"\nIngredients ({len(result.ingredients)}):")
        for i in result.ingredients:
            print(f"  {_STATUS_ICONS[i.status]} {i.name}")


def _cmd_history(config, args) -> None:
    pipeline = ScanPipeline(config)
    try:
        items = pipeline.history.load()
    finally:
        pipeline.close()

    if args.json:
        data = [
            {"id": item.id, "date": item.date, **item.result.to_dict()}
            for item in items
        ]
        print(json.dumps(data, ensure_ascii=False, indent=2))
        return

    if not items:
        print("No scans yet.")
        return
    for item in items:
        when = datetime.fromtimestamp(item.date / 1000).strftime("%Y-%m-%d %H:%M")
        icon = _STATUS_ICONS[item.result.status]
        print(f"{when}  {icon} {item.result.status.value:<9} {item.result.reason}")


async def _cmd_status(config) -> None:
    async with ScanPipeline(config) as pipeline:
        ent = pipeline.entitlement
        identity = ent.identity.user_id if ent.identity else "(none)"
        print(f"Identity:   {identity}")
        print(f"Premium:    {'yes' if ent.is_premium else 'no'}")
        print(f"Scans used: {ent.scan_count}")
        if not ent.is_premium:
            print(f"Remaining:  {ent.remaining_free_scans} of {ent.free_limit}")
