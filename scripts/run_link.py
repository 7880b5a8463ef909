#!/usr/bin/env python
"""Run the device link from the command line.

Usage:
    python scripts/run_link.py                       # follow the device log
    python scripts/run_link.py --firmware build.bin  # update and wait for reboot
    python scripts/run_link.py --filesystem fs.bin
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    image = parser.add_mutually_exclusive_group()
    image.add_argument("--firmware", type=Path, help="Firmware image to upload.")
    image.add_argument("--filesystem", type=Path, help="Filesystem image to upload.")
    parser.add_argument(
        "--keep-running",
        action="store_true",
        help="Keep following the log after the device is ready again.",
    )
    return parser.parse_args()


def main() -> int:
    repo_root = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(repo_root))

    # Lazy import after adjusting sys.path
    from devicelink.bootstrap import serve_forever  # type: ignore
    from devicelink.config import get_settings  # type: ignore
    from devicelink.upload import UploadTarget  # type: ignore

    args = parse_args()
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    image = args.firmware or args.filesystem
    target = UploadTarget.FILESYSTEM if args.filesystem else UploadTarget.FIRMWARE
    if image is not None and not image.is_file():
        print(f"Image not found: {image}", file=sys.stderr)
        return 2
    try:
        asyncio.run(
            serve_forever(
                image=image,
                target=target,
                exit_when_ready=image is not None and not args.keep_running,
            )
        )
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
