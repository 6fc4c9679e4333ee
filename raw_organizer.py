#!/usr/bin/env python3
"""
Raw Organizer - Standalone Script
---------------------------------
Move camera raw files into YYYY-MM-DD folders based on the EXIF 'DateTimeOriginal'
reported by exiftool, optionally converting each one to a compressed JPEG with dcraw
and ImageMagick (falling back to jpegoptim).

Usage examples:
    python raw_organizer.py ~/card/DCIM ~/Photos
    python raw_organizer.py ./inbox ./Photos --convert-to-jpg 50
    python raw_organizer.py ./inbox ./Photos --dry-run --report report.csv
    python raw_organizer.py ./inbox ./Photos --ext .arw,.nef --fail-fast

License: MIT
"""

import argparse
import csv
import logging
import subprocess
import sys
from datetime import date, datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from PIL import Image, UnidentifiedImageError


DEFAULT_EXTS = {".arw"}
DEFAULT_QUALITY = 80
DATE_FOLDER_FORMAT = "%Y-%m-%d"
EXIF_DATE_FORMAT = "%Y:%m:%d"
JPEG_SUFFIX = ".jpg"

EXIFTOOL = "exiftool"
DCRAW = "dcraw"

# Tried in order until one succeeds. Each entry builds the argv for (jpeg_path, quality).
COMPRESSORS: List[Tuple[str, Callable[[Path, int], List[str]]]] = [
    ("magick", lambda p, q: ["magick", str(p), "-quality", str(q), str(p)]),
    ("jpegoptim", lambda p, q: ["jpegoptim", "--max", str(q), str(p)]),
]

REPORT_HEADER = ["source", "destination", "action", "date", "reason"]


class UsageParser(argparse.ArgumentParser):
    """ArgumentParser that exits with status 1 on usage errors."""

    def error(self, message: str) -> None:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def run_tool(argv: Sequence[str]) -> Optional[subprocess.CompletedProcess]:
    """Run an external tool to completion. Returns None if it is missing or cannot be started."""
    logging.debug("Running: %s", " ".join(argv))
    try:
        return subprocess.run(list(argv), capture_output=True)
    except FileNotFoundError:
        logging.debug("%s is not available", argv[0])
        return None
    except OSError as e:
        logging.warning("%s could not be started: %s", argv[0], e)
        return None


def parse_capture_date(text: str) -> Optional[date]:
    text = text.strip()
    if not text:
        return None
    try:
        return datetime.strptime(text[:10], EXIF_DATE_FORMAT).date()
    except ValueError:
        return None


def get_capture_date(photo_path: Path) -> Optional[date]:
    result = run_tool([EXIFTOOL, "-DateTimeOriginal", "-s3", str(photo_path)])
    if result is None or result.returncode != 0:
        return None
    return parse_capture_date(result.stdout.decode("utf-8", errors="replace"))


def describe_image(path: Path) -> Optional[str]:
    """Identify an image from its header, e.g. 'PPM 6048x4024'."""
    try:
        with Image.open(path) as im:
            return f"{im.format} {im.width}x{im.height}"
    except (UnidentifiedImageError, OSError):
        return None


def compress_jpeg(jpeg_path: Path, quality: int) -> Optional[str]:
    """
    Compress a JPEG in place with the first compressor that works.

    Returns the name of the compressor used, or None if every one was missing or failed.
    """
    for name, build_argv in COMPRESSORS:
        result = run_tool(build_argv(jpeg_path, quality))
        if result is None:
            logging.warning("%s is not available, trying next compressor", name)
            continue
        if result.returncode == 0:
            logging.info("JPEG successfully compressed using %s.", name)
            return name
        logging.warning("%s failed on %s (exit %s)", name, jpeg_path.name, result.returncode)
    logging.error("Failed to compress JPEG at %s", jpeg_path)
    return None


def convert_raw_to_jpeg(photo_path: Path, output_path: Path, quality: int) -> bool:
    # -c: write to stdout, -w: camera white balance
    result = run_tool([DCRAW, "-c", "-w", str(photo_path)])
    if result is None:
        logging.error("dcraw is not available for converting %s", photo_path.name)
        return False
    if result.returncode != 0:
        logging.error("Failed to convert %s to JPEG using dcraw.", photo_path.name)
        return False

    try:
        output_path.write_bytes(result.stdout)
    except OSError as e:
        logging.error("Could not write %s: %s", output_path, e)
        return False
    logging.info("JPEG generated for %s (%s)", photo_path.name, describe_image(output_path) or "unknown format")
    compress_jpeg(output_path, quality)
    return True


def first_free_path(target: Path) -> Path:
    """target itself, or the first of stem-1.ext, stem-2.ext ... not yet taken."""
    n = 0
    candidate = target
    while candidate.exists():
        n += 1
        candidate = target.with_name(f"{target.stem}-{n}{target.suffix}")
    return candidate


def move_to_date_folder(
    photo_path: Path,
    dst_root: Path,
    taken: date,
    convert_to_jpg: bool = False,
    quality: int = DEFAULT_QUALITY,
    dry_run: bool = False,
) -> Path:
    """
    Move a raw file into dst_root/YYYY-MM-DD and optionally convert it.

    Filesystem errors (permissions, cross-device rename, disk full) are raised to the caller.
    Returns the path the file was (or in dry-run mode, would be) moved to.
    """
    date_folder = dst_root / taken.strftime(DATE_FOLDER_FORMAT)
    target = date_folder / photo_path.name
    if target != photo_path:
        target = first_free_path(target)

    if dry_run:
        return target

    date_folder.mkdir(parents=True, exist_ok=True)
    photo_path.replace(target)

    if convert_to_jpg:
        jpeg_path = first_free_path(target.with_suffix(JPEG_SUFFIX))
        if jpeg_path.stem != target.stem:
            logging.warning("%s already exists, writing %s", target.with_suffix(JPEG_SUFFIX).name, jpeg_path.name)
        convert_raw_to_jpeg(target, jpeg_path, quality)
    return target


def organize(
    src_dir: Path,
    dst_root: Path,
    exts: Iterable[str] = DEFAULT_EXTS,
    convert_to_jpg: bool = False,
    quality: int = DEFAULT_QUALITY,
    dry_run: bool = False,
    fail_fast: bool = False,
    report_rows: Optional[List[List[str]]] = None,
) -> Dict[str, int]:
    """Single pass over src_dir. Returns the run totals."""
    totals = {
        "scanned": 0,
        "eligible": 0,
        "moved": 0,
        "no_date": 0,
        "errors": 0,
    }
    action = "DRY-MOVE" if dry_run else "MOVE"

    wanted = {e.lower() for e in exts}
    entries = list(src_dir.iterdir())
    totals["scanned"] = len(entries)
    for p in entries:
        if not p.is_file() or p.suffix.lower() not in wanted:
            continue
        totals["eligible"] += 1

        taken = get_capture_date(p)
        if taken is None:
            totals["no_date"] += 1
            logging.warning("Could not determine the date for file %s", p.name)
            if report_rows is not None:
                report_rows.append([str(p), "", "skip", "", "no capture date"])
            continue

        try:
            target = move_to_date_folder(p, dst_root, taken, convert_to_jpg, quality, dry_run)
        except OSError as e:
            if fail_fast:
                raise
            totals["errors"] += 1
            logging.error("Error processing %s: %s", p, e)
            if report_rows is not None:
                report_rows.append([str(p), "", "error", taken.isoformat(), str(e)])
            continue

        totals["moved"] += 1
        logging.info("%s %s -> %s (date %s)", action, p.name, target, taken.isoformat())
        if target.name != p.name:
            logging.warning("Renamed %s to %s, the name was already taken", p.name, target.name)
        if report_rows is not None:
            report_rows.append([str(p), str(target), action, taken.isoformat(), ""])

    return totals


def parse_quality(value: Optional[str]) -> int:
    """Quality for --convert-to-jpg; missing or invalid values fall back to DEFAULT_QUALITY."""
    if not value:
        return DEFAULT_QUALITY
    try:
        quality = int(value)
    except ValueError:
        quality = -1
    if not 0 <= quality <= 100:
        logging.warning("Invalid JPEG quality %r, using %d", value, DEFAULT_QUALITY)
        return DEFAULT_QUALITY
    return quality


def write_report(path: Path, rows: List[List[str]]) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(REPORT_HEADER)
            writer.writerows(rows)
        logging.info("Report saved to %s", path)
    except OSError as e:
        logging.error("Failed to write report: %s", e)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    ap = UsageParser(
        description="Move camera raw files into YYYY-MM-DD folders using their EXIF capture date."
    )
    ap.add_argument("source_directory", type=Path, help="Folder containing raw files")
    ap.add_argument("destination_directory", type=Path, help="Root folder for the dated folders")
    ap.add_argument("--convert-to-jpg", nargs="?", const="", default=None, metavar="QUALITY",
                    help=f"Also write a compressed JPEG next to each moved file (quality 0-100, default "
                         f"{DEFAULT_QUALITY}; values outside 0-100 also fall back to {DEFAULT_QUALITY})")
    ap.add_argument("--ext", type=str, default=",".join(sorted(DEFAULT_EXTS)),
                    help="Comma-separated list of raw extensions to include (case-insensitive)")
    ap.add_argument("--dry-run", action="store_true", help="Show actions without writing")
    ap.add_argument("--fail-fast", action="store_true", help="Abort on the first filesystem error")
    ap.add_argument("--report", type=Path, help="Optional CSV report path to save per-file results")
    ap.add_argument("--log-level", type=str, default="INFO", help="Logging level (DEBUG, INFO, WARNING, ERROR)")
    return ap.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(levelname)s: %(message)s"
    )

    src = args.source_directory
    if not src.is_dir():
        logging.error("Source folder does not exist or is not a directory: %s", src)
        return 2

    exts = {e.strip().lower() for e in args.ext.split(",") if e.strip()}
    exts = {e if e.startswith(".") else "." + e for e in exts} or DEFAULT_EXTS

    convert_to_jpg = args.convert_to_jpg is not None
    quality = parse_quality(args.convert_to_jpg) if convert_to_jpg else DEFAULT_QUALITY

    report_rows: Optional[List[List[str]]] = [] if args.report else None
    totals = organize(
        src,
        args.destination_directory,
        exts=exts,
        convert_to_jpg=convert_to_jpg,
        quality=quality,
        dry_run=args.dry_run,
        fail_fast=args.fail_fast,
        report_rows=report_rows,
    )

    if args.report:
        write_report(args.report, report_rows)

    logging.info("Summary: %s", totals)
    print("\n=== SUMMARY ===")
    for k, v in totals.items():
        print(f"{k}: {v}")
    return 1 if totals["errors"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
