import os
import io
import sqlite3
import zipfile
import argparse
import logging
import time
import traceback
from pathlib import Path, PurePosixPath
from datetime import datetime
from dataclasses import dataclass, field
from concurrent.futures import ThreadPoolExecutor, as_completed
from enum import Enum, auto

from PIL import Image, UnidentifiedImageError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import Progress, BarColumn, TextColumn, TimeRemainingColumn, SpinnerColumn
from rich.table import Table

# Default Constants (can be overwritten by args)
DEFAULT_QUALITY = 75
DEFAULT_MAX_HEIGHT = -1
DEFAULT_WORKERS = os.cpu_count() or 1
SCRIPT_VERSION = "1.0"

# Fixed Constants
LOG_FILE = "cbz_repack.log"
ARCHIVE_EXTENSION = ".cbz"
IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".bmp")
TARGET_EXTENSION = ".webp"
TARGET_FORMAT = "WEBP"
OUTPUT_PREFIX = "(Repack) "
ZIP_COMPRESSLEVEL = 9
SIZE_UNITS = ["B", "KB", "MB", "GB", "TB"]

console = Console()
logger = logging.getLogger("cbzrepack")


@dataclass(frozen=True)
class TranscodeConfig:
    quality: int = DEFAULT_QUALITY
    max_height: int = DEFAULT_MAX_HEIGHT
    copy_other_entries: bool = False

    def __post_init__(self):
        if self.max_height != -1 and self.max_height <= 0:
            raise ValueError(f"max_height must be -1 or a positive integer, got {self.max_height}")


class TranscodeStatus(Enum):
    OK = auto()
    DECODE_FAILED = auto()
    ENCODE_FAILED = auto()


@dataclass
class TranscodeResult:
    status: TranscodeStatus
    data: bytes = b""
    width: int = 0
    height: int = 0
    error: str = ""

    @property
    def ok(self):
        return self.status is TranscodeStatus.OK


@dataclass
class RepackResult:
    source: Path
    output: Path
    original_size: int
    new_size: int
    image_count: int = 0
    converted_count: int = 0
    skipped: list = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def ratio_percent(self):
        if self.original_size <= 0:
            return 0.0
        return round(self.new_size / self.original_size * 100, 2)

    @property
    def bytes_saved(self):
        return self.original_size - self.new_size

    def summary(self):
        return (f"Completed Successfully - Old Size: {format_size(self.original_size)}"
                f" - New Size: {format_size(self.new_size)}"
                f" - Compression Ratio: {self.ratio_percent:.2f}%")


@dataclass
class ArchiveOutcome:
    path: Path
    result: RepackResult = None
    error: str = ""
    trace: str = ""
    duration_seconds: float = 0.0

    @property
    def ok(self):
        return self.result is not None and not self.error


@dataclass
class BatchReport:
    directory: Path
    outcomes: list = field(default_factory=list)

    @property
    def succeeded(self):
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self):
        return [o for o in self.outcomes if not o.ok]


# --- Progress Reporting ---

class ProgressSink:
    """Receives progress events from the repack pipeline. The base class ignores them."""

    def spawn_child(self, total, label):
        return None

    def tick(self, tracker, message=""):
        pass

    def set_message(self, tracker, message):
        pass

    def tick_root(self):
        pass


class RichProgressSink(ProgressSink):
    """Progress sink backed by a rich Progress display: one root task, one child task per archive."""

    def __init__(self, progress, total, description="Processing CBZs..."):
        self.progress = progress
        self.root = progress.add_task(description, total=total, message="")

    def spawn_child(self, total, label):
        return self.progress.add_task(label, total=total, message="")

    def tick(self, tracker, message=""):
        self.progress.update(tracker, advance=1, message=message)

    def set_message(self, tracker, message):
        self.progress.update(tracker, message=message)

    def tick_root(self):
        self.progress.update(self.root, advance=1)


def make_progress(quiet=False):
    return Progress(SpinnerColumn(), TextColumn("[cyan]{task.description}[/cyan]"), BarColumn(),
                    TextColumn("{task.completed}/{task.total}"), TimeRemainingColumn(),
                    TextColumn("{task.fields[message]}"), console=console, disable=quiet)


# --- Logging ---

def setup_logging(verbose=False, quiet=False, log_file=LOG_FILE):
    """Route the cbzrepack logger to the rich console and a plain log file."""
    logger.handlers.clear()
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    console_handler = RichHandler(console=console, markup=False, show_path=False, show_time=False)
    if quiet:
        console_handler.setLevel(logging.ERROR)
    elif verbose:
        console_handler.setLevel(logging.DEBUG)
    else:
        console_handler.setLevel(logging.INFO)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        logger.addHandler(file_handler)
    return logger


def format_size(size_bytes):
    """Human readable size using 1024 steps, at most two decimals."""
    size = float(size_bytes)
    order = 0
    while size >= 1024 and order < len(SIZE_UNITS) - 1:
        order += 1
        size /= 1024
    text = f"{size:.2f}".rstrip("0").rstrip(".")
    return f"{text} {SIZE_UNITS[order]}"


def get_size(file_path):
    """Get the size of a file"""
    if not Path(file_path).exists():
        return 0
    return os.path.getsize(file_path)


# --- Archive Scanning ---

def is_image_entry(name):
    return name.lower().endswith(IMAGE_EXTENSIONS)


def scan_image_entries(zip_ref):
    """Image entries of an open archive, in the archive's own order."""
    return [info for info in zip_ref.infolist() if not info.is_dir() and is_image_entry(info.filename)]


def target_entry_name(name):
    """Swap the extension for the target codec's, keeping any directory prefix verbatim."""
    dot = name.rfind(".")
    if dot > max(name.rfind("/"), name.rfind("\\")):
        return name[:dot] + TARGET_EXTENSION
    return name + TARGET_EXTENSION


def output_path_for(input_path):
    input_path = Path(input_path)
    return input_path.parent / f"{OUTPUT_PREFIX}{input_path.name}"


# --- Image Transcoding ---

def compute_target_size(width, height, max_height):
    """Dimensions after the max-height policy. Truncates, never rounds."""
    if max_height == -1 or height <= max_height:
        return width, height
    # Integer floor equals truncation for positive sizes and avoids float drift.
    new_width = max(1, width * max_height // height)
    new_height = max(1, height * max_height // height)
    return new_width, new_height


def _webp_ready(img):
    if img.mode in ("RGB", "RGBA"):
        return img
    has_alpha = img.mode in ("LA", "PA") or "transparency" in img.info
    return img.convert("RGBA" if has_alpha else "RGB")


def transcode(data, config):
    """Decode, optionally shrink, and re-encode one image buffer.

    Codec failures are returned as a TranscodeResult with DECODE_FAILED or
    ENCODE_FAILED rather than raised, so the caller can skip the entry.
    """
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError, Image.DecompressionBombError) as e:
        return TranscodeResult(TranscodeStatus.DECODE_FAILED, error=str(e) or type(e).__name__)

    try:
        img = _webp_ready(img)
        new_size = compute_target_size(img.width, img.height, config.max_height)
        if new_size != img.size:
            img = img.resize(new_size, Image.Resampling.BILINEAR)

        buf = io.BytesIO()
        img.save(buf, format=TARGET_FORMAT, quality=config.quality)
    except (OSError, ValueError, KeyError) as e:
        return TranscodeResult(TranscodeStatus.ENCODE_FAILED, error=str(e) or type(e).__name__)

    return TranscodeResult(TranscodeStatus.OK, data=buf.getvalue(), width=img.width, height=img.height)


# --- Archive Repacking ---

def _write_entry(zip_out, source_info, name, data):
    info = zipfile.ZipInfo(name, date_time=source_info.date_time)
    info.compress_type = zipfile.ZIP_DEFLATED
    zip_out.writestr(info, data, compress_type=zipfile.ZIP_DEFLATED, compresslevel=ZIP_COMPRESSLEVEL)


def repack_archive(input_path, config, progress=None, log=None):
    """Repacks a single CBZ archive next to the original as '(Repack) <name>'.

    Returns None when the input is missing. Any other failure (corrupt
    container, I/O error on the output) propagates to the caller.
    """
    log = log or logger
    progress = progress or ProgressSink()
    input_path = Path(input_path)

    if not input_path.is_file():
        log.error(f"Input file not found: {input_path.resolve()}")
        return None

    start_time = time.monotonic()
    output_path = output_path_for(input_path)
    if output_path.exists():
        log.debug(f"Removing existing output {output_path.name}")
        output_path.unlink()

    image_count = converted_count = 0
    skipped = []

    with zipfile.ZipFile(input_path, "r") as zip_in:
        image_entries = scan_image_entries(zip_in)
        image_count = len(image_entries)
        image_names = {info.filename for info in image_entries}
        target_names = {target_entry_name(name) for name in image_names}
        log.info(f"📦 Processing: {input_path.name} ({image_count} images)")

        with zipfile.ZipFile(output_path, "w", zipfile.ZIP_DEFLATED, compresslevel=ZIP_COMPRESSLEVEL) as zip_out:
            zip_out.comment = zip_in.comment
            sub = progress.spawn_child(image_count, "Processing images...")

            for info in zip_in.infolist():
                if info.filename not in image_names:
                    if config.copy_other_entries and info.filename in target_names:
                        log.warning(f"Not copying {info.filename}: a repacked image uses that name")
                    elif config.copy_other_entries and not info.is_dir():
                        _write_entry(zip_out, info, info.filename, zip_in.read(info))
                        log.debug(f"   Copied non-image entry: {info.filename}")
                    continue

                encoded = transcode(zip_in.read(info), config)
                entry_name = PurePosixPath(info.filename).name
                if encoded.status is TranscodeStatus.DECODE_FAILED:
                    log.warning(f"Failed to decode: {info.filename} ({encoded.error})")
                    skipped.append(info.filename)
                elif encoded.status is TranscodeStatus.ENCODE_FAILED:
                    log.warning(f"Failed to encode WebP: {info.filename} ({encoded.error})")
                    skipped.append(info.filename)
                else:
                    _write_entry(zip_out, info, target_entry_name(info.filename), encoded.data)
                    converted_count += 1
                    log.debug(f"   🖼️  {info.filename} -> {encoded.width}x{encoded.height}, {format_size(len(encoded.data))}")
                progress.tick(sub, f"Processing {entry_name}")

    progress.tick_root()

    result = RepackResult(
        source=input_path,
        output=output_path,
        original_size=get_size(input_path),
        new_size=get_size(output_path),
        image_count=image_count,
        converted_count=converted_count,
        skipped=skipped,
        duration_seconds=time.monotonic() - start_time,
    )
    progress.set_message(sub, result.summary())
    log.info(f"   ✅ {input_path.name}: {result.summary()}")
    return result


def repack_single_file(input_path, config, progress=None, log=None, conn=None):
    """Single-archive entry point: no exception escapes, failures are logged."""
    log = log or logger
    start_time = time.monotonic()
    try:
        result = repack_archive(input_path, config, progress, log)
    except Exception as e:
        log.error(f"Error: {e}")
        log.error(f"Trace: {traceback.format_exc()}")
        mark_failed(conn, str(input_path), config, time.monotonic() - start_time, str(e))
        return None
    if result is not None:
        mark_processed(conn, result, config)
    return result


# --- Batch Processing ---

def find_archives(directory):
    """CBZ files directly inside directory, sorted by name."""
    return sorted(p for p in Path(directory).iterdir()
                  if p.is_file() and p.suffix.lower() == ARCHIVE_EXTENSION)


def _run_outcome(path, config, progress, log):
    start_time = time.monotonic()
    try:
        result = repack_archive(path, config, progress, log)
    except Exception as e:
        return ArchiveOutcome(path, error=str(e) or type(e).__name__, trace=traceback.format_exc(),
                              duration_seconds=time.monotonic() - start_time)
    if result is None:
        return ArchiveOutcome(path, error="Input file not found", duration_seconds=time.monotonic() - start_time)
    return ArchiveOutcome(path, result=result, duration_seconds=result.duration_seconds)


def repack_directory(directory, config, progress=None, workers=DEFAULT_WORKERS, log=None, conn=None):
    """Repacks every CBZ in directory on a bounded thread pool.

    Each archive's outcome is collected on its own; one failing archive does
    not stop the rest of the batch.
    """
    log = log or logger
    progress = progress or ProgressSink()
    directory = Path(directory)
    report = BatchReport(directory)

    if not directory.is_dir():
        log.error(f"Input directory not found: {directory.resolve()}")
        return report

    archives = find_archives(directory)
    if not archives:
        log.warning(f"No CBZ files found in: {directory.resolve()}")
        return report

    log.info(f"🛠️ Starting CBZ repack for {len(archives)} file(s) in '{directory.resolve()}'...")
    log.info(f"   Quality: {config.quality}, Max height: {config.max_height}, Workers: {workers}")

    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        futures = {executor.submit(_run_outcome, path, config, progress, log): path for path in archives}
        for future in as_completed(futures):
            outcome = future.result()
            report.outcomes.append(outcome)
            if outcome.ok:
                mark_processed(conn, outcome.result, config)
            else:
                log.error(f"❌ Failed to repack {outcome.path.name}: {outcome.error}")
                if outcome.trace:
                    log.error(f"Trace: {outcome.trace}")
                mark_failed(conn, str(outcome.path), config, outcome.duration_seconds, outcome.error)

    order = {path: i for i, path in enumerate(archives)}
    report.outcomes.sort(key=lambda o: order[o.path])
    return report


def build_summary_table(report):
    table = Table(title="Repack Summary", title_style="bold magenta")
    table.add_column("Archive", style="green", no_wrap=True)
    table.add_column("Old Size")
    table.add_column("New Size")
    table.add_column("Ratio")
    table.add_column("Images")
    table.add_column("Status")
    for outcome in report.outcomes:
        if outcome.ok:
            r = outcome.result
            table.add_row(escape(outcome.path.name), format_size(r.original_size), format_size(r.new_size),
                          f"{r.ratio_percent:.2f}%", f"{r.converted_count}/{r.image_count}", "[green]OK")
        else:
            table.add_row(escape(outcome.path.name), "-", "-", "-", "-", f"[red]{escape(outcome.error)}")
    return table


# --- Repack History ---

def init_db(db_path):
    """Initialize the SQLite history database."""
    conn = sqlite3.connect(db_path)
    with conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS repack_history (
                path TEXT PRIMARY KEY,
                original_size INTEGER,
                new_size INTEGER,
                bytes_saved INTEGER,
                ratio_percent REAL,
                image_count INTEGER,
                converted_count INTEGER,
                skipped_count INTEGER,
                quality INTEGER,
                max_height INTEGER,
                processing_duration_seconds REAL,
                repacked_at TEXT,
                status TEXT DEFAULT 'processed',
                error_message TEXT,
                script_version TEXT
            )
        """)
    return conn


def mark_processed(conn, result, config):
    """Record a repacked archive in the history database."""
    if conn is None:
        return
    try:
        conn.execute("""
            INSERT OR REPLACE INTO repack_history
            (path, original_size, new_size, bytes_saved, ratio_percent, image_count, converted_count, skipped_count,
             quality, max_height, processing_duration_seconds, repacked_at, status, script_version)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'processed', ?)
        """, (str(result.source), result.original_size, result.new_size, result.bytes_saved, result.ratio_percent,
              result.image_count, result.converted_count, len(result.skipped), config.quality, config.max_height,
              result.duration_seconds, datetime.now().isoformat(), SCRIPT_VERSION))
        conn.commit()
    except sqlite3.DatabaseError as e:
        logger.error(f"❌ Failed to record {result.source} in history DB — {e}")


def mark_failed(conn, path_str, config, duration, error_msg):
    """Record a failed archive with its error message."""
    if conn is None:
        return
    try:
        conn.execute("""
            INSERT OR REPLACE INTO repack_history
            (path, quality, max_height, processing_duration_seconds, repacked_at, status, error_message, script_version)
            VALUES (?, ?, ?, ?, ?, 'failed', ?, ?)
        """, (path_str, config.quality, config.max_height, duration, datetime.now().isoformat(), error_msg,
              SCRIPT_VERSION))
        conn.commit()
    except sqlite3.DatabaseError as e:
        logger.error(f"❌ Failed to record failure of {path_str} in history DB — {e}")


# --- Command Line ---

def max_height_arg(value):
    height = int(value)
    if height != -1 and height <= 0:
        raise argparse.ArgumentTypeError(f"must be -1 or a positive integer, got {value}")
    return height


def build_argparser():
    parser = argparse.ArgumentParser(description="CBZ Repacker - Converts CBZ archive images to WebP.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    single = subparsers.add_parser("single", help="Repack a CBZ file.")
    single.add_argument("--input", "-i", required=True, type=Path, help="Path to the input CBZ file.")

    batch = subparsers.add_parser("batch", help="Repack CBZ files in the specified directory.")
    batch.add_argument("--input", "-i", required=True, type=Path, help="Path to the folder with CBZ files.")
    batch.add_argument("--workers", type=int, default=DEFAULT_WORKERS,
                       help=f"Archives repacked at the same time (default: {DEFAULT_WORKERS})")

    for sub in (single, batch):
        tuning_group = sub.add_argument_group('Conversion Tuning')
        tuning_group.add_argument("--quality", "-q", type=int, default=DEFAULT_QUALITY,
                                  help=f"WebP compression quality (0-100) (default: {DEFAULT_QUALITY})")
        tuning_group.add_argument("--height", "-H", type=max_height_arg, default=DEFAULT_MAX_HEIGHT,
                                  help="Rescale image to max height keeping aspect ratio (-1 keeps the original size).")
        tuning_group.add_argument("--keep-other-files", action="store_true",
                                  help="Copy non-image entries (metadata, text) into the repacked archive.")

        output_group = sub.add_argument_group('Output Control')
        output_group.add_argument("--quiet", action="store_true", help="Suppress all console output except errors.")
        output_group.add_argument("--verbose", "-v", action="store_true", help="Log every converted image.")
        output_group.add_argument("--log-file", default=LOG_FILE, help=f"Log file path (default: {LOG_FILE})")
        output_group.add_argument("--history-db", help="Record results in this SQLite database.")
    return parser


def main(argv=None):
    args = build_argparser().parse_args(argv)
    setup_logging(verbose=args.verbose, quiet=args.quiet, log_file=args.log_file)
    config = TranscodeConfig(quality=args.quality, max_height=args.height, copy_other_entries=args.keep_other_files)

    conn = init_db(args.history_db) if args.history_db else None
    try:
        if args.command == "single":
            with make_progress(args.quiet) as progress_bar:
                sink = RichProgressSink(progress_bar, total=1, description="Processing...")
                result = repack_single_file(args.input, config, sink, logger, conn)
            if result is None:
                return 1
            logger.info("Done")
            return 0

        with make_progress(args.quiet) as progress_bar:
            total = len(find_archives(args.input)) if args.input.is_dir() else 0
            sink = RichProgressSink(progress_bar, total=total)
            report = repack_directory(args.input, config, sink, args.workers, logger, conn)

        if not report.outcomes:
            return 0 if args.input.is_dir() else 1
        if not args.quiet:
            console.print(build_summary_table(report))
        if report.failed:
            logger.error(f"{len(report.failed)} of {len(report.outcomes)} archive(s) failed.")
            return 1
        logger.info("🎉 Completed Successfully")
        return 0
    finally:
        if conn:
            conn.close()


if __name__ == "__main__":
    raise SystemExit(main())
