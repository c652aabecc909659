#!/usr/bin/env python3
"""
Standalone command-line script to back up a whole gvstorage library.

This script opens the library's database and content store directly and writes
a single bundle containing:
  1. `database.json` with every category, tag, asset and setting.
  2. `assets/` and `thumbnails/` folders with the physical files.
  3. A short `README.txt` describing the bundle.

The bundle can be restored on any machine with `import_library.py`.
"""

import argparse
import os
import sys
from datetime import datetime

from tqdm import tqdm

from gvstorage import SessionLocal, content_store, __version__
from gvstorage.errors import BackupError, Cancelled, InsufficientSpace
from gvstorage.exporter import LibraryExporter
from gvstorage.logger import setup_logging
from gvstorage.progress import CancellationToken, run_to_completion
from gvstorage.utils import format_bytes

EXIT_CANCELLED = 130


def default_export_filename() -> str:
    return f"gvstorage_export_{datetime.now().strftime('%Y%m%d_%H%M%S')}.zip"


def progress_listener(bar: tqdm):
    """Returns a listener that mirrors ProgressEvents onto a tqdm bar."""
    def on_event(event):
        if event.total_units and bar.total != event.total_units:
            bar.total = event.total_units
        bar.n = event.processed_units
        bar.set_description(event.phase.value.replace("_", " ").capitalize())
        bar.set_postfix_str(event.current_item[-40:], refresh=False)
        bar.refresh()
    return on_event


def main(argv=None) -> int:
    """Main function to orchestrate the export process."""
    print("--- gvstorage Library Exporter ---")
    parser = argparse.ArgumentParser(
        description="Creates a bundle of the entire gvstorage library (metadata and files).",
        formatter_class=argparse.RawTextHelpFormatter
    )
    parser.add_argument(
        "-o", "--output",
        default=None,
        help="Path for the output bundle.\n(default: gvstorage_export_<timestamp>.zip)"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    args = parser.parse_args(argv)
    setup_logging("cli", debug=args.verbose)

    output = os.path.abspath(args.output or default_export_filename())
    exporter = LibraryExporter(SessionLocal, content_store, app_version=__version__)
    token = CancellationToken()

    bar = tqdm(total=0, unit="file", desc="Preparing")
    try:
        result = run_to_completion(exporter.export(output, token), progress_listener(bar))
    except (Cancelled, KeyboardInterrupt):
        bar.close()
        print("\nExport cancelled. No bundle was written.")
        return EXIT_CANCELLED
    except InsufficientSpace as e:
        bar.close()
        print(f"\nError: {e}")
        print("Free up space or choose another destination with --output.")
        return 1
    except BackupError as e:
        bar.close()
        print(f"\nError: {e}")
        return 1
    bar.close()

    for warning in result.warnings:
        print(f"Warning: {warning}")

    print("\n-----------------------------")
    print(" Export completed successfully!")
    print(f" Assets: {result.asset_count}, files: {result.file_count}, size: {format_bytes(result.size_bytes)}")
    print(f" Your library is saved to: {result.archive_path}")
    print("-----------------------------")
    return 0


if __name__ == "__main__":
    sys.exit(main())
