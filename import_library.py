#!/usr/bin/env python3
"""
Standalone command-line script to restore a gvstorage bundle into the library.

The library does not need to be empty: categories and tags are merged by slug,
and an asset whose slug already exists is skipped, overwritten or renamed as
chosen with --on-conflict (or interactively, the default).
"""

import argparse
import sys

from tqdm import tqdm

from gvstorage import SessionLocal, content_store
from gvstorage.conflicts import ConflictAction, ConflictResolution, fixed_policy, next_free_slug
from gvstorage.errors import BackupError, Cancelled
from gvstorage.importer import LibraryImporter
from gvstorage.logger import setup_logging
from gvstorage.progress import CancellationToken, run_to_completion
from gvstorage.utils import format_bytes, is_valid_slug

from export_library import EXIT_CANCELLED, progress_listener


def _describe(summary: dict) -> str:
    return f"version {summary.get('version') or '-'}, {format_bytes(summary.get('fileSizeBytes') or 0)}"


def prompt_resolver(slug_exists, ask=input, write=tqdm.write):
    """
    A conflict resolver that asks on the terminal. An empty answer (or end of
    input) skips the asset.
    """
    def resolve(slug, title, existing, incoming):
        suggestion = next_free_slug(slug, slug_exists)
        write(f"\nAsset '{title}' conflicts with an existing asset (slug '{slug}').")
        write(f"  existing: {_describe(existing)}")
        write(f"  incoming: {_describe(incoming)}")
        while True:
            try:
                answer = ask(f"> [s]kip, [o]verwrite, [r]ename to '{suggestion}', or type a new slug: ").strip()
            except EOFError:
                return ConflictResolution.skip()
            choice = answer.lower()
            if choice in ("", "s", "skip"):
                return ConflictResolution.skip()
            if choice in ("o", "overwrite"):
                return ConflictResolution.overwrite()
            if choice in ("r", "rename"):
                return ConflictResolution.rename(suggestion)
            if is_valid_slug(answer) and not slug_exists(answer):
                return ConflictResolution.rename(answer)
            write("  Please answer s, o, r or type a new slug that is not in use.")
    return resolve


def main(argv=None) -> int:
    """Main function to orchestrate the import process."""
    print("--- gvstorage Library Importer ---")
    parser = argparse.ArgumentParser(
        description="Restores a gvstorage bundle into the library.",
        formatter_class=argparse.RawTextHelpFormatter
    )
    parser.add_argument("bundle", help="Path to a bundle created by export_library.py")
    parser.add_argument(
        "--on-conflict",
        choices=["ask"] + [action.value for action in ConflictAction],
        default="ask",
        help="What to do with assets whose slug already exists.\n(default: ask)"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    args = parser.parse_args(argv)
    setup_logging("cli", debug=args.verbose)

    importer = LibraryImporter(SessionLocal, content_store)
    if args.on_conflict == "ask":
        resolver = prompt_resolver(importer.slug_exists)
    else:
        resolver = fixed_policy(ConflictAction(args.on_conflict), importer.slug_exists)
    token = CancellationToken()

    bar = tqdm(total=0, unit="item", desc="Extracting")
    try:
        result = run_to_completion(importer.import_bundle(args.bundle, token, resolver), progress_listener(bar))
    except (Cancelled, KeyboardInterrupt):
        bar.close()
        print("\nImport cancelled. Assets imported before cancelling were kept.")
        return EXIT_CANCELLED
    except BackupError as e:
        bar.close()
        print(f"\nError: {e}")
        return 1
    bar.close()

    print("\n-----------------------------")
    print(" Import finished.")
    print(f" Assets: {result.imported} imported, {result.skipped} skipped, {result.failed} failed"
          f" (of {result.total_assets}).")
    print(f" New categories: {result.categories_imported}, new tags: {result.tags_imported}")
    for slug, message in result.errors.items():
        print(f"  - [FAILED] {slug}: {message}")
    print("-----------------------------")
    return 1 if result.has_failures and result.imported == 0 else 0


if __name__ == "__main__":
    sys.exit(main())
