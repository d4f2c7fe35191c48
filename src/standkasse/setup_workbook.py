"""Utility for initializing the Standkasse store workbook.

The module doubles as a script (``python -m standkasse.setup_workbook``) and
as a library used by tests. It creates one worksheet per logical store key,
seeds the catalog, and writes a fresh session carrying the configured
passcode.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Mapping, Sequence

import openpyxl

from . import data_manager
from .constants import DEFAULT_PASSCODE, SEED_CATALOG, StoreKey


CONFIG_FILE = "config.ini"


def create_store_workbook(
    destination: Path,
    *,
    passcode: str = DEFAULT_PASSCODE,
    catalog: Sequence[Mapping[str, str]] = SEED_CATALOG,
    overwrite: bool = False,
) -> Path:
    """Create the store workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing store workbook: {destination}"
        )

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    for key in StoreKey:
        data_manager.ensure_store_sheet(workbook, key.value)

    store = data_manager.WorkbookStore(destination, workbook=workbook)
    store.save(StoreKey.PRODUCTS.value, [dict(item) for item in catalog])
    data_manager.save_orders(store, [])
    data_manager.save_session(store, data_manager.SessionSettings(passcode=passcode))
    data_manager.save_archive(store, [])
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``DataFile`` in ``config_path``."""

    parser = data_manager.read_config(config_path)
    settings = data_manager.parse_settings(parser, base_path=config_path.expanduser().resolve().parent)
    return create_store_workbook(
        settings.data_file,
        passcode=settings.default_passcode,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Initialize the Standkasse store workbook")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Standkasse Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except KeyError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (data_manager.PersistenceError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created store workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
