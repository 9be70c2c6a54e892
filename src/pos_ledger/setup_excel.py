"""Utility for initializing the POS ledger master workbook.

The module doubles as a script (``pos-ledger-setup``) and as a library used by
tests or other tooling. Shared helpers keep the workbook bootstrap logic
consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
import configparser
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, MutableMapping, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook

from . import data_manager

# Sheet layout is owned by the data layer's collection descriptors.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    collection.sheet_name: collection.columns for collection in data_manager.COLLECTIONS
}

# Walk-in client used by point-of-sale sales without a named customer.
DEFAULT_CLIENT: MutableMapping[str, object] = {
    "ClientID": "CLI-WALKIN",
    "Name": "Walk-in Customer",
    "Address": "",
    "Phone": "",
    "Email": "",
    "DocumentNumber": "",
}

CONFIG_FILE = "config.ini"


@dataclass(frozen=True)
class SetupSettings:
    """Type-safe representation of configuration values used during setup."""

    data_file: Path
    default_client_id: str


def load_settings(config_path: Path) -> SetupSettings:
    """Read ``config.ini`` and produce :class:`SetupSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory.
    """

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)

    try:
        data_file_raw = parser.get("System", "DataFile")
        default_client_id = parser.get("Defaults", "DefaultClient")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        data_file_path = (config_path.parent / data_file_path).resolve()

    return SetupSettings(
        data_file=data_file_path,
        default_client_id=default_client_id,
    )


def build_master_workbook(
    *,
    default_client_id: str = str(DEFAULT_CLIENT["ClientID"]),
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    default_client_template: Mapping[str, object] = DEFAULT_CLIENT,
) -> Workbook:
    """Return an in-memory workbook with every collection sheet and header."""

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    default_client = dict(default_client_template)
    default_client["ClientID"] = default_client_id
    clients_sheet = workbook[data_manager.CLIENTS.sheet_name]
    clients_sheet.append([default_client[column] for column in data_manager.CLIENTS.columns])

    return workbook


def create_master_workbook(
    destination: Path,
    *,
    default_client_id: str = str(DEFAULT_CLIENT["ClientID"]),
    overwrite: bool = False,
) -> Path:
    """Create the master workbook at ``destination``.

    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)
    workbook = build_master_workbook(default_client_id=default_client_id)
    workbook.save(destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config.ini``."""

    settings = load_settings(config_path)
    return create_master_workbook(
        settings.data_file,
        default_client_id=settings.default_client_id,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the POS ledger data file")
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

    print("--- POS Ledger Setup ---")
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
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
