"""Utility for initializing the retail POS master workbook.

The module doubles as a script (``retail-pos-setup``) and as a library used by
tests or other tooling. Shared helpers keep the workbook bootstrap logic
consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .constants import CategoryStatus, Role


DEFAULT_USERS: Sequence[data_manager.UserRow] = (
    data_manager.UserRow(user_id=1, username="admin", role=Role.ADMIN.value, is_active=True),
    data_manager.UserRow(user_id=2, username="cashier", role=Role.CASHIER.value, is_active=True),
)

SAMPLE_CATEGORIES: Sequence[tuple[int, str, str]] = (
    (1, "Electronics", "Electronic devices and accessories"),
    (2, "Clothing", "Apparel and fashion items"),
    (3, "Books", "Books and educational materials"),
)

# (id, name, sku, category, price, stock, reorder point, description)
SAMPLE_PRODUCTS: Sequence[tuple[int, str, str, int, str, int, int, str]] = (
    (1, "Smartphone", "SP001", 1, "699.99", 25, 10, "Latest model smartphone"),
    (2, "Laptop", "LP001", 1, "1299.99", 15, 5, "High-performance laptop"),
    (3, "T-Shirt", "TS001", 2, "19.99", 100, 20, "Cotton t-shirt"),
)


def load_settings(config_path: Path) -> data_manager.ConfigSettings:
    """Read ``config.ini`` and produce :class:`~retail_pos.data_manager.ConfigSettings`.

    Relative paths inside the config file are resolved against the config
    file's directory.
    """

    parser = data_manager.read_config(config_path)
    return data_manager.parse_settings(parser, base_path=config_path.expanduser().resolve().parent)


def create_master_workbook(
    destination: Path,
    *,
    include_sample_catalog: bool = True,
    sheet_columns: Mapping[str, Sequence[str]] = data_manager.SHEET_COLUMNS,
    users: Sequence[data_manager.UserRow] = DEFAULT_USERS,
    overwrite: bool = False,
) -> Path:
    """Create the store master workbook at ``destination``.

    Every sheet receives a bold header row. The default users are always
    written; the sample categories and products only when
    ``include_sample_catalog`` is true. When ``overwrite`` is ``False`` (the
    default) this function raises ``FileExistsError`` if the target already
    exists.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

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

    for user in users:
        data_manager.append_user(workbook, user)

    if include_sample_catalog:
        seeded_at = datetime.now(UTC).isoformat()
        for category_id, name, description in SAMPLE_CATEGORIES:
            data_manager.append_category(
                workbook,
                data_manager.CategoryRow(
                    category_id=category_id,
                    name=name,
                    description=description,
                    status=CategoryStatus.ACTIVE.value,
                    created_at=seeded_at,
                ),
            )
        for product_id, name, sku, category_id, price, stock, reorder_point, description in SAMPLE_PRODUCTS:
            data_manager.append_product(
                workbook,
                data_manager.ProductRow(
                    product_id=product_id,
                    name=name,
                    sku=sku,
                    category_id=category_id,
                    price=Decimal(price),
                    stock=stock,
                    reorder_point=reorder_point,
                    description=description,
                    last_updated=seeded_at,
                ),
            )

    data_manager.save_workbook(workbook, destination)
    log.info("Created master workbook at '%s'", destination)
    return destination


def run_from_config(config_path: Path, *, include_sample_catalog: bool = True, overwrite: bool = False) -> Path:
    """Create the workbook named by ``config.ini``'s ``DataFile`` entry."""

    settings = load_settings(config_path)
    return create_master_workbook(
        settings.data_file,
        include_sample_catalog=include_sample_catalog,
        overwrite=overwrite,
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(
        prog="retail-pos-setup",
        description="Initialize the retail POS data file",
    )
    parser.add_argument(
        "--config",
        default=data_manager.CONFIG_FILE_NAME,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    parser.add_argument(
        "--empty",
        action="store_true",
        help="Skip the sample categories and products.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- Retail POS Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(
            config_path,
            include_sample_catalog=not args.empty,
            overwrite=args.force,
        )
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
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
