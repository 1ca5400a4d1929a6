"""Data access layer for the retail POS.

This module provides low-level helpers that read from and write to the store
master workbook. Business rules belong in :mod:`retail_pos.core_logic`.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, atomically persisting and reloading the Excel
   file.
3. Sheet operations: loading typed records and appending, updating or removing
   individual rows.
"""


from __future__ import annotations

import configparser
import tempfile
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import DEFAULT_CUSTOMER_NAME, SheetName


CONFIG_FILE_NAME = "config.ini"
CATEGORIES_SHEET = SheetName.CATEGORIES.value
PRODUCTS_SHEET = SheetName.PRODUCTS.value
USERS_SHEET = SheetName.USERS.value
SALES_SHEET = SheetName.SALES.value
SALE_ITEMS_SHEET = SheetName.SALE_ITEMS.value
TRUE_TEXT = frozenset({"true", "yes", "y", "1"})
FALSE_TEXT = frozenset({"false", "no", "n", "0", ""})

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    CATEGORIES_SHEET: [
        "CategoryID",
        "CategoryName",
        "Description",
        "Status",
        "CreatedAt",
        "UpdatedAt",
    ],
    PRODUCTS_SHEET: [
        "ProductID",
        "ProductName",
        "SKU",
        "CategoryID",
        "Price",
        "Stock",
        "ReorderPoint",
        "Description",
        "LastUpdated",
    ],
    USERS_SHEET: [
        "UserID",
        "Username",
        "Role",
        "IsActive",
    ],
    SALES_SHEET: [
        "SaleID",
        "CreatedAt",
        "Subtotal",
        "DiscountPercent",
        "Discount",
        "TaxPercent",
        "Tax",
        "Total",
        "PaymentMethod",
        "CustomerName",
        "CashierID",
        "CashierName",
    ],
    SALE_ITEMS_SHEET: [
        "SaleID",
        "LineNumber",
        "ProductID",
        "ProductName",
        "SKU",
        "Price",
        "Quantity",
        "LineTotal",
    ],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    default_username: str
    default_customer_name: str = DEFAULT_CUSTOMER_NAME


@dataclass(frozen=True)
class CategoryRow:
    """In-memory view of a row from the ``Categories`` sheet."""

    category_id: int
    name: str
    description: str
    status: str
    created_at: str
    updated_at: Optional[str] = None


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: int
    name: str
    sku: str
    category_id: int
    price: Decimal
    stock: int
    reorder_point: int
    description: str
    last_updated: str

    @property
    def is_low_stock(self) -> bool:
        return self.stock <= self.reorder_point


@dataclass(frozen=True)
class UserRow:
    """In-memory view of a row from the ``Users`` sheet."""

    user_id: int
    username: str
    role: str
    is_active: bool


@dataclass(frozen=True)
class SaleItemRow:
    """One priced line of a committed sale, captured at sale time."""

    sale_id: int
    line_number: int
    product_id: int
    product_name: str
    sku: str
    price: Decimal
    quantity: int
    total: Decimal


@dataclass(frozen=True)
class SaleRow:
    """A committed sale: the ``Sales`` header joined with its ``SaleItems``."""

    sale_id: int
    created_at: datetime
    items: tuple[SaleItemRow, ...]
    subtotal: Decimal
    discount_percent: Decimal
    discount: Decimal
    tax_percent: Decimal
    tax: Decimal
    total: Decimal
    payment_method: str
    customer_name: str
    cashier_id: int
    cashier_name: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Validation of required entries happens in :func:`parse_settings`.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are expanded against ``base_path`` (or the
    current working directory) and resolved to an absolute path. The
    ``[Defaults] CustomerName`` entry is optional.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        default_username = parser.get("Defaults", "DefaultUser")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    customer_name = parser.get(
        "Defaults", "CustomerName", fallback=DEFAULT_CUSTOMER_NAME)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        default_username=default_username,
        default_customer_name=customer_name or DEFAULT_CUSTOMER_NAME,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to ``destination`` as a single atomic replace.

    The workbook is serialized into a temporary file inside the destination
    directory and then renamed over the target, so readers only ever see the
    previous file or the complete new one. Products and sales live in the same
    file, which makes one save the durable unit for a whole sale.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the workbook.

    Raises:
        OSError: If the temporary file cannot be written or renamed. The
            original file is left untouched in that case.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        delete=False, dir=str(dest.parent), prefix=f".{dest.stem}-", suffix=".xlsx"
    ) as tmp:
        tmp_path = Path(tmp.name)
    try:
        workbook.save(tmp_path)
        tmp_path.replace(dest)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    log.debug("Workbook written to '%s'", dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet_rows(workbook: Workbook, sheet_name: str) -> Iterable[tuple]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_categories(workbook: Workbook) -> Iterable[CategoryRow]:
    """Iterate over category records stored on the ``Categories`` worksheet."""

    for raw in _iter_sheet_rows(workbook, CATEGORIES_SHEET):
        yield deserialize_category(raw)


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    The header row and fully empty rows are skipped. Each remaining row is
    converted into a :class:`ProductRow` via :func:`deserialize_product`.

    Args:
        workbook (Workbook): Workbook containing the ``Products`` sheet.

    Yields:
        ProductRow: One structured row for each meaningful record in the sheet.
    """

    for raw in _iter_sheet_rows(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_users(workbook: Workbook) -> Iterable[UserRow]:
    """Iterate over the ``Users`` worksheet and yield typed records."""

    for raw in _iter_sheet_rows(workbook, USERS_SHEET):
        yield deserialize_user(raw)


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Stream committed sales with their line items attached.

    ``SaleItems`` rows are grouped by ``SaleID`` first and ordered by their
    ``LineNumber``; each ``Sales`` header row is then deserialized together
    with its group. Sales are yielded in sheet order, which is commit order.

    Args:
        workbook (Workbook): Workbook containing the sales sheets.

    Yields:
        SaleRow: Immutable sale record including its items.
    """

    items_by_sale: Dict[int, List[SaleItemRow]] = defaultdict(list)
    for raw in _iter_sheet_rows(workbook, SALE_ITEMS_SHEET):
        item = deserialize_sale_item(raw)
        items_by_sale[item.sale_id].append(item)

    for raw in _iter_sheet_rows(workbook, SALES_SHEET):
        sale_id = int(raw[0])
        items = sorted(items_by_sale.get(sale_id, []), key=lambda row: row.line_number)
        yield deserialize_sale(raw, items)


def append_category(workbook: Workbook, record: CategoryRow) -> None:
    """Append a category record to the ``Categories`` worksheet."""

    workbook[CATEGORIES_SHEET].append(serialize_category(record))


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet.

    Args:
        workbook (Workbook): Workbook whose products sheet should be modified.
        record (ProductRow): Structured product data ready for persistence.
    """

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_user(workbook: Workbook, record: UserRow) -> None:
    """Append a user record to the ``Users`` worksheet."""

    workbook[USERS_SHEET].append(serialize_user(record))


def append_sale(workbook: Workbook, record: SaleRow) -> None:
    """Append a sale header and all of its items.

    One row per item goes to ``SaleItems`` first and the header goes to
    ``Sales`` last, so a header is never present without its items.

    Args:
        workbook (Workbook): Workbook containing the sales sheets.
        record (SaleRow): Sale to persist.
    """

    items_sheet = workbook[SALE_ITEMS_SHEET]
    for item in record.items:
        items_sheet.append(serialize_sale_item(item))
    workbook[SALES_SHEET].append(serialize_sale(record))


def _header_map(workbook: Workbook, sheet_name: str) -> Dict[Any, int]:
    sheet = workbook[sheet_name]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def update_product(workbook: Workbook, product_id: int, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing product.

    Only the specified fields are written; other columns are untouched.

    Args:
        workbook (Workbook): Workbook containing the products sheet.
        product_id (int): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the product or any referenced column cannot be found.
    """

    _update_row(workbook, PRODUCTS_SHEET, "ProductID", product_id, field_values)


def update_category(workbook: Workbook, category_id: int, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing category.

    Raises:
        KeyError: If the category or any referenced column cannot be found.
    """

    _update_row(workbook, CATEGORIES_SHEET, "CategoryID", category_id, field_values)


def _update_row(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: Any,
    field_values: Mapping[str, Any],
) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{key_column} not found: {key_value}")

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)
    unknown = [field for field in field_values if field not in header_map]
    if unknown:
        raise KeyError(f"Unknown {sheet_name} field(s): {', '.join(unknown)}")

    for field, value in field_values.items():
        if isinstance(value, Decimal):
            value = _money_cell(value)
        sheet.cell(row=row_index, column=header_map[field], value=value)


def remove_category(workbook: Workbook, category_id: int) -> None:
    """Delete the ``Categories`` row for ``category_id``.

    Raises:
        KeyError: If no row carries the identifier.
    """

    _remove_single_row(workbook, CATEGORIES_SHEET, "CategoryID", category_id)


def remove_product(workbook: Workbook, product_id: int) -> None:
    """Delete the ``Products`` row for ``product_id``.

    Raises:
        KeyError: If no row carries the identifier.
    """

    _remove_single_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)


def remove_sale(workbook: Workbook, sale_id: int) -> None:
    """Delete a sale header and its items.

    Sales are append-only; this exists solely so an unsaved commit can be
    rolled back in memory after a failed save. The header goes first, the
    reverse of :func:`append_sale`.
    """

    for sheet_name in (SALES_SHEET, SALE_ITEMS_SHEET):
        sheet = workbook[sheet_name]
        key_col = _header_map(workbook, sheet_name)["SaleID"]
        # bottom-up so earlier indices stay valid
        for row_idx in range(sheet.max_row, 1, -1):
            if sheet.cell(row=row_idx, column=key_col).value == sale_id:
                sheet.delete_rows(row_idx, 1)


def _remove_single_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: Any) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{key_column} not found: {key_value}")
    workbook[sheet_name].delete_rows(row_index, 1)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: Any) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title of the column that stores the key.
        key_value (Any): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(workbook, sheet_name)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def serialize_category(record: CategoryRow) -> list[object]:
    """Convert a category dataclass into the worksheet column ordering."""

    return [
        record.category_id,
        record.name,
        record.description,
        record.status,
        record.created_at,
        record.updated_at,
    ]


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering.

    Args:
        record (ProductRow): Structured product data to transform.

    Returns:
        list[object]: Values in ``SHEET_COLUMNS["Products"]`` order.
    """

    return [
        record.product_id,
        record.name,
        record.sku,
        record.category_id,
        _money_cell(record.price),
        record.stock,
        record.reorder_point,
        record.description,
        record.last_updated,
    ]


def serialize_user(record: UserRow) -> list[object]:
    return [record.user_id, record.username, record.role, record.is_active]


def serialize_sale(record: SaleRow) -> list[object]:
    """Convert a sale header into the ``Sales`` column order.

    ``created_at`` is written as an ISO-8601 string with its UTC offset so the
    instant stays unambiguous once it is read back. Amounts are written as
    decimal text; see :func:`_money_cell`.
    """

    return [
        record.sale_id,
        record.created_at.isoformat(),
        _money_cell(record.subtotal),
        _money_cell(record.discount_percent),
        _money_cell(record.discount),
        _money_cell(record.tax_percent),
        _money_cell(record.tax),
        _money_cell(record.total),
        record.payment_method,
        record.customer_name,
        record.cashier_id,
        record.cashier_name,
    ]


def serialize_sale_item(record: SaleItemRow) -> list[object]:
    return [
        record.sale_id,
        record.line_number,
        record.product_id,
        record.product_name,
        record.sku,
        _money_cell(record.price),
        record.quantity,
        _money_cell(record.total),
    ]


def _money_cell(amount: Decimal) -> str:
    """Render an amount as exact decimal text for a worksheet cell.

    Numeric cells are stored as IEEE doubles and would truncate unrounded
    amounts, so money columns hold the ``str`` of the :class:`Decimal`.
    """

    return str(amount)


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _to_bool(raw: object) -> bool:
    """Interpret a flag cell typed as a boolean, a 0/1 number or text.

    Raises:
        ValueError: If the cell holds anything else.
    """

    if raw is None:
        return False
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)) and raw in (0, 1):
        return bool(raw)
    text = str(raw).strip().lower()
    if text in TRUE_TEXT:
        return True
    if text in FALSE_TEXT:
        return False
    raise ValueError(f"Not a boolean flag: {raw!r}")


def _to_text(raw: object) -> str:
    return str(raw) if raw is not None else ""


def parse_timestamp(raw: object) -> datetime:
    """Parse a stored timestamp into an aware UTC ``datetime``.

    Cells normally hold ISO strings, but a value Excel turned into a native
    date is accepted as well. Naive values are taken to be UTC.
    """

    if isinstance(raw, datetime):
        moment = raw
    else:
        moment = datetime.fromisoformat(str(raw))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment


def deserialize_category(raw_row: Sequence[object]) -> CategoryRow:
    """Convert a raw worksheet row into a typed category record."""

    category_id, name, description, status, created_at, updated_at = raw_row[:6]
    return CategoryRow(
        category_id=int(category_id),
        name=_to_text(name),
        description=_to_text(description),
        status=_to_text(status),
        created_at=_to_text(created_at),
        updated_at=str(updated_at) if updated_at is not None else None,
    )


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Numeric cells become :class:`~decimal.Decimal` (price) or ``int`` (stock,
    reorder point, identifiers) so Excel's float storage never leaks into the
    business layer.

    Args:
        raw_row (Sequence[object]): Raw cell values from the worksheet row.

    Returns:
        ProductRow: Dataclass with consistent Python representations.
    """

    (
        product_id,
        name,
        sku,
        category_id,
        price_raw,
        stock_raw,
        reorder_raw,
        description,
        last_updated,
    ) = raw_row[:9]

    return ProductRow(
        product_id=int(product_id),
        name=_to_text(name),
        sku=_to_text(sku),
        category_id=int(category_id),
        price=_to_decimal(price_raw, "0.00"),
        stock=int(stock_raw) if stock_raw is not None else 0,
        reorder_point=int(reorder_raw) if reorder_raw is not None else 0,
        description=_to_text(description),
        last_updated=_to_text(last_updated),
    )


def deserialize_user(raw_row: Sequence[object]) -> UserRow:
    user_id, username, role, is_active = raw_row[:4]
    return UserRow(
        user_id=int(user_id),
        username=_to_text(username),
        role=_to_text(role),
        is_active=_to_bool(is_active),
    )


def deserialize_sale_item(raw_row: Sequence[object]) -> SaleItemRow:
    """Convert a raw ``SaleItems`` row into a typed line item."""

    sale_id, line_number, product_id, product_name, sku, price, quantity, total = raw_row[:8]
    return SaleItemRow(
        sale_id=int(sale_id),
        line_number=int(line_number),
        product_id=int(product_id),
        product_name=_to_text(product_name),
        sku=_to_text(sku),
        price=_to_decimal(price, "0.00"),
        quantity=int(quantity),
        total=_to_decimal(total, "0.00"),
    )


def deserialize_sale(raw_row: Sequence[object], items: Sequence[SaleItemRow]) -> SaleRow:
    """Convert a raw ``Sales`` row plus its items into a :class:`SaleRow`.

    Args:
        raw_row (Sequence[object]): Raw cell values from the ``Sales`` sheet.
        items (Sequence[SaleItemRow]): Already deserialized items of the sale
            in line order.

    Returns:
        SaleRow: Immutable sale record.
    """

    (
        sale_id,
        created_at,
        subtotal,
        discount_percent,
        discount,
        tax_percent,
        tax,
        total,
        payment_method,
        customer_name,
        cashier_id,
        cashier_name,
    ) = raw_row[:12]

    return SaleRow(
        sale_id=int(sale_id),
        created_at=parse_timestamp(created_at),
        items=tuple(items),
        subtotal=_to_decimal(subtotal, "0.00"),
        discount_percent=_to_decimal(discount_percent),
        discount=_to_decimal(discount, "0.00"),
        tax_percent=_to_decimal(tax_percent),
        tax=_to_decimal(tax, "0.00"),
        total=_to_decimal(total, "0.00"),
        payment_method=_to_text(payment_method),
        customer_name=_to_text(customer_name),
        cashier_id=int(cashier_id) if cashier_id is not None else 0,
        cashier_name=_to_text(cashier_name),
    )
