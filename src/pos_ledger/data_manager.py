"""Data access layer for the POS ledger.

This module provides low-level helpers that read from and write to the
master workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Collection operations: every record type lives on its own worksheet and is
   accessed through the same small vocabulary (``get_all``, ``add``,
   ``update``, ``delete_by_id``, ``bulk_put``, ``clear``) driven by a
   :class:`Collection` descriptor.
"""


from __future__ import annotations

import configparser
import json
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional, Sequence

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import SheetName


CONFIG_FILE_NAME = "config.ini"
DEFAULT_LOW_STOCK_THRESHOLD = 5


class StoreFailure(RuntimeError):
    """Raised when the workbook rejects a read or write."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    default_client_id: str
    low_stock_threshold: int = DEFAULT_LOW_STOCK_THRESHOLD


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    name: str
    sku: str
    category: str
    supplier_id: str
    stock: int
    low_stock_threshold: int
    cost_price: Decimal
    selling_price: Decimal
    description: Optional[str] = None


@dataclass(frozen=True)
class SupplierRow:
    supplier_id: str
    name: str
    contact_name: str
    phone: str
    email: str


@dataclass(frozen=True)
class ClientRow:
    client_id: str
    name: str
    address: str
    phone: str
    email: str
    document_number: str


@dataclass(frozen=True)
class CategoryRow:
    category_id: str
    name: str


@dataclass(frozen=True)
class StockHistoryRow:
    """In-memory view of a row from the ``StockHistory`` sheet."""

    entry_id: str
    product_id: str
    timestamp_iso: str
    movement_type: str
    quantity_change: int
    new_stock_level: int
    notes: Optional[str] = None


@dataclass(frozen=True)
class SaleItem:
    """One sold line; ``cost_price`` is the cost snapshot taken at commit."""

    product_id: str
    quantity: int
    unit_price: Decimal
    cost_price: Decimal


@dataclass(frozen=True)
class SaleRow:
    sale_id: str
    timestamp_iso: str
    items: tuple[SaleItem, ...]
    total: Decimal
    customer_name: str
    customer_phone: str
    payment_method: str
    client_id: Optional[str]
    origin: str
    status: str


@dataclass(frozen=True)
class PurchaseItem:
    product_id: str
    quantity: int
    unit_cost: Decimal


@dataclass(frozen=True)
class PurchaseRow:
    purchase_id: str
    timestamp_iso: str
    supplier_id: str
    items: tuple[PurchaseItem, ...]
    total: Decimal
    status: str


@dataclass(frozen=True)
class CartItem:
    product_id: str
    name: str
    price: Decimal
    quantity: int


@dataclass(frozen=True)
class OnlineOrderRow:
    order_id: str
    timestamp_iso: str
    customer_name: str
    customer_email: str
    customer_phone: str
    items: tuple[CartItem, ...]
    total: Decimal
    status: str


@dataclass(frozen=True)
class Collection:
    """Describe how one record type maps onto a worksheet.

    The first entry of ``columns`` is always the primary key column and
    ``key_of`` extracts the matching value from a record.
    """

    sheet_name: str
    columns: tuple[str, ...]
    serialize: Callable[[Any], list[object]]
    deserialize: Callable[[Sequence[object]], Any]
    key_of: Callable[[Any], str]

    @property
    def key_column(self) -> str:
        return self.columns[0]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is authoritative.

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

    Relative ``DataFile`` entries are expanded against ``base_path`` when
    provided, or against the current working directory as a fallback. The
    optional ``LowStockThreshold`` falls back to
    ``DEFAULT_LOW_STOCK_THRESHOLD``.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If ``LowStockThreshold`` is not an integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
        default_client = parser.get("Defaults", "DefaultClient")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    threshold = parser.getint(
        "Defaults", "LowStockThreshold", fallback=DEFAULT_LOW_STOCK_THRESHOLD)

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        default_client_id=default_client,
        low_stock_threshold=threshold,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.

    Raises:
        StoreFailure: If the file system refuses the write.
    """

    dest = Path(destination).expanduser().resolve()
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(dest)
    except OSError as exc:
        log.error("Unable to save workbook '%s': %s", dest, exc)
        raise StoreFailure(f"Unable to save workbook {dest}: {exc}") from exc


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


# ---------------------------------------------------------------------------
# Collection operations
# ---------------------------------------------------------------------------


def _sheet(workbook: Workbook, collection: Collection) -> Worksheet:
    try:
        return workbook[collection.sheet_name]
    except KeyError as exc:
        raise StoreFailure(f"Missing worksheet: {collection.sheet_name}") from exc


def iter_records(workbook: Workbook, collection: Collection) -> Iterator[Any]:
    """Iterate over the records stored on the collection's worksheet.

    The header row and fully empty rows are skipped.
    """

    sheet = _sheet(workbook, collection)
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if any(cell is not None for cell in raw):
            yield collection.deserialize(raw)


def get_all(workbook: Workbook, collection: Collection) -> list[Any]:
    """Return every record of ``collection`` in sheet order."""

    return list(iter_records(workbook, collection))


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_cells = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def _find_row(workbook: Workbook, collection: Collection, key_value: str) -> Optional[int]:
    _sheet(workbook, collection)
    try:
        return locate_row(workbook, collection.sheet_name, collection.key_column, key_value)
    except KeyError as exc:
        raise StoreFailure(str(exc)) from exc


def _write_row(sheet: Worksheet, row_index: int, values: Sequence[object]) -> None:
    for column, value in enumerate(values, start=1):
        sheet.cell(row=row_index, column=column, value=value)


def add(workbook: Workbook, collection: Collection, record: Any) -> None:
    """Append ``record`` to its worksheet.

    Raises:
        StoreFailure: If a record with the same key already exists.
    """

    key = collection.key_of(record)
    if _find_row(workbook, collection, key) is not None:
        raise StoreFailure(f"Duplicate key '{key}' in {collection.sheet_name}")
    _sheet(workbook, collection).append(collection.serialize(record))


def update(workbook: Workbook, collection: Collection, record: Any) -> None:
    """Overwrite the stored row that shares ``record``'s key.

    Raises:
        StoreFailure: If no row with that key exists.
    """

    key = collection.key_of(record)
    row_index = _find_row(workbook, collection, key)
    if row_index is None:
        raise StoreFailure(f"Record '{key}' not found in {collection.sheet_name}")
    _write_row(_sheet(workbook, collection), row_index, collection.serialize(record))


def delete_by_id(workbook: Workbook, collection: Collection, key: str) -> bool:
    """Remove the row keyed by ``key``; returns ``False`` when nothing matched."""

    row_index = _find_row(workbook, collection, key)
    if row_index is None:
        return False
    _sheet(workbook, collection).delete_rows(row_index)
    return True


def bulk_put(workbook: Workbook, collection: Collection, records: Iterable[Any]) -> int:
    """Insert or overwrite every record in ``records``; returns the count."""

    sheet = _sheet(workbook, collection)
    count = 0
    for record in records:
        row_index = _find_row(workbook, collection, collection.key_of(record))
        if row_index is None:
            sheet.append(collection.serialize(record))
        else:
            _write_row(sheet, row_index, collection.serialize(record))
        count += 1
    return count


def clear(workbook: Workbook, collection: Collection) -> None:
    """Drop every data row while keeping the header row."""

    sheet = _sheet(workbook, collection)
    if sheet.max_row > 1:
        sheet.delete_rows(2, sheet.max_row - 1)


# ---------------------------------------------------------------------------
# Cell conversions
# ---------------------------------------------------------------------------


def _text(raw: object) -> str:
    return str(raw) if raw is not None else ""


def _optional_text(raw: object) -> Optional[str]:
    if raw is None or raw == "":
        return None
    return str(raw)


def _decimal(raw: object, default: str = "0.00") -> Decimal:
    return Decimal(str(raw)) if raw is not None and raw != "" else Decimal(default)


def _int(raw: object) -> int:
    if raw is None or raw == "":
        return 0
    return int(Decimal(str(raw)))


def _dump_items(items: Iterable[Any], fields: Sequence[str]) -> str:
    """Encode embedded line items as JSON, keeping decimals as strings."""

    payload = []
    for item in items:
        entry = {}
        for name in fields:
            value = getattr(item, name)
            entry[name] = str(value) if isinstance(value, Decimal) else value
        payload.append(entry)
    return json.dumps(payload)


def _load_items(raw: object) -> list[dict[str, Any]]:
    if raw is None or raw == "":
        return []
    return json.loads(str(raw))


# ---------------------------------------------------------------------------
# Row serializers
# ---------------------------------------------------------------------------


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering."""

    return [
        record.product_id,
        record.name,
        record.sku,
        record.category,
        record.supplier_id,
        record.stock,
        record.low_stock_threshold,
        record.cost_price,
        record.selling_price,
        record.description,
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Numeric values become ``int``/``Decimal`` and text fields are coerced to
    ``str`` so Excel's number guessing never leaks into the domain.
    """

    return ProductRow(
        product_id=_text(raw_row[0]),
        name=_text(raw_row[1]),
        sku=_text(raw_row[2]),
        category=_text(raw_row[3]),
        supplier_id=_text(raw_row[4]),
        stock=_int(raw_row[5]),
        low_stock_threshold=_int(raw_row[6]),
        cost_price=_decimal(raw_row[7]),
        selling_price=_decimal(raw_row[8]),
        description=_optional_text(raw_row[9]),
    )


def serialize_supplier(record: SupplierRow) -> list[object]:
    return [record.supplier_id, record.name, record.contact_name, record.phone, record.email]


def deserialize_supplier(raw_row: Sequence[object]) -> SupplierRow:
    return SupplierRow(*(_text(value) for value in raw_row[:5]))


def serialize_client(record: ClientRow) -> list[object]:
    return [
        record.client_id,
        record.name,
        record.address,
        record.phone,
        record.email,
        record.document_number,
    ]


def deserialize_client(raw_row: Sequence[object]) -> ClientRow:
    return ClientRow(*(_text(value) for value in raw_row[:6]))


def serialize_category(record: CategoryRow) -> list[object]:
    return [record.category_id, record.name]


def deserialize_category(raw_row: Sequence[object]) -> CategoryRow:
    return CategoryRow(category_id=_text(raw_row[0]), name=_text(raw_row[1]))


def serialize_stock_history(record: StockHistoryRow) -> list[object]:
    return [
        record.entry_id,
        record.product_id,
        record.timestamp_iso,
        record.movement_type,
        record.quantity_change,
        record.new_stock_level,
        record.notes,
    ]


def deserialize_stock_history(raw_row: Sequence[object]) -> StockHistoryRow:
    """Convert a raw ``StockHistory`` row into a :class:`StockHistoryRow`."""

    return StockHistoryRow(
        entry_id=_text(raw_row[0]),
        product_id=_text(raw_row[1]),
        timestamp_iso=_text(raw_row[2]),
        movement_type=_text(raw_row[3]),
        quantity_change=_int(raw_row[4]),
        new_stock_level=_int(raw_row[5]),
        notes=_optional_text(raw_row[6]),
    )


SALE_ITEM_FIELDS = ("product_id", "quantity", "unit_price", "cost_price")
PURCHASE_ITEM_FIELDS = ("product_id", "quantity", "unit_cost")
CART_ITEM_FIELDS = ("product_id", "name", "price", "quantity")


def serialize_sale(record: SaleRow) -> list[object]:
    """Convert a sale into its row; line items are stored as JSON text."""

    return [
        record.sale_id,
        record.timestamp_iso,
        _dump_items(record.items, SALE_ITEM_FIELDS),
        record.total,
        record.customer_name,
        record.customer_phone,
        record.payment_method,
        record.client_id,
        record.origin,
        record.status,
    ]


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    items = tuple(
        SaleItem(
            product_id=str(entry["product_id"]),
            quantity=int(entry["quantity"]),
            unit_price=Decimal(str(entry["unit_price"])),
            cost_price=Decimal(str(entry["cost_price"])),
        )
        for entry in _load_items(raw_row[2])
    )
    return SaleRow(
        sale_id=_text(raw_row[0]),
        timestamp_iso=_text(raw_row[1]),
        items=items,
        total=_decimal(raw_row[3]),
        customer_name=_text(raw_row[4]),
        customer_phone=_text(raw_row[5]),
        payment_method=_text(raw_row[6]),
        client_id=_optional_text(raw_row[7]),
        origin=_text(raw_row[8]),
        status=_text(raw_row[9]),
    )


def serialize_purchase(record: PurchaseRow) -> list[object]:
    return [
        record.purchase_id,
        record.timestamp_iso,
        record.supplier_id,
        _dump_items(record.items, PURCHASE_ITEM_FIELDS),
        record.total,
        record.status,
    ]


def deserialize_purchase(raw_row: Sequence[object]) -> PurchaseRow:
    items = tuple(
        PurchaseItem(
            product_id=str(entry["product_id"]),
            quantity=int(entry["quantity"]),
            unit_cost=Decimal(str(entry["unit_cost"])),
        )
        for entry in _load_items(raw_row[3])
    )
    return PurchaseRow(
        purchase_id=_text(raw_row[0]),
        timestamp_iso=_text(raw_row[1]),
        supplier_id=_text(raw_row[2]),
        items=items,
        total=_decimal(raw_row[4]),
        status=_text(raw_row[5]),
    )


def serialize_cart_item(record: CartItem) -> list[object]:
    return [record.product_id, record.name, record.price, record.quantity]


def deserialize_cart_item(raw_row: Sequence[object]) -> CartItem:
    return CartItem(
        product_id=_text(raw_row[0]),
        name=_text(raw_row[1]),
        price=_decimal(raw_row[2]),
        quantity=_int(raw_row[3]),
    )


def _cart_items_from_json(raw: object) -> tuple[CartItem, ...]:
    return tuple(
        CartItem(
            product_id=str(entry["product_id"]),
            name=str(entry["name"]),
            price=Decimal(str(entry["price"])),
            quantity=int(entry["quantity"]),
        )
        for entry in _load_items(raw)
    )


def serialize_online_order(record: OnlineOrderRow) -> list[object]:
    return [
        record.order_id,
        record.timestamp_iso,
        record.customer_name,
        record.customer_email,
        record.customer_phone,
        _dump_items(record.items, CART_ITEM_FIELDS),
        record.total,
        record.status,
    ]


def deserialize_online_order(raw_row: Sequence[object]) -> OnlineOrderRow:
    return OnlineOrderRow(
        order_id=_text(raw_row[0]),
        timestamp_iso=_text(raw_row[1]),
        customer_name=_text(raw_row[2]),
        customer_email=_text(raw_row[3]),
        customer_phone=_text(raw_row[4]),
        items=_cart_items_from_json(raw_row[5]),
        total=_decimal(raw_row[6]),
        status=_text(raw_row[7]),
    )


PRODUCTS = Collection(
    sheet_name=SheetName.PRODUCTS.value,
    columns=(
        "ProductID",
        "Name",
        "SKU",
        "Category",
        "SupplierID",
        "Stock",
        "LowStockThreshold",
        "CostPrice",
        "SellingPrice",
        "Description",
    ),
    serialize=serialize_product,
    deserialize=deserialize_product,
    key_of=lambda record: record.product_id,
)

SUPPLIERS = Collection(
    sheet_name=SheetName.SUPPLIERS.value,
    columns=("SupplierID", "Name", "ContactName", "Phone", "Email"),
    serialize=serialize_supplier,
    deserialize=deserialize_supplier,
    key_of=lambda record: record.supplier_id,
)

CLIENTS = Collection(
    sheet_name=SheetName.CLIENTS.value,
    columns=("ClientID", "Name", "Address", "Phone", "Email", "DocumentNumber"),
    serialize=serialize_client,
    deserialize=deserialize_client,
    key_of=lambda record: record.client_id,
)

CATEGORIES = Collection(
    sheet_name=SheetName.CATEGORIES.value,
    columns=("CategoryID", "Name"),
    serialize=serialize_category,
    deserialize=deserialize_category,
    key_of=lambda record: record.category_id,
)

SALES = Collection(
    sheet_name=SheetName.SALES.value,
    columns=(
        "SaleID",
        "Timestamp",
        "Items",
        "Total",
        "CustomerName",
        "CustomerPhone",
        "PaymentMethod",
        "ClientID",
        "Origin",
        "Status",
    ),
    serialize=serialize_sale,
    deserialize=deserialize_sale,
    key_of=lambda record: record.sale_id,
)

PURCHASES = Collection(
    sheet_name=SheetName.PURCHASES.value,
    columns=("PurchaseID", "Timestamp", "SupplierID", "Items", "Total", "Status"),
    serialize=serialize_purchase,
    deserialize=deserialize_purchase,
    key_of=lambda record: record.purchase_id,
)

ONLINE_ORDERS = Collection(
    sheet_name=SheetName.ONLINE_ORDERS.value,
    columns=(
        "OrderID",
        "Timestamp",
        "CustomerName",
        "CustomerEmail",
        "CustomerPhone",
        "Items",
        "Total",
        "Status",
    ),
    serialize=serialize_online_order,
    deserialize=deserialize_online_order,
    key_of=lambda record: record.order_id,
)

CART = Collection(
    sheet_name=SheetName.CART.value,
    columns=("ProductID", "Name", "Price", "Quantity"),
    serialize=serialize_cart_item,
    deserialize=deserialize_cart_item,
    key_of=lambda record: record.product_id,
)

STOCK_HISTORY = Collection(
    sheet_name=SheetName.STOCK_HISTORY.value,
    columns=(
        "EntryID",
        "ProductID",
        "Timestamp",
        "MovementType",
        "QuantityChange",
        "NewStockLevel",
        "Notes",
    ),
    serialize=serialize_stock_history,
    deserialize=deserialize_stock_history,
    key_of=lambda record: record.entry_id,
)

COLLECTIONS: tuple[Collection, ...] = (
    PRODUCTS,
    SUPPLIERS,
    CLIENTS,
    CATEGORIES,
    SALES,
    PURCHASES,
    ONLINE_ORDERS,
    CART,
    STOCK_HISTORY,
)
