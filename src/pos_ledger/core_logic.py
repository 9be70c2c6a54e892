"""Business logic layer for the POS ledger.

This module contains the stock ledger engine and the workflows built on top
of it. Product ``stock`` and ``cost_price`` are only ever written through
:func:`apply_stock_delta` and :func:`apply_cost_update`; every stock change is
paired with an append-only ``StockHistory`` entry so that replaying a
product's history from zero reproduces its current stock.

All I/O goes through the Data Access Layer (DAL). Compound operations are
best-effort per line in memory: when a later line fails, earlier lines stay
applied on the in-memory workbook. Nothing reaches disk until
:func:`persist_context` runs, and :func:`refresh_context` drops partial
effects.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    MovementType,
    PaymentMethod,
    PurchaseStatus,
    SaleOrigin,
    SaleStatus,
)
from .data_manager import (
    CategoryRow,
    ClientRow,
    Collection,
    ProductRow,
    PurchaseItem,
    PurchaseRow,
    SaleItem,
    SaleRow,
    StockHistoryRow,
    StoreFailure,  # noqa: F401  re-exported for callers
    SupplierRow,
)


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, sale, purchase or party is unknown."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised when command input is rejected before any write happens."""


class InvalidStateError(BusinessRuleViolation):
    """Raised when a record is not in the lifecycle state an operation needs."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class SaleLine:
    """One requested sale line before the cost snapshot is attached."""

    product_id: str
    quantity: int
    unit_price: Decimal


@dataclass(frozen=True)
class SaleCommand:
    """User intent for committing a sale.

    Either ``client_id`` names a registered client or ``customer_name`` (and
    optionally ``customer_phone``) identifies a casual customer.
    """

    items: Sequence[SaleLine]
    payment_method: PaymentMethod
    origin: SaleOrigin = SaleOrigin.POS
    client_id: Optional[str] = None
    customer_name: str = ""
    customer_phone: str = ""
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class NewProductCommand:
    """User intent for registering a product with its opening stock."""

    name: str
    selling_price: Decimal
    cost_price: Decimal = Decimal("0.00")
    sku: str = ""
    category: str = ""
    supplier_id: str = ""
    stock: int = 0
    low_stock_threshold: Optional[int] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class PurchaseCommand:
    """User intent for ordering goods from a supplier."""

    supplier_id: str
    items: Sequence[PurchaseItem]
    timestamp: Optional[datetime] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC datetime when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value)


# ---------------------------------------------------------------------------
# Cache management
# ---------------------------------------------------------------------------


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Buckets are keyed by collection sheet name and hold the full record list
    plus a ``by_id`` lookup, so repeated reads do not rescan the workbook.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_collection_cache(context: RuntimeContext, collection: Collection) -> Dict[str, Any]:
    """Populate the cache bucket for ``collection`` on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` records in sheet order and a
            ``by_id`` dictionary keyed by the collection's primary key.
    """

    bucket = _get_cache_bucket(context, collection.sheet_name)
    if "all" not in bucket:
        records = data_manager.get_all(context.workbook, collection)
        bucket["all"] = records
        bucket["by_id"] = {collection.key_of(record): record for record in records}
        log.debug(
            "Populated %s cache with %d entries",
            collection.sheet_name,
            len(records),
        )
    return bucket


def _lookup(context: RuntimeContext, collection: Collection, key: str, label: str) -> Any:
    cache = _ensure_collection_cache(context, collection)
    try:
        return cache["by_id"][key]
    except KeyError as exc:
        log.warning("%s lookup failed for id '%s'", label.capitalize(), key)
        raise MissingReferenceError(f"Unknown {label} id: {key}") from exc


def _store_add(context: RuntimeContext, collection: Collection, record: Any) -> None:
    data_manager.add(context.workbook, collection, record)
    _invalidate_cache(context, collection.sheet_name)


def _store_update(context: RuntimeContext, collection: Collection, record: Any) -> None:
    data_manager.update(context.workbook, collection, record)
    _invalidate_cache(context, collection.sheet_name)


def _store_delete(context: RuntimeContext, collection: Collection, key: str) -> None:
    data_manager.delete_by_id(context.workbook, collection, key)
    _invalidate_cache(context, collection.sheet_name)


# ---------------------------------------------------------------------------
# Runtime context lifecycle
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Resolves ``config.ini``, parses settings, and opens the workbook that
    stores every record collection. The resulting :class:`RuntimeContext`
    bundles the immutable settings with a mutable workbook handle and an empty
    cache store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file.

    Raises:
        StoreFailure: If the workbook cannot be written.
    """
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    This is effectively a "revert" operation: a new :class:`RuntimeContext` is
    produced, so cached data from the previous context is discarded along
    with any partially applied compound operation.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def generate_record_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable record identifier.

    Args:
        prefix (str): Designator for the record kind (``"SALE"``, ``"HIST"``...).
        when (datetime | None): Timestamp embedded in the identifier. When
            ``None`` the current UTC time is used.

    Returns:
        str: Identifier formed as ``{prefix}-{YYYYMMDDHHMMSSffffff}-{suffix}``.

    The random suffix keeps identifiers unique when several records are
    created within the same microsecond, as happens for multi-line sales.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}-{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}"


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is a strictly positive integer.

    Raises:
        ValidationError: If ``quantity`` is not an ``int`` or is not above zero.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValidationError("Quantity must be a whole number greater than zero")


def require_nonnegative_money(amount: Any) -> Decimal:
    """Validate that a monetary value is nonnegative and return it as Decimal.

    Raises:
        ValidationError: If ``amount`` is not numeric or is below zero.
    """
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except InvalidOperation as exc:
        log.error("Monetary value validation failed: %s", amount)
        raise ValidationError(f"Invalid amount: {amount}") from exc
    if not value.is_finite() or value < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValidationError("Amount must be zero or positive")
    return value


def _require_text(value: Optional[str], label: str) -> str:
    text = (value or "").strip()
    if not text:
        log.error("Validation failed: %s is blank", label)
        raise ValidationError(f"{label} is required")
    return text


# ---------------------------------------------------------------------------
# Stock ledger engine
# ---------------------------------------------------------------------------


def apply_stock_delta(
    context: RuntimeContext,
    product_id: str,
    delta: int,
    movement_type: MovementType,
    notes: Optional[str] = None,
) -> Tuple[ProductRow, Optional[StockHistoryRow]]:
    """Change a product's stock and append the matching history entry.

    This is the single choke point for stock changes. The product row is
    written first and the history entry second, so a failed product write
    never leaves a phantom history entry behind. Stock has no lower bound:
    a negative result represents backorder.

    A zero ``delta`` is a no-op: neither the product nor the history is
    written and ``None`` is returned in place of the entry.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        product_id (str): Product whose stock changes.
        delta (int): Signed quantity change.
        movement_type (MovementType): Reason recorded in the history entry.
        notes (str | None): Free-text note stored on the entry.

    Returns:
        tuple[ProductRow, StockHistoryRow | None]: The product after the change
            and the appended entry (``None`` for a zero delta).

    Raises:
        MissingReferenceError: If ``product_id`` is unknown.
        ValidationError: If ``delta`` is not an integer or ``movement_type``
            is not a known movement.
        StoreFailure: If the workbook rejects either write.
    """
    product = get_product(context, product_id)
    if isinstance(delta, bool) or not isinstance(delta, int):
        log.error("Stock delta validation failed: %r", delta)
        raise ValidationError("Stock delta must be a whole number")
    try:
        movement = MovementType(movement_type)
    except ValueError as exc:
        log.error("Unsupported movement type: %s", movement_type)
        raise ValidationError(f"Unsupported movement type: {movement_type}") from exc

    if delta == 0:
        log.debug("Skipping zero stock delta for product '%s'", product_id)
        return product, None

    new_stock = product.stock + delta
    updated = replace(product, stock=new_stock)
    _store_update(context, data_manager.PRODUCTS, updated)

    when = _resolve_timestamp(None)
    entry = StockHistoryRow(
        entry_id=generate_record_id("HIST", when=when),
        product_id=product_id,
        timestamp_iso=when.isoformat(),
        movement_type=movement.value,
        quantity_change=delta,
        new_stock_level=new_stock,
        notes=notes,
    )
    _store_add(context, data_manager.STOCK_HISTORY, entry)
    log.info(
        "Applied %s of %+d to product '%s' (stock %d -> %d)",
        movement.value,
        delta,
        product_id,
        product.stock,
        new_stock,
    )
    return updated, entry


def apply_cost_update(context: RuntimeContext, product_id: str, new_cost: Decimal) -> ProductRow:
    """Overwrite a product's cost price.

    No history entry is written; the stock movement that accompanies a cost
    change carries the audit record.

    Raises:
        MissingReferenceError: If ``product_id`` is unknown.
        ValidationError: If ``new_cost`` is negative or not numeric.
    """
    product = get_product(context, product_id)
    cost = require_nonnegative_money(new_cost)
    if cost == product.cost_price:
        return product
    updated = replace(product, cost_price=cost)
    _store_update(context, data_manager.PRODUCTS, updated)
    log.info(
        "Updated cost price of product '%s' from %s to %s",
        product_id,
        product.cost_price,
        cost,
    )
    return updated


def get_stock_history(context: RuntimeContext, product_id: Optional[str] = None) -> List[StockHistoryRow]:
    """Return stock history entries in chronological order.

    Entries sharing a timestamp keep their append order. The order follows
    the recorded wall-clock time; :func:`verify_stock_history` replays in
    append order instead.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        product_id (str | None): Restrict the result to one product.

    Returns:
        list[StockHistoryRow]: Entries sorted by timestamp.
    """
    entries = _ensure_collection_cache(context, data_manager.STOCK_HISTORY)["all"]
    if product_id is not None:
        entries = [entry for entry in entries if entry.product_id == product_id]
    return sorted(entries, key=lambda entry: _parse_timestamp(entry.timestamp_iso))


def verify_stock_history(context: RuntimeContext) -> Dict[str, str]:
    """Replay every product's history from zero and report inconsistencies.

    For each product the running sum of ``quantity_change`` must equal each
    entry's ``new_stock_level``, and the final sum must equal the product's
    current stock. History of deleted products is only checked internally.

    Entries are replayed in append order, which is the order the ledger wrote
    them, so a wall clock that stepped backwards does not read as corruption.

    Returns:
        dict[str, str]: Mapping of product id to a description of the first
            discrepancy found. Empty when the ledger is consistent.
    """
    problems: Dict[str, str] = {}
    running: Dict[str, int] = {}
    for entry in _ensure_collection_cache(context, data_manager.STOCK_HISTORY)["all"]:
        if entry.product_id in problems:
            continue
        total = running.get(entry.product_id, 0) + entry.quantity_change
        running[entry.product_id] = total
        if total != entry.new_stock_level:
            problems[entry.product_id] = (
                f"entry {entry.entry_id} records {entry.new_stock_level}, replay gives {total}"
            )

    for product in list_products(context):
        if product.product_id in problems:
            continue
        replayed = running.get(product.product_id, 0)
        if replayed != product.stock:
            problems[product.product_id] = (
                f"stock is {product.stock}, history replays to {replayed}"
            )

    if problems:
        log.warning("Stock history verification found %d inconsistent products", len(problems))
    else:
        log.info("Stock history verification passed")
    return problems


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


def list_products(context: RuntimeContext, *, category: Optional[str] = None) -> List[ProductRow]:
    """Return products in sheet order, optionally filtered by category name."""
    products = _ensure_collection_cache(context, data_manager.PRODUCTS)["all"]
    if category is not None:
        return [product for product in products if product.category == category]
    return list(products)


def get_product(context: RuntimeContext, product_id: str) -> ProductRow:
    """Resolve a product record by its identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the workbook.
    """
    return _lookup(context, data_manager.PRODUCTS, product_id, "product")


def _find_product(context: RuntimeContext, product_id: str) -> Optional[ProductRow]:
    return _ensure_collection_cache(context, data_manager.PRODUCTS)["by_id"].get(product_id)


def add_product(context: RuntimeContext, command: NewProductCommand) -> ProductRow:
    """Register a product and record its opening stock.

    The product is written with zero stock and the opening quantity is then
    applied as an ``initial_stock`` movement, so the history alone
    reconstructs the stock level. A zero opening stock writes no entry.

    Raises:
        ValidationError: If the name is blank, prices are negative or the
            opening stock is not an integer.
        MissingReferenceError: If ``supplier_id`` is given but unknown.
    """
    name = _require_text(command.name, "Product name")
    selling_price = require_nonnegative_money(command.selling_price)
    cost_price = require_nonnegative_money(command.cost_price)
    if isinstance(command.stock, bool) or not isinstance(command.stock, int):
        raise ValidationError("Opening stock must be a whole number")
    threshold = command.low_stock_threshold
    if threshold is None:
        threshold = context.settings.low_stock_threshold
    if threshold < 0:
        raise ValidationError("Low stock threshold must be zero or positive")
    if command.supplier_id:
        get_supplier(context, command.supplier_id)

    product = ProductRow(
        product_id=generate_record_id("PROD"),
        name=name,
        sku=command.sku.strip(),
        category=command.category.strip(),
        supplier_id=command.supplier_id,
        stock=0,
        low_stock_threshold=threshold,
        cost_price=cost_price,
        selling_price=selling_price,
        description=command.description,
    )
    _store_add(context, data_manager.PRODUCTS, product)
    log.info("Added product '%s' (%s)", product.product_id, name)
    product, _ = apply_stock_delta(
        context,
        product.product_id,
        command.stock,
        MovementType.INITIAL_STOCK,
        "Product created",
    )
    return product


def update_product(context: RuntimeContext, product: ProductRow) -> ProductRow:
    """Apply an edited product record.

    Descriptive fields are written directly. A changed ``stock`` becomes a
    ``manual_adjustment`` movement and a changed ``cost_price`` goes through
    :func:`apply_cost_update`.

    Raises:
        MissingReferenceError: If the product does not exist.
        ValidationError: If the edited values are invalid.
    """
    current = get_product(context, product.product_id)
    _require_text(product.name, "Product name")
    require_nonnegative_money(product.selling_price)
    require_nonnegative_money(product.cost_price)
    if product.low_stock_threshold < 0:
        raise ValidationError("Low stock threshold must be zero or positive")
    if isinstance(product.stock, bool) or not isinstance(product.stock, int):
        raise ValidationError("Stock must be a whole number")
    if product.supplier_id and product.supplier_id != current.supplier_id:
        get_supplier(context, product.supplier_id)

    descriptive = replace(product, stock=current.stock, cost_price=current.cost_price)
    if descriptive != current:
        _store_update(context, data_manager.PRODUCTS, descriptive)
        log.info("Updated product '%s'", product.product_id)

    apply_stock_delta(
        context,
        product.product_id,
        product.stock - current.stock,
        MovementType.MANUAL_ADJUSTMENT,
        "Manual product edit",
    )
    if product.cost_price != current.cost_price:
        apply_cost_update(context, product.product_id, product.cost_price)
    return get_product(context, product.product_id)


def delete_product(context: RuntimeContext, product_id: str) -> None:
    """Remove a product. Its stock history is kept."""
    get_product(context, product_id)
    _store_delete(context, data_manager.PRODUCTS, product_id)
    log.info("Deleted product '%s'", product_id)


# ---------------------------------------------------------------------------
# Suppliers and clients
# ---------------------------------------------------------------------------


def list_suppliers(context: RuntimeContext) -> List[SupplierRow]:
    return list(_ensure_collection_cache(context, data_manager.SUPPLIERS)["all"])


def get_supplier(context: RuntimeContext, supplier_id: str) -> SupplierRow:
    return _lookup(context, data_manager.SUPPLIERS, supplier_id, "supplier")


def add_supplier(
    context: RuntimeContext,
    name: str,
    *,
    contact_name: str = "",
    phone: str = "",
    email: str = "",
) -> SupplierRow:
    supplier = SupplierRow(
        supplier_id=generate_record_id("SUP"),
        name=_require_text(name, "Supplier name"),
        contact_name=contact_name,
        phone=phone,
        email=email,
    )
    _store_add(context, data_manager.SUPPLIERS, supplier)
    log.info("Added supplier '%s' (%s)", supplier.supplier_id, supplier.name)
    return supplier


def update_supplier(context: RuntimeContext, supplier: SupplierRow) -> SupplierRow:
    get_supplier(context, supplier.supplier_id)
    _require_text(supplier.name, "Supplier name")
    _store_update(context, data_manager.SUPPLIERS, supplier)
    log.info("Updated supplier '%s'", supplier.supplier_id)
    return supplier


def delete_supplier(context: RuntimeContext, supplier_id: str) -> None:
    """Remove a supplier that no product references.

    Raises:
        BusinessRuleViolation: If any product still names the supplier.
    """
    get_supplier(context, supplier_id)
    if any(product.supplier_id == supplier_id for product in list_products(context)):
        log.error("Refusing to delete supplier '%s' with associated products", supplier_id)
        raise BusinessRuleViolation("Cannot delete a supplier that has associated products")
    _store_delete(context, data_manager.SUPPLIERS, supplier_id)
    log.info("Deleted supplier '%s'", supplier_id)


def list_clients(context: RuntimeContext) -> List[ClientRow]:
    return list(_ensure_collection_cache(context, data_manager.CLIENTS)["all"])


def get_client(context: RuntimeContext, client_id: str) -> ClientRow:
    return _lookup(context, data_manager.CLIENTS, client_id, "client")


def find_client(context: RuntimeContext, *, email: str = "", phone: str = "") -> Optional[ClientRow]:
    """Return the first client matching a non-empty ``email`` or ``phone``."""
    for client in list_clients(context):
        if email and client.email == email:
            return client
        if phone and client.phone == phone:
            return client
    return None


def add_client(
    context: RuntimeContext,
    name: str,
    *,
    address: str = "",
    phone: str = "",
    email: str = "",
    document_number: str = "",
) -> ClientRow:
    client = ClientRow(
        client_id=generate_record_id("CLI"),
        name=_require_text(name, "Client name"),
        address=address,
        phone=phone,
        email=email,
        document_number=document_number,
    )
    _store_add(context, data_manager.CLIENTS, client)
    log.info("Added client '%s' (%s)", client.client_id, client.name)
    return client


def update_client(context: RuntimeContext, client: ClientRow) -> ClientRow:
    get_client(context, client.client_id)
    _require_text(client.name, "Client name")
    _store_update(context, data_manager.CLIENTS, client)
    log.info("Updated client '%s'", client.client_id)
    return client


def delete_client(context: RuntimeContext, client_id: str) -> None:
    """Remove a client that no sale references.

    Raises:
        BusinessRuleViolation: If any sale is attributed to the client.
    """
    get_client(context, client_id)
    if any(sale.client_id == client_id for sale in list_sales(context)):
        log.error("Refusing to delete client '%s' with associated sales", client_id)
        raise BusinessRuleViolation("Cannot delete a client that has associated sales")
    _store_delete(context, data_manager.CLIENTS, client_id)
    log.info("Deleted client '%s'", client_id)


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------


def list_categories(context: RuntimeContext) -> List[CategoryRow]:
    return list(_ensure_collection_cache(context, data_manager.CATEGORIES)["all"])


def get_category(context: RuntimeContext, category_id: str) -> CategoryRow:
    return _lookup(context, data_manager.CATEGORIES, category_id, "category")


def _require_unique_category_name(context: RuntimeContext, name: str, *, exclude_id: Optional[str] = None) -> str:
    text = _require_text(name, "Category name")
    for category in list_categories(context):
        if category.name == text and category.category_id != exclude_id:
            log.error("Category name '%s' already exists", text)
            raise ValidationError(f"Category '{text}' already exists")
    return text


def add_category(context: RuntimeContext, name: str) -> CategoryRow:
    category = CategoryRow(
        category_id=generate_record_id("CAT"),
        name=_require_unique_category_name(context, name),
    )
    _store_add(context, data_manager.CATEGORIES, category)
    log.info("Added category '%s' (%s)", category.category_id, category.name)
    return category


def _rewrite_product_categories(context: RuntimeContext, old_name: str, new_name: str) -> int:
    affected = [
        replace(product, category=new_name)
        for product in list_products(context, category=old_name)
    ]
    if affected:
        data_manager.bulk_put(context.workbook, data_manager.PRODUCTS, affected)
        _invalidate_cache(context, data_manager.PRODUCTS.sheet_name)
    return len(affected)


def rename_category(context: RuntimeContext, category_id: str, new_name: str) -> CategoryRow:
    """Rename a category and cascade the new name onto its products.

    Products store the category *name*, so every product whose category
    equals the old name (exact match) is rewritten. This is not a stock
    movement and writes no history.

    Raises:
        MissingReferenceError: If ``category_id`` is unknown.
        ValidationError: If ``new_name`` is blank or already used.
    """
    category = get_category(context, category_id)
    name = _require_unique_category_name(context, new_name, exclude_id=category_id)
    if name == category.name:
        return category

    renamed = replace(category, name=name)
    _store_update(context, data_manager.CATEGORIES, renamed)
    count = _rewrite_product_categories(context, category.name, name)
    log.info(
        "Renamed category '%s' from '%s' to '%s' (%d products updated)",
        category_id,
        category.name,
        name,
        count,
    )
    return renamed


def delete_category(context: RuntimeContext, category_id: str) -> int:
    """Delete a category and clear it from its products.

    Returns:
        int: Number of products whose category was cleared.
    """
    category = get_category(context, category_id)
    _store_delete(context, data_manager.CATEGORIES, category_id)
    count = _rewrite_product_categories(context, category.name, "")
    log.info(
        "Deleted category '%s' (%s); cleared %d products",
        category_id,
        category.name,
        count,
    )
    return count


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


def list_sales(
    context: RuntimeContext,
    *,
    status: Optional[SaleStatus] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[SaleRow]:
    """Return sales in sheet order filtered by status and time window."""
    sales = _ensure_collection_cache(context, data_manager.SALES)["all"]
    return [
        sale
        for sale in sales
        if (status is None or sale.status == SaleStatus(status).value)
        and _in_window(sale.timestamp_iso, start, end)
    ]


def get_sale(context: RuntimeContext, sale_id: str) -> SaleRow:
    return _lookup(context, data_manager.SALES, sale_id, "sale")


def _sale_total(items: Iterable[SaleItem]) -> Decimal:
    return sum((item.unit_price * item.quantity for item in items), Decimal("0"))


def commit_sale(context: RuntimeContext, command: SaleCommand) -> SaleRow:
    """Validate, persist and apply a sale.

    Every line gets the product's *current* ``cost_price`` as its cost
    snapshot, the sale is stored with status ``completed``, and then each line
    decrements stock through :func:`apply_stock_delta`. Available stock is not
    checked; overselling drives stock negative.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (SaleCommand): Structured intent describing the sale.

    Returns:
        SaleRow: The committed sale.

    Raises:
        ValidationError: If there are no lines, a quantity is not positive, a
            price is negative, the customer is missing, or the payment method
            or origin is unsupported.
        MissingReferenceError: If a product or the client is unknown.
        StoreFailure: If a write is rejected. Lines applied before the failure
            stay applied.
    """
    if not command.items:
        log.error("Sale validation failed: no line items")
        raise ValidationError("A sale needs at least one line item")
    try:
        payment_method = PaymentMethod(command.payment_method)
        origin = SaleOrigin(command.origin)
    except ValueError as exc:
        log.error("Sale validation failed: %s", exc)
        raise ValidationError(str(exc)) from exc

    lines: List[Tuple[SaleLine, Decimal]] = []
    for line in command.items:
        require_positive_quantity(line.quantity)
        lines.append((line, require_nonnegative_money(line.unit_price)))

    customer_name = (command.customer_name or "").strip()
    customer_phone = (command.customer_phone or "").strip()
    if command.client_id:
        client = get_client(context, command.client_id)
        customer_name = customer_name or client.name
        customer_phone = customer_phone or client.phone
    elif not customer_name:
        log.error("Sale validation failed: no client id or customer name")
        raise ValidationError("A sale needs a client or a customer name")

    items = tuple(
        SaleItem(
            product_id=line.product_id,
            quantity=line.quantity,
            unit_price=unit_price,
            cost_price=get_product(context, line.product_id).cost_price,
        )
        for line, unit_price in lines
    )

    timestamp = _resolve_timestamp(command.timestamp)
    sale = SaleRow(
        sale_id=generate_record_id("SALE", when=timestamp),
        timestamp_iso=timestamp.isoformat(),
        items=items,
        total=_sale_total(items),
        customer_name=customer_name,
        customer_phone=customer_phone,
        payment_method=payment_method.value,
        client_id=command.client_id or None,
        origin=origin.value,
        status=SaleStatus.COMPLETED.value,
    )
    _store_add(context, data_manager.SALES, sale)

    for item in items:
        apply_stock_delta(
            context,
            item.product_id,
            -item.quantity,
            MovementType.SALE,
            f"Sale {sale.sale_id}",
        )

    log.info(
        "Committed %s sale '%s' with %d lines (total=%s)",
        origin.value,
        sale.sale_id,
        len(items),
        sale.total,
    )
    return sale


def cancel_sale(context: RuntimeContext, sale_id: str) -> SaleRow:
    """Void a completed sale and restore the sold quantities.

    Each original line is put back with a ``sale_cancellation`` movement of
    the originally sold quantity, regardless of stock changes since the sale.
    Lines whose product has been deleted are skipped. Only the ``status`` of
    the sale record changes; its items, total and timestamp are kept.

    Raises:
        MissingReferenceError: If ``sale_id`` is unknown.
        InvalidStateError: If the sale is already cancelled.
    """
    sale = get_sale(context, sale_id)
    if sale.status == SaleStatus.CANCELLED.value:
        log.error("Sale '%s' is already cancelled", sale_id)
        raise InvalidStateError(f"Sale '{sale_id}' is already cancelled")

    for item in sale.items:
        if _find_product(context, item.product_id) is None:
            log.warning(
                "Skipping stock restore for deleted product '%s' on sale '%s'",
                item.product_id,
                sale_id,
            )
            continue
        apply_stock_delta(
            context,
            item.product_id,
            item.quantity,
            MovementType.SALE_CANCELLATION,
            f"Cancel of sale {sale_id}",
        )

    cancelled = replace(sale, status=SaleStatus.CANCELLED.value)
    _store_update(context, data_manager.SALES, cancelled)
    log.info("Cancelled sale '%s'", sale_id)
    return cancelled


# ---------------------------------------------------------------------------
# Purchases
# ---------------------------------------------------------------------------


def list_purchases(context: RuntimeContext, *, status: Optional[PurchaseStatus] = None) -> List[PurchaseRow]:
    purchases = _ensure_collection_cache(context, data_manager.PURCHASES)["all"]
    if status is None:
        return list(purchases)
    return [purchase for purchase in purchases if purchase.status == PurchaseStatus(status).value]


def get_purchase(context: RuntimeContext, purchase_id: str) -> PurchaseRow:
    return _lookup(context, data_manager.PURCHASES, purchase_id, "purchase")


def _validate_purchase_items(context: RuntimeContext, items: Sequence[PurchaseItem]) -> Tuple[PurchaseItem, ...]:
    if not items:
        log.error("Purchase validation failed: no line items")
        raise ValidationError("A purchase needs at least one line item")
    validated = []
    for item in items:
        require_positive_quantity(item.quantity)
        cost = require_nonnegative_money(item.unit_cost)
        get_product(context, item.product_id)
        validated.append(replace(item, unit_cost=cost))
    return tuple(validated)


def _purchase_total(items: Iterable[PurchaseItem]) -> Decimal:
    return sum((item.unit_cost * item.quantity for item in items), Decimal("0"))


def add_purchase(context: RuntimeContext, command: PurchaseCommand) -> PurchaseRow:
    """Register a pending purchase order for a supplier.

    Raises:
        MissingReferenceError: If the supplier or a product is unknown.
        ValidationError: If the items are empty or invalid.
    """
    get_supplier(context, command.supplier_id)
    items = _validate_purchase_items(context, command.items)
    timestamp = _resolve_timestamp(command.timestamp)
    purchase = PurchaseRow(
        purchase_id=generate_record_id("PUR", when=timestamp),
        timestamp_iso=timestamp.isoformat(),
        supplier_id=command.supplier_id,
        items=items,
        total=_purchase_total(items),
        status=PurchaseStatus.PENDING.value,
    )
    _store_add(context, data_manager.PURCHASES, purchase)
    log.info(
        "Added pending purchase '%s' for supplier '%s' (total=%s)",
        purchase.purchase_id,
        command.supplier_id,
        purchase.total,
    )
    return purchase


def _require_pending(purchase: PurchaseRow) -> None:
    if purchase.status != PurchaseStatus.PENDING.value:
        log.error("Purchase '%s' is not pending (status=%s)", purchase.purchase_id, purchase.status)
        raise InvalidStateError(f"Purchase '{purchase.purchase_id}' has already been received")


def update_pending_purchase(context: RuntimeContext, purchase_id: str, items: Sequence[PurchaseItem]) -> PurchaseRow:
    """Replace the items of a purchase that has not been received yet.

    Raises:
        InvalidStateError: If the purchase was already received.
    """
    purchase = get_purchase(context, purchase_id)
    _require_pending(purchase)
    validated = _validate_purchase_items(context, items)
    updated = replace(purchase, items=validated, total=_purchase_total(validated))
    _store_update(context, data_manager.PURCHASES, updated)
    log.info("Updated pending purchase '%s' (total=%s)", purchase_id, updated.total)
    return updated


def delete_purchase(context: RuntimeContext, purchase_id: str) -> None:
    """Remove a purchase record. Stock is not touched."""
    get_purchase(context, purchase_id)
    _store_delete(context, data_manager.PURCHASES, purchase_id)
    log.info("Deleted purchase '%s'", purchase_id)


def receive_purchase(
    context: RuntimeContext,
    purchase_id: str,
    reconciled_items: Optional[Sequence[PurchaseItem]] = None,
) -> PurchaseRow:
    """Receive a pending purchase into stock.

    ``reconciled_items`` describe what was actually delivered and default to
    the ordered items. For each line the stock is increased with a
    ``purchase`` movement and the product's cost price is overwritten with the
    line's unit cost (last write wins). The purchase is then stored as
    ``received`` with the reconciled items and recomputed total.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        purchase_id (str): Purchase to receive.
        reconciled_items (Sequence[PurchaseItem] | None): Delivered lines.

    Returns:
        PurchaseRow: The received purchase.

    Raises:
        MissingReferenceError: If the purchase or a product is unknown.
        InvalidStateError: If the purchase was already received; nothing is
            changed in that case.
        ValidationError: If the reconciled items are empty or invalid.
    """
    purchase = get_purchase(context, purchase_id)
    _require_pending(purchase)
    items = _validate_purchase_items(
        context,
        purchase.items if reconciled_items is None else reconciled_items,
    )

    for item in items:
        apply_stock_delta(
            context,
            item.product_id,
            item.quantity,
            MovementType.PURCHASE,
            f"Purchase {purchase_id}",
        )
        apply_cost_update(context, item.product_id, item.unit_cost)

    received = replace(
        purchase,
        items=items,
        total=_purchase_total(items),
        status=PurchaseStatus.RECEIVED.value,
    )
    _store_update(context, data_manager.PURCHASES, received)
    log.info("Received purchase '%s' (%d lines, total=%s)", purchase_id, len(items), received.total)
    return received


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


def _in_window(timestamp_iso: str, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start is None and end is None:
        return True
    moment = _parse_timestamp(timestamp_iso)
    if start is not None and moment < start:
        return False
    if end is not None and moment > end:
        return False
    return True


def calculate_profit_summary(
    context: RuntimeContext,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Decimal]:
    """Produce revenue, cost and profit for completed sales in a window.

    Cost uses the per-line cost snapshot stored on each sale, so later
    purchases do not rewrite historical profit. ``purchase_spend`` sums the
    totals of purchases registered in the same window.

    Returns:
        dict[str, Decimal]: ``total_revenue``, ``total_cost``, ``profit``,
            ``sale_count`` and ``purchase_spend``.
    """
    total_revenue = Decimal("0")
    total_cost = Decimal("0")
    sales = list_sales(context, status=SaleStatus.COMPLETED, start=start, end=end)
    for sale in sales:
        for item in sale.items:
            total_revenue += item.unit_price * item.quantity
            total_cost += item.cost_price * item.quantity
    purchase_spend = sum(
        (
            purchase.total
            for purchase in list_purchases(context)
            if _in_window(purchase.timestamp_iso, start, end)
        ),
        Decimal("0"),
    )
    profit = total_revenue - total_cost
    log.debug(
        "Calculated profit summary: revenue=%s cost=%s profit=%s",
        total_revenue,
        total_cost,
        profit,
    )
    return {
        "total_revenue": total_revenue,
        "total_cost": total_cost,
        "profit": profit,
        "sale_count": Decimal(len(sales)),
        "purchase_spend": purchase_spend,
    }


def list_low_stock_products(context: RuntimeContext) -> List[ProductRow]:
    """Products at or below their threshold that are not backordered."""
    return [
        product
        for product in list_products(context)
        if 0 <= product.stock <= product.low_stock_threshold
    ]


def list_negative_stock_products(context: RuntimeContext) -> List[ProductRow]:
    return [product for product in list_products(context) if product.stock < 0]


def calculate_stock_valuation(context: RuntimeContext) -> Dict[str, Decimal]:
    """Value each product's stock at its current cost price.

    Backordered products contribute a negative value.
    """
    return {
        product.product_id: product.cost_price * product.stock
        for product in list_products(context)
    }


