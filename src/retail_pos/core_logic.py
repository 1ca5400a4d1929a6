"""Business logic layer for the retail POS.

This module contains the sale transaction and inventory reconciliation engine.
It consumes the Data Access Layer (DAL) for all I/O and is the only code that
mutates the master workbook. Every mutation runs under the context lock and
ends in a single atomic workbook save, so stock levels and the sale history
always move together.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime, time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    LOW_STOCK_PREVIEW_LIMIT,
    RECENT_SALES_LIMIT,
    TOP_PRODUCTS_LIMIT,
    CategoryStatus,
    PaymentMethod,
    Role,
)


HUNDRED = Decimal("100")
CENT = Decimal("0.01")


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised when a request is malformed before any catalog lookup happens."""


class EmptyCart(ValidationError):
    """Raised when a sale is attempted with zero cart lines."""

    def __init__(self) -> None:
        super().__init__("Cart is empty")


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced category, user, or sale is unknown."""


class ProductNotFound(MissingReferenceError):
    """Raised when a cart line or lookup references an unknown product id."""

    def __init__(self, product_id: int) -> None:
        super().__init__(f"Product with ID {product_id} not found")
        self.product_id = product_id


class InsufficientStock(BusinessRuleViolation):
    """Raised when a requested quantity exceeds the stock on hand."""

    def __init__(self, product_id: int, requested: int, available: int, product_name: Optional[str] = None) -> None:
        label = product_name or f"product {product_id}"
        super().__init__(
            f"Insufficient stock for {label}: requested {requested}, available {available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available
        self.product_name = product_name

    @property
    def shortfall(self) -> int:
        return self.requested - self.available


class PermissionDenied(BusinessRuleViolation):
    """Raised when the acting user's role does not allow the operation."""


class PersistenceError(RuntimeError):
    """Raised when the durable workbook write fails after validation passed.

    The in-memory workbook is rolled back before this is raised, so neither
    the stock changes nor the new rows remain applied.
    """


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL.

    One context represents one store instance. ``lock`` serializes every
    mutating operation. Readers only take it to rebuild an evicted cache.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    @property
    def lock(self) -> threading.RLock:
        return self._lock


@dataclass(frozen=True)
class ActorIdentity:
    """Identity of the operator performing a request, trusted as supplied."""

    id: int
    username: str
    role: Role


@dataclass(frozen=True)
class CartLine:
    """One caller-proposed cart entry; never persisted."""

    product_id: int
    quantity: int


@dataclass(frozen=True)
class SaleCommand:
    """User intent for committing a sale at the till."""

    cart: Sequence[CartLine]
    payment_method: PaymentMethod
    actor: ActorIdentity
    customer_name: Optional[str] = None
    discount_percent: Decimal = Decimal("0")
    tax_percent: Decimal = Decimal("0")
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class AddCategoryCommand:
    """User intent for registering a new category."""

    name: str
    actor: ActorIdentity
    description: str = ""
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class UpdateCategoryCommand:
    """User intent for renaming, describing or retiring a category.

    ``None`` for ``description`` or ``status`` keeps the stored value.
    """

    category_id: int
    name: str
    actor: ActorIdentity
    description: Optional[str] = None
    status: Optional[CategoryStatus] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class AddProductCommand:
    """User intent for registering a new product."""

    name: str
    sku: str
    category_id: int
    price: Decimal
    stock: int
    reorder_point: int
    actor: ActorIdentity
    description: str = ""
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class UpdateProductCommand:
    """User intent for replacing a product's catalog fields.

    ``stock`` is the new absolute level. ``None`` for ``description`` keeps
    the stored value.
    """

    product_id: int
    name: str
    sku: str
    category_id: int
    price: Decimal
    stock: int
    reorder_point: int
    actor: ActorIdentity
    description: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class RestockCommand:
    """User intent for adding received units to a product's stock."""

    product_id: int
    quantity: int
    actor: ActorIdentity
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class PricedLine:
    """A cart line priced against a catalog snapshot."""

    product_id: int
    product_name: str
    sku: str
    price: Decimal
    quantity: int
    total: Decimal


@dataclass(frozen=True)
class PricedCart:
    lines: tuple[PricedLine, ...]
    subtotal: Decimal


@dataclass(frozen=True)
class SaleTotals:
    """Unrounded monetary breakdown of a sale."""

    subtotal: Decimal
    discount: Decimal
    taxable_amount: Decimal
    tax: Decimal
    total: Decimal


@dataclass(frozen=True)
class TopProduct:
    product_id: int
    product_name: str
    sku: str
    quantity: int
    total: Decimal


@dataclass(frozen=True)
class AnalyticsResult:
    """Aggregated view over a (possibly date-filtered) slice of sale history."""

    total_sales: Decimal
    total_transactions: int
    sales_by_category: Dict[str, Decimal]
    top_products: List[TopProduct]


@dataclass(frozen=True)
class DashboardStats:
    """Headline numbers for the store overview."""

    total_products: int
    total_categories: int
    low_stock_count: int
    total_sales: Decimal
    recent_sales: List[data_manager.SaleRow]
    low_stock_products: List[data_manager.ProductRow]


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` when supplied, otherwise the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    The business logic layer keeps in-memory caches keyed by domain area
    (categories, products, users, sales) so repeated reads do not rescan the
    workbook.

    Args:
        context (RuntimeContext): Runtime state carrying the shared cache
            dictionary.
        name (str): Logical bucket name to fetch or create.

    Returns:
        dict[str, Any]: Mutable mapping used to cache derived collections for a
            specific entity set.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Missing buckets are ignored so callers can request targeted invalidation
    without checking what was populated.
    """

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_cache(context: RuntimeContext, name: str, populate: Callable[[Dict[str, Any]], None]) -> Dict[str, Any]:
    """Return the bucket ``name``, filling it under the context lock on a miss.

    Readers of a populated bucket never wait. A rebuild waits for any
    in-flight write so it never observes a half-applied commit.
    """

    bucket = context._cache.get(name)
    if bucket is not None and "all" in bucket:
        return bucket
    with context.lock:
        bucket = _get_cache_bucket(context, name)
        if "all" not in bucket:
            populate(bucket)
    return bucket


def _ensure_categories_cache(context: RuntimeContext) -> Dict[str, Any]:
    def populate(bucket: Dict[str, Any]) -> None:
        all_categories = list(data_manager.iter_categories(context.workbook))
        bucket["by_id"] = {category.category_id: category for category in all_categories}
        bucket["all"] = all_categories
        log.debug("Populated categories cache with %d entries", len(all_categories))

    return _ensure_cache(context, "categories", populate)


def _ensure_products_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the product cache bucket on demand.

    Args:
        context (RuntimeContext): Runtime state used to access the workbook and
            shared caches.

    Returns:
        dict[str, Any]: Bucket containing ``all`` products in sheet order and a
            ``by_id`` lookup dictionary.
    """

    def populate(bucket: Dict[str, Any]) -> None:
        all_products = list(data_manager.iter_products(context.workbook))
        bucket["by_id"] = {product.product_id: product for product in all_products}
        bucket["all"] = all_products
        log.debug("Populated products cache with %d entries", len(all_products))

    return _ensure_cache(context, "products", populate)


def _ensure_users_cache(context: RuntimeContext) -> Dict[str, Any]:
    def populate(bucket: Dict[str, Any]) -> None:
        all_users = list(data_manager.iter_users(context.workbook))
        bucket["by_id"] = {user.user_id: user for user in all_users}
        bucket["by_username"] = {user.username: user for user in all_users}
        bucket["all"] = all_users
        log.debug("Populated users cache with %d entries", len(all_users))

    return _ensure_cache(context, "users", populate)


def _ensure_sales_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the sale history cache bucket on demand.

    Sales are immutable after commit, so the joined header and item records
    can be cached until the next commit invalidates the bucket.

    Returns:
        dict[str, Any]: Bucket containing ``all`` sales in commit order and a
            ``by_id`` dictionary.
    """

    def populate(bucket: Dict[str, Any]) -> None:
        all_sales = list(data_manager.iter_sales(context.workbook))
        bucket["by_id"] = {sale.sale_id: sale for sale in all_sales}
        bucket["all"] = all_sales
        log.debug("Populated sales cache with %d entries", len(all_sales))

    return _ensure_cache(context, "sales", populate)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Resolves ``config.ini``, parses the settings and opens the master
    workbook. The resulting :class:`RuntimeContext` bundles the immutable
    settings with the workbook handle, an empty cache and a fresh lock.

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
    """Persist in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook, an empty
            cache and its own lock.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


# Catalog store


def list_categories(context: RuntimeContext, *, include_inactive: bool = True) -> List[data_manager.CategoryRow]:
    """Return cached category rows in sheet order.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        include_inactive (bool): When ``False`` only categories whose status is
            ``active`` are returned.

    Returns:
        list[data_manager.CategoryRow]: Copy of the cached categories.
    """
    categories = _ensure_categories_cache(context)["all"]
    if include_inactive:
        return list(categories)
    return [category for category in categories if category.status == CategoryStatus.ACTIVE.value]


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return a copy of the cached product list in sheet order."""
    return list(_ensure_products_cache(context)["all"])


def list_users(context: RuntimeContext) -> List[data_manager.UserRow]:
    return list(_ensure_users_cache(context)["all"])


def get_category(context: RuntimeContext, category_id: int) -> data_manager.CategoryRow:
    """Resolve a category by identifier.

    Raises:
        MissingReferenceError: If ``category_id`` is absent from the workbook.
    """
    try:
        return _ensure_categories_cache(context)["by_id"][category_id]
    except KeyError as exc:
        log.warning("Category lookup failed for id '%s'", category_id)
        raise MissingReferenceError(f"Category with ID {category_id} not found") from exc


def find_product(context: RuntimeContext, product_id: int) -> Optional[data_manager.ProductRow]:
    """Return the product with ``product_id`` or ``None`` when it is absent."""
    return _ensure_products_cache(context)["by_id"].get(product_id)


def get_product(context: RuntimeContext, product_id: int) -> data_manager.ProductRow:
    """Resolve a product record by its identifier.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        product_id (int): Identifier from the ``Products`` sheet.

    Returns:
        data_manager.ProductRow: Matching product dataclass sourced from cache.

    Raises:
        ProductNotFound: If ``product_id`` is absent from the workbook.
    """
    product = find_product(context, product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise ProductNotFound(product_id)
    return product


def get_user(context: RuntimeContext, user_id: int) -> data_manager.UserRow:
    try:
        return _ensure_users_cache(context)["by_id"][user_id]
    except KeyError as exc:
        log.warning("User lookup failed for id '%s'", user_id)
        raise MissingReferenceError(f"User with ID {user_id} not found") from exc


def resolve_actor(context: RuntimeContext, username: str) -> ActorIdentity:
    """Build the :class:`ActorIdentity` for an active user of the store.

    Authentication happens outside this package; the caller vouches for
    ``username`` and this only maps it onto the ``Users`` sheet.

    Raises:
        MissingReferenceError: If no user carries ``username``.
        PermissionDenied: If the user is inactive or has an unknown role.
    """
    user = _ensure_users_cache(context)["by_username"].get(username)
    if user is None:
        log.warning("User lookup failed for username '%s'", username)
        raise MissingReferenceError(f"Unknown user: {username}")
    if not user.is_active:
        log.warning("Inactive user '%s' attempted to act", username)
        raise PermissionDenied(f"User '{username}' is inactive")
    try:
        role = Role(user.role)
    except ValueError as exc:
        raise PermissionDenied(f"User '{username}' has unknown role '{user.role}'") from exc
    return ActorIdentity(id=user.user_id, username=user.username, role=role)


def require_role(actor: ActorIdentity, *roles: Role) -> None:
    """Ensure ``actor`` holds one of ``roles``.

    Raises:
        PermissionDenied: If the actor's role is not listed.
    """
    if not isinstance(actor, ActorIdentity):
        log.warning("Rejected request without an acting user")
        raise PermissionDenied("An acting user is required")
    if actor.role not in roles:
        log.warning(
            "User '%s' with role %s denied; requires one of %s",
            actor.username,
            actor.role.value if isinstance(actor.role, Role) else actor.role,
            ", ".join(role.value for role in roles),
        )
        raise PermissionDenied("Insufficient permissions")


def apply_stock_delta(context: RuntimeContext, product_id: int, delta: int, *, when: Optional[datetime] = None) -> data_manager.ProductRow:
    """Adjust a product's stock by ``delta`` in the in-memory workbook.

    This is the only primitive that changes stock. It refuses any change that
    would leave the level below zero and stamps ``LastUpdated``. It does not
    save the workbook; callers persist as part of their own atomic unit.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        product_id (int): Product whose stock changes.
        delta (int): Signed quantity to add to the current stock.
        when (datetime | None): Timestamp for ``LastUpdated``.

    Returns:
        data_manager.ProductRow: The product as stored after the change.

    Raises:
        ProductNotFound: If the product does not exist.
        InsufficientStock: If ``stock + delta`` would be negative.
    """
    product = get_product(context, product_id)
    new_level = product.stock + delta
    if new_level < 0:
        log.warning(
            "Stock change rejected for product '%s': stock=%s delta=%s",
            product_id,
            product.stock,
            delta,
        )
        raise InsufficientStock(product_id, -delta, product.stock, product.name)

    moment = _resolve_timestamp(when)
    data_manager.update_product(
        context.workbook,
        product_id,
        field_values={"Stock": new_level, "LastUpdated": moment.isoformat()},
    )
    _invalidate_cache(context, "products")
    log.debug("Stock for product '%s' changed %s -> %s", product_id, product.stock, new_level)
    return get_product(context, product_id)


def _commit_or_rollback(context: RuntimeContext, rollback: Callable[[], None], description: str) -> None:
    """Save the workbook, undoing the pending in-memory edits if that fails."""
    try:
        persist_context(context)
    except Exception as exc:
        log.error("Failed to persist %s: %s", description, exc)
        rollback()
        raise PersistenceError(f"Unable to persist {description}: {exc}") from exc
    finally:
        _invalidate_cache(context, "categories", "products", "sales")


# Catalog maintenance


def add_category(context: RuntimeContext, command: AddCategoryCommand) -> data_manager.CategoryRow:
    """Register a new active category and persist it.

    Category names are unique ignoring case.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (AddCategoryCommand): Structured intent for the new category.

    Returns:
        data_manager.CategoryRow: The stored category.

    Raises:
        PermissionDenied: If the actor is not an administrator.
        ValidationError: If the name is blank or already taken.
        PersistenceError: If the workbook cannot be saved.
    """
    require_role(command.actor, Role.ADMIN)
    name = (command.name or "").strip()
    if not name:
        raise ValidationError("Category name is required")

    with context.lock:
        categories = list_categories(context)
        if any(category.name.lower() == name.lower() for category in categories):
            log.warning("Duplicate category name rejected: '%s'", name)
            raise ValidationError("Category already exists")

        timestamp = _resolve_timestamp(command.timestamp)
        category = data_manager.CategoryRow(
            category_id=max((c.category_id for c in categories), default=0) + 1,
            name=name,
            description=command.description or "",
            status=CategoryStatus.ACTIVE.value,
            created_at=timestamp.isoformat(),
        )
        data_manager.append_category(context.workbook, category)
        _commit_or_rollback(
            context,
            lambda: data_manager.remove_category(context.workbook, category.category_id),
            f"category '{name}'",
        )

    log.info("Added category '%s' (id=%s)", category.name, category.category_id)
    return category


def delete_category(context: RuntimeContext, actor: ActorIdentity, category_id: int) -> None:
    """Delete a category that no product references.

    Raises:
        PermissionDenied: If the actor is not an administrator.
        MissingReferenceError: If the category does not exist.
        BusinessRuleViolation: If at least one product still references it.
        PersistenceError: If the workbook cannot be saved.
    """
    require_role(actor, Role.ADMIN)
    with context.lock:
        category = get_category(context, category_id)
        if any(product.category_id == category_id for product in list_products(context)):
            log.warning("Refusing to delete category '%s' with products", category_id)
            raise BusinessRuleViolation("Cannot delete category with existing products")

        data_manager.remove_category(context.workbook, category_id)
        _commit_or_rollback(
            context,
            lambda: data_manager.append_category(context.workbook, category),
            f"deletion of category {category_id}",
        )
    log.info("Deleted category '%s' (id=%s)", category.name, category_id)


def _category_fields(category: data_manager.CategoryRow) -> Dict[str, Any]:
    return {
        "CategoryName": category.name,
        "Description": category.description,
        "Status": category.status,
        "UpdatedAt": category.updated_at,
    }


def update_category(context: RuntimeContext, command: UpdateCategoryCommand) -> data_manager.CategoryRow:
    """Rename, describe or change the status of an existing category.

    The new name must stay unique ignoring case among the other categories.
    Setting the status to ``inactive`` hides the category from the active
    count without touching its products.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (UpdateCategoryCommand): Structured intent for the edit.

    Returns:
        data_manager.CategoryRow: The category as stored after the edit.

    Raises:
        PermissionDenied: If the actor is not an administrator.
        ValidationError: If the name is blank or taken, or the status is
            unknown.
        MissingReferenceError: If the category does not exist.
        PersistenceError: If the workbook cannot be saved.
    """
    require_role(command.actor, Role.ADMIN)
    name = (command.name or "").strip()
    if not name:
        raise ValidationError("Category name is required")
    status: Optional[CategoryStatus] = None
    if command.status is not None:
        try:
            status = CategoryStatus(command.status)
        except ValueError as exc:
            log.warning("Unknown category status rejected: %r", command.status)
            raise ValidationError(f"Unknown category status: {command.status}") from exc

    with context.lock:
        current = get_category(context, command.category_id)
        if any(
            category.category_id != current.category_id and category.name.lower() == name.lower()
            for category in list_categories(context)
        ):
            log.warning("Duplicate category name rejected: '%s'", name)
            raise ValidationError("Category already exists")

        timestamp = _resolve_timestamp(command.timestamp)
        updated = replace(
            current,
            name=name,
            description=command.description if command.description is not None else current.description,
            status=status.value if status is not None else current.status,
            updated_at=timestamp.isoformat(),
        )
        data_manager.update_category(context.workbook, current.category_id, field_values=_category_fields(updated))
        _commit_or_rollback(
            context,
            lambda: data_manager.update_category(
                context.workbook, current.category_id, field_values=_category_fields(current)
            ),
            f"update of category {current.category_id}",
        )

    log.info("Updated category %s: '%s' (%s)", updated.category_id, updated.name, updated.status)
    return updated


def add_product(context: RuntimeContext, command: AddProductCommand) -> data_manager.ProductRow:
    """Register a new product and persist it.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (AddProductCommand): Structured intent for the new product.

    Returns:
        data_manager.ProductRow: The stored product.

    Raises:
        PermissionDenied: If the actor is not an administrator.
        ValidationError: If a field is blank or negative, or the SKU is taken.
        MissingReferenceError: If the category does not exist.
        PersistenceError: If the workbook cannot be saved.
    """
    require_role(command.actor, Role.ADMIN)
    name = (command.name or "").strip()
    sku = (command.sku or "").strip()
    if not name:
        raise ValidationError("Product name is required")
    if not sku:
        raise ValidationError("SKU is required")
    price = require_nonnegative_money(command.price)
    stock = require_nonnegative_int(command.stock, "Stock")
    reorder_point = require_nonnegative_int(command.reorder_point, "Reorder point")

    with context.lock:
        get_category(context, command.category_id)
        products = list_products(context)
        if any(product.sku == sku for product in products):
            log.warning("Duplicate SKU rejected: '%s'", sku)
            raise ValidationError("SKU already exists")

        timestamp = _resolve_timestamp(command.timestamp)
        product = data_manager.ProductRow(
            product_id=max((p.product_id for p in products), default=0) + 1,
            name=name,
            sku=sku,
            category_id=command.category_id,
            price=price,
            stock=stock,
            reorder_point=reorder_point,
            description=command.description or "",
            last_updated=timestamp.isoformat(),
        )
        data_manager.append_product(context.workbook, product)
        _commit_or_rollback(
            context,
            lambda: data_manager.remove_product(context.workbook, product.product_id),
            f"product '{sku}'",
        )

    log.info("Added product '%s' (id=%s, sku=%s)", product.name, product.product_id, product.sku)
    return product


def delete_product(context: RuntimeContext, actor: ActorIdentity, product_id: int) -> None:
    """Delete a product; historical sale items keep their captured snapshot.

    Raises:
        PermissionDenied: If the actor is not an administrator.
        ProductNotFound: If the product does not exist.
        PersistenceError: If the workbook cannot be saved.
    """
    require_role(actor, Role.ADMIN)
    with context.lock:
        product = get_product(context, product_id)
        data_manager.remove_product(context.workbook, product_id)
        _commit_or_rollback(
            context,
            lambda: data_manager.append_product(context.workbook, product),
            f"deletion of product {product_id}",
        )
    log.info("Deleted product '%s' (id=%s)", product.name, product_id)


def _product_fields(product: data_manager.ProductRow) -> Dict[str, Any]:
    return {
        "ProductName": product.name,
        "SKU": product.sku,
        "CategoryID": product.category_id,
        "Price": product.price,
        "Stock": product.stock,
        "ReorderPoint": product.reorder_point,
        "Description": product.description,
        "LastUpdated": product.last_updated,
    }


def update_product(context: RuntimeContext, command: UpdateProductCommand) -> data_manager.ProductRow:
    """Replace a product's catalog fields and persist the change.

    A changed stock level goes through :func:`apply_stock_delta`. Sale items
    captured earlier keep their own name, SKU and price.

    Raises:
        PermissionDenied: If the actor is not an administrator.
        ValidationError: If a field is blank or negative, or the SKU belongs to
            another product.
        ProductNotFound: If the product does not exist.
        MissingReferenceError: If the category does not exist.
        PersistenceError: If the workbook cannot be saved.
    """
    require_role(command.actor, Role.ADMIN)
    name = (command.name or "").strip()
    sku = (command.sku or "").strip()
    if not name:
        raise ValidationError("Product name is required")
    if not sku:
        raise ValidationError("SKU is required")
    price = require_nonnegative_money(command.price)
    stock = require_nonnegative_int(command.stock, "Stock")
    reorder_point = require_nonnegative_int(command.reorder_point, "Reorder point")

    with context.lock:
        _invalidate_cache(context, "products")
        current = get_product(context, command.product_id)
        get_category(context, command.category_id)
        if any(
            product.sku == sku and product.product_id != current.product_id
            for product in list_products(context)
        ):
            log.warning("Duplicate SKU rejected: '%s'", sku)
            raise ValidationError("SKU already exists")

        timestamp = _resolve_timestamp(command.timestamp)
        edited = replace(
            current,
            name=name,
            sku=sku,
            category_id=command.category_id,
            price=price,
            reorder_point=reorder_point,
            description=command.description if command.description is not None else current.description,
            last_updated=timestamp.isoformat(),
        )
        data_manager.update_product(context.workbook, current.product_id, field_values=_product_fields(edited))
        _invalidate_cache(context, "products")
        if stock != current.stock:
            apply_stock_delta(context, current.product_id, stock - current.stock, when=timestamp)
        updated = get_product(context, current.product_id)
        _commit_or_rollback(
            context,
            lambda: data_manager.update_product(
                context.workbook, current.product_id, field_values=_product_fields(current)
            ),
            f"update of product {current.product_id}",
        )

    log.info("Updated product %s: '%s' (sku=%s)", updated.product_id, updated.name, updated.sku)
    return updated


def restock_product(context: RuntimeContext, command: RestockCommand) -> data_manager.ProductRow:
    """Add received units to a product's stock and persist the change.

    Raises:
        PermissionDenied: If the actor is not an administrator.
        ValidationError: If the quantity is not a positive integer.
        ProductNotFound: If the product does not exist.
        PersistenceError: If the workbook cannot be saved.
    """
    require_role(command.actor, Role.ADMIN)
    quantity = require_positive_quantity(command.quantity)
    with context.lock:
        _invalidate_cache(context, "products")
        previous = get_product(context, command.product_id)
        updated = apply_stock_delta(context, command.product_id, quantity, when=command.timestamp)
        _commit_or_rollback(
            context,
            lambda: _restore_products(context, [previous]),
            f"restock of product {command.product_id}",
        )
    log.info(
        "Restocked product '%s' by %s (stock %s -> %s)",
        previous.product_id,
        quantity,
        previous.stock,
        updated.stock,
    )
    return updated


# Sale builder


def require_positive_quantity(quantity: Any) -> int:
    """Validate that a quantity is a strictly positive integer.

    Booleans are rejected even though they are ``int`` subclasses.

    Raises:
        ValidationError: If ``quantity`` is not an int or is not above zero.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        log.error("Quantity validation failed: %r", quantity)
        raise ValidationError("Quantity must be a whole number")
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValidationError("Quantity must be greater than zero")
    return quantity


def require_nonnegative_int(value: Any, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        log.error("%s validation failed: %r", label, value)
        raise ValidationError(f"{label} must be a whole number of zero or more")
    return value


def require_nonnegative_money(amount: Any) -> Decimal:
    """Validate that a monetary value is a nonnegative decimal.

    Raises:
        ValidationError: If ``amount`` is not numeric or is below zero.
    """
    value = _to_decimal(amount, "Amount")
    if value < 0:
        log.error("Monetary value validation failed: %s", amount)
        raise ValidationError("Amount must be zero or positive")
    return value


def require_percent(value: Any, label: str) -> Decimal:
    """Validate a percentage in the inclusive range 0..100.

    Raises:
        ValidationError: If ``value`` is not numeric or falls outside 0..100.
    """
    percent = _to_decimal(value, label)
    if percent < 0 or percent > HUNDRED:
        log.error("%s percentage out of range: %s", label, percent)
        raise ValidationError(f"{label} must be between 0 and 100 percent")
    return percent


def _to_decimal(value: Any, label: str) -> Decimal:
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool) or value is None:
        raise ValidationError(f"{label} must be a number")
    else:
        try:
            result = Decimal(str(value))
        except InvalidOperation as exc:
            raise ValidationError(f"{label} must be a number") from exc
    if not result.is_finite():
        raise ValidationError(f"{label} must be a number")
    return result


def validate_cart(cart: Any) -> tuple[CartLine, ...]:
    """Check the shape of a cart before any catalog lookup.

    Args:
        cart (Any): Caller-supplied sequence of :class:`CartLine`.

    Returns:
        tuple[CartLine, ...]: The validated lines in their original order.

    Raises:
        EmptyCart: If the cart holds no lines.
        ValidationError: If the cart is not a sequence, a line is not a
            ``CartLine``, a product id is not an integer, or a quantity is not
            a positive integer.
    """
    if cart is None:
        log.warning("Rejected sale without a cart")
        raise EmptyCart()
    if isinstance(cart, (str, bytes)) or not isinstance(cart, Iterable):
        log.warning("Rejected cart of type %s", type(cart).__name__)
        raise ValidationError("Cart must be a sequence of cart lines")

    lines = tuple(cart)
    if not lines:
        log.warning("Rejected sale with an empty cart")
        raise EmptyCart()

    for line in lines:
        if not isinstance(line, CartLine):
            log.warning("Rejected malformed cart line: %r", line)
            raise ValidationError(f"Invalid cart line: {line!r}")
        if isinstance(line.product_id, bool) or not isinstance(line.product_id, int):
            log.warning("Rejected cart line with product id %r", line.product_id)
            raise ValidationError(f"Invalid product id: {line.product_id!r}")
        require_positive_quantity(line.quantity)
    return lines


def requested_quantities(cart: Sequence[CartLine]) -> Dict[int, int]:
    """Total quantity requested per product id, in first-seen order."""
    totals: Dict[int, int] = OrderedDict()
    for line in cart:
        totals[line.product_id] = totals.get(line.product_id, 0) + line.quantity
    return totals


def price_cart(cart: Sequence[CartLine], products_by_id: Mapping[int, data_manager.ProductRow]) -> PricedCart:
    """Price cart lines against a catalog snapshot.

    Stock sufficiency is judged on the cumulative quantity a cart requests for
    each product, so splitting a product over several lines cannot oversell
    it. Unit prices are captured from the snapshot and the subtotal is the
    exact sum of the line totals. The function has no side effects.

    Args:
        cart (Sequence[CartLine]): Lines already checked by
            :func:`validate_cart`.
        products_by_id (Mapping[int, ProductRow]): Catalog snapshot.

    Returns:
        PricedCart: Priced lines in cart order and their subtotal.

    Raises:
        ProductNotFound: If a line references an unknown product.
        InsufficientStock: If the requested quantity exceeds the snapshot's
            stock for a product.
    """
    for product_id, requested in requested_quantities(cart).items():
        product = products_by_id.get(product_id)
        if product is None:
            log.warning("Cart references unknown product '%s'", product_id)
            raise ProductNotFound(product_id)
        if requested > product.stock:
            log.warning(
                "Insufficient stock for product '%s': requested=%s available=%s",
                product_id,
                requested,
                product.stock,
            )
            raise InsufficientStock(product_id, requested, product.stock, product.name)

    lines: List[PricedLine] = []
    for line in cart:
        product = products_by_id[line.product_id]
        lines.append(
            PricedLine(
                product_id=product.product_id,
                product_name=product.name,
                sku=product.sku,
                price=product.price,
                quantity=line.quantity,
                total=product.price * line.quantity,
            )
        )
    subtotal = sum((line.total for line in lines), Decimal("0"))
    return PricedCart(lines=tuple(lines), subtotal=subtotal)


def compute_totals(subtotal: Decimal, discount_percent: Any = Decimal("0"), tax_percent: Any = Decimal("0")) -> SaleTotals:
    """Apply a percentage discount and then a percentage tax.

    ``discount = subtotal * d / 100``, ``taxable = subtotal - discount``,
    ``tax = taxable * t / 100`` and ``total = taxable + tax``. Values are left
    unrounded; rounding belongs to presentation.

    Raises:
        ValidationError: If either percentage lies outside 0..100.
    """
    discount_rate = require_percent(discount_percent, "Discount")
    tax_rate = require_percent(tax_percent, "Tax")
    discount = subtotal * discount_rate / HUNDRED
    taxable = subtotal - discount
    tax = taxable * tax_rate / HUNDRED
    return SaleTotals(
        subtotal=subtotal,
        discount=discount,
        taxable_amount=taxable,
        tax=tax,
        total=taxable + tax,
    )


# Transaction committer


def next_sale_id(sales: Iterable[data_manager.SaleRow]) -> int:
    """Return ``max(existing ids) + 1``, or ``1`` for an empty history."""
    return max((sale.sale_id for sale in sales), default=0) + 1


def build_sale_record(
    priced: PricedCart,
    totals: SaleTotals,
    *,
    sale_id: int,
    timestamp: datetime,
    actor: ActorIdentity,
    payment_method: PaymentMethod,
    customer_name: str,
    discount_percent: Decimal,
    tax_percent: Decimal,
) -> data_manager.SaleRow:
    """Materialize priced lines and totals into an immutable sale record.

    Each item snapshots the product name, SKU and unit price so later catalog
    edits never change a historical invoice.
    """
    items = tuple(
        data_manager.SaleItemRow(
            sale_id=sale_id,
            line_number=index,
            product_id=line.product_id,
            product_name=line.product_name,
            sku=line.sku,
            price=line.price,
            quantity=line.quantity,
            total=line.total,
        )
        for index, line in enumerate(priced.lines, start=1)
    )
    return data_manager.SaleRow(
        sale_id=sale_id,
        created_at=timestamp,
        items=items,
        subtotal=totals.subtotal,
        discount_percent=discount_percent,
        discount=totals.discount,
        tax_percent=tax_percent,
        tax=totals.tax,
        total=totals.total,
        payment_method=payment_method.value,
        customer_name=customer_name,
        cashier_id=actor.id,
        cashier_name=actor.username,
    )


def _restore_products(context: RuntimeContext, snapshots: Iterable[data_manager.ProductRow]) -> None:
    for product in snapshots:
        data_manager.update_product(
            context.workbook,
            product.product_id,
            field_values={"Stock": product.stock, "LastUpdated": product.last_updated},
        )


def commit_sale(context: RuntimeContext, command: SaleCommand) -> data_manager.SaleRow:
    """Validate, reserve stock for, and durably record a sale.

    The whole operation runs under the context lock:

    1. Validating: the cart shape, percentages, payment method and actor are
       checked, the product cache is dropped and the cart is re-priced against
       the freshly read catalog.
    2. Reserving: new stock levels for every product are computed, then
       written through :func:`apply_stock_delta`.
    3. Persisting: the sale receives ``max(id) + 1`` and is appended with its
       items.
    4. Committed: the workbook is saved once. If the save fails, stock and the
       appended rows are rolled back and :class:`PersistenceError` is raised.

    Any validation failure is raised before the workbook is touched.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (SaleCommand): Structured intent describing the sale.

    Returns:
        data_manager.SaleRow: The committed sale.

    Raises:
        EmptyCart: If the cart has no lines.
        ValidationError: If the request is malformed.
        ProductNotFound: If a line references an unknown product.
        InsufficientStock: If current stock cannot cover a product.
        PermissionDenied: If no acting user is supplied.
        PersistenceError: If the workbook cannot be saved.
    """
    with context.lock:
        cart = validate_cart(command.cart)
        discount_percent = require_percent(command.discount_percent, "Discount")
        tax_percent = require_percent(command.tax_percent, "Tax")
        if not isinstance(command.payment_method, PaymentMethod):
            log.error("Unsupported payment method provided: %s", command.payment_method)
            raise ValidationError(f"Unsupported payment method: {command.payment_method}")
        if not isinstance(command.actor, ActorIdentity):
            log.warning("Rejected sale without an acting user")
            raise PermissionDenied("An acting user is required")

        _invalidate_cache(context, "products")
        products_by_id = dict(_ensure_products_cache(context)["by_id"])
        priced = price_cart(cart, products_by_id)
        totals = compute_totals(priced.subtotal, discount_percent, tax_percent)

        requested = requested_quantities(cart)
        previous = [products_by_id[product_id] for product_id in requested]
        new_levels = {product.product_id: product.stock - requested[product.product_id] for product in previous}
        log.debug("Reserving stock: %s", new_levels)

        timestamp = _resolve_timestamp(command.timestamp)
        sale = build_sale_record(
            priced,
            totals,
            sale_id=next_sale_id(_ensure_sales_cache(context)["all"]),
            timestamp=timestamp,
            actor=command.actor,
            payment_method=command.payment_method,
            customer_name=(command.customer_name or "").strip() or context.settings.default_customer_name,
            discount_percent=discount_percent,
            tax_percent=tax_percent,
        )

        def rollback() -> None:
            _restore_products(context, previous)
            data_manager.remove_sale(context.workbook, sale.sale_id)
            log.warning("Rolled back sale %s", sale.sale_id)

        try:
            for product in previous:
                apply_stock_delta(context, product.product_id, -requested[product.product_id], when=timestamp)
            data_manager.append_sale(context.workbook, sale)
        except Exception:
            rollback()
            _invalidate_cache(context, "products", "sales")
            raise
        _commit_or_rollback(context, rollback, f"sale {sale.sale_id}")

    log.info(
        "Committed sale %s: %d line(s), total=%s, cashier='%s'",
        sale.sale_id,
        len(sale.items),
        sale.total,
        sale.cashier_name,
    )
    return sale


# Sale history


def _normalize_bound(value: Optional[datetime | date], *, end: bool = False) -> Optional[datetime]:
    """Turn a filter bound into an aware UTC datetime.

    A plain ``date`` covers that whole day: midnight for a start bound and the
    last microsecond of the day for an end bound. Naive datetimes are taken to
    be UTC.
    """
    if value is None:
        return None
    if not isinstance(value, datetime):
        value = datetime.combine(value, time.max if end else time.min)
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def filter_sales(
    sales: Iterable[data_manager.SaleRow],
    start: Optional[datetime | date] = None,
    end: Optional[datetime | date] = None,
) -> List[data_manager.SaleRow]:
    """Keep sales with ``start <= created_at <= end``; a missing bound is open."""
    lower = _normalize_bound(start)
    upper = _normalize_bound(end, end=True)
    return [
        sale
        for sale in sales
        if (lower is None or sale.created_at >= lower) and (upper is None or sale.created_at <= upper)
    ]


def list_sales(
    context: RuntimeContext,
    start: Optional[datetime | date] = None,
    end: Optional[datetime | date] = None,
) -> List[data_manager.SaleRow]:
    """Return committed sales in commit order, optionally limited to a range.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        start (datetime | date | None): Inclusive lower bound.
        end (datetime | date | None): Inclusive upper bound.

    Returns:
        list[data_manager.SaleRow]: Matching sales.
    """
    return filter_sales(_ensure_sales_cache(context)["all"], start, end)


def get_sale(context: RuntimeContext, sale_id: int) -> data_manager.SaleRow:
    try:
        return _ensure_sales_cache(context)["by_id"][sale_id]
    except KeyError as exc:
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise MissingReferenceError(f"Sale with ID {sale_id} not found") from exc


# Analytics


def aggregate_sales(
    sales: Iterable[data_manager.SaleRow],
    products_by_id: Mapping[int, data_manager.ProductRow],
    categories_by_id: Mapping[int, data_manager.CategoryRow],
    *,
    start: Optional[datetime | date] = None,
    end: Optional[datetime | date] = None,
    limit: int = TOP_PRODUCTS_LIMIT,
) -> AnalyticsResult:
    """Aggregate committed sales into revenue, category and product figures.

    Category attribution uses each product's *current* category. Items whose
    product, or whose product's category, no longer exists are left out of
    ``sales_by_category`` but still count toward ``top_products``, which is
    keyed by product id and displays the name captured on the first item
    seen. Ties in quantity keep first-seen order.

    The function is pure; an empty history produces zeros and empty
    collections.

    Args:
        sales (Iterable[SaleRow]): Sale history to aggregate.
        products_by_id (Mapping[int, ProductRow]): Current catalog products.
        categories_by_id (Mapping[int, CategoryRow]): Current categories.
        start (datetime | date | None): Inclusive lower bound on
            ``created_at``.
        end (datetime | date | None): Inclusive upper bound on ``created_at``.
        limit (int): Maximum number of top products returned.

    Returns:
        AnalyticsResult: The aggregated figures.
    """
    filtered = filter_sales(sales, start, end)

    total_sales = sum((sale.total for sale in filtered), Decimal("0"))
    sales_by_category: Dict[str, Decimal] = {}
    per_product: Dict[int, Dict[str, Any]] = {}

    for sale in filtered:
        for item in sale.items:
            product = products_by_id.get(item.product_id)
            category = categories_by_id.get(product.category_id) if product is not None else None
            if category is not None:
                sales_by_category[category.name] = sales_by_category.get(category.name, Decimal("0")) + item.total

            entry = per_product.get(item.product_id)
            if entry is None:
                per_product[item.product_id] = {
                    "product_name": item.product_name,
                    "sku": item.sku,
                    "quantity": item.quantity,
                    "total": item.total,
                }
            else:
                entry["quantity"] += item.quantity
                entry["total"] += item.total

    ranked = sorted(per_product.items(), key=lambda pair: pair[1]["quantity"], reverse=True)
    top_products = [
        TopProduct(
            product_id=product_id,
            product_name=data["product_name"],
            sku=data["sku"],
            quantity=data["quantity"],
            total=data["total"],
        )
        for product_id, data in ranked[:limit]
    ]

    return AnalyticsResult(
        total_sales=total_sales,
        total_transactions=len(filtered),
        sales_by_category=sales_by_category,
        top_products=top_products,
    )


def calculate_sales_analytics(
    context: RuntimeContext,
    start: Optional[datetime | date] = None,
    end: Optional[datetime | date] = None,
) -> AnalyticsResult:
    """Run :func:`aggregate_sales` over the context's history and catalog.

    Reads cached state; a concurrent commit is either fully reflected or not
    at all.
    """
    result = aggregate_sales(
        _ensure_sales_cache(context)["all"],
        _ensure_products_cache(context)["by_id"],
        _ensure_categories_cache(context)["by_id"],
        start=start,
        end=end,
    )
    log.debug(
        "Calculated analytics: revenue=%s transactions=%s",
        result.total_sales,
        result.total_transactions,
    )
    return result


def list_low_stock_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Products whose stock is at or below their reorder point."""
    return [product for product in list_products(context) if product.is_low_stock]


def calculate_dashboard_stats(context: RuntimeContext) -> DashboardStats:
    """Summarize catalog size, low stock and revenue for the overview screen.

    Returns:
        DashboardStats: Product count, active category count, low-stock count
            and preview, all-time sales total and the newest sales.
    """
    products = list_products(context)
    low_stock = [product for product in products if product.is_low_stock]
    sales = _ensure_sales_cache(context)["all"]
    recent = sorted(sales, key=lambda sale: sale.created_at, reverse=True)[:RECENT_SALES_LIMIT]
    return DashboardStats(
        total_products=len(products),
        total_categories=len(list_categories(context, include_inactive=False)),
        low_stock_count=len(low_stock),
        total_sales=sum((sale.total for sale in sales), Decimal("0")),
        recent_sales=recent,
        low_stock_products=low_stock[:LOW_STOCK_PREVIEW_LIMIT],
    )


def format_money(amount: Decimal) -> str:
    """Round to cents for display only."""
    return str(amount.quantize(CENT, rounding=ROUND_HALF_UP))
