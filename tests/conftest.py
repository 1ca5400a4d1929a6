"""Shared pytest fixtures and utilities for retail POS tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Sequence
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from retail_pos import cli, constants, core_logic, data_manager  # noqa: E402
from retail_pos.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_USERNAME = "cashier"
SEEDED_AT = "2024-01-01T00:00:00+00:00"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "DefaultUser = {default_username}\n"
)

# Small deterministic catalog: one product per category plus a low-stock item.
TEST_CATEGORIES = (
    data_manager.CategoryRow(1, "Electronics", "Devices", "active", SEEDED_AT),
    data_manager.CategoryRow(2, "Clothing", "Apparel", "active", SEEDED_AT),
    data_manager.CategoryRow(3, "Archive", "Retired lines", "inactive", SEEDED_AT),
)
TEST_PRODUCTS = (
    data_manager.ProductRow(1, "Widget", "W001", 1, Decimal("10.00"), 5, 1, "", SEEDED_AT),
    data_manager.ProductRow(2, "Shirt", "S001", 2, Decimal("20.00"), 10, 2, "", SEEDED_AT),
    data_manager.ProductRow(3, "Cable", "C001", 1, Decimal("5.00"), 2, 3, "", SEEDED_AT),
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_username: str
    schema_version: str
    store_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the repository root path."""

    return PROJECT_ROOT


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder.

    By default the workbook carries the test catalog above instead of the
    shipped sample catalog so quantities and prices stay predictable.
    """

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "master_workbook.xlsx",
        categories: Sequence[data_manager.CategoryRow] = TEST_CATEGORIES,
        products: Sequence[data_manager.ProductRow] = TEST_PRODUCTS,
        include_sample_catalog: bool = False,
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(
            workbook_path,
            include_sample_catalog=include_sample_catalog,
            overwrite=True,
        )
        if categories or products:
            workbook = data_manager.open_workbook(workbook_path)
            for category in categories:
                data_manager.append_category(workbook, category)
            for product in products:
                data_manager.append_product(workbook, product)
            data_manager.save_workbook(workbook, workbook_path)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    unique_dir = f"workbook_{uuid.uuid4().hex}"
    return workbook_factory(subdir=unique_dir)


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_username: str = DEFAULT_USERNAME,
        **workbook_kwargs,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}", **workbook_kwargs)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
                default_username=default_username,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_username=default_username,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def admin_actor(runtime_context: core_logic.RuntimeContext) -> core_logic.ActorIdentity:
    return core_logic.resolve_actor(runtime_context, "admin")


@pytest.fixture
def cashier_actor(runtime_context: core_logic.RuntimeContext) -> core_logic.ActorIdentity:
    return core_logic.resolve_actor(runtime_context, "cashier")


# ---------------------------------------------------------------------------
# Record builders
# ---------------------------------------------------------------------------


def make_sale(
    sale_id: int,
    created_at: datetime,
    lines: Sequence[tuple[int, str, str, Decimal, int]],
    *,
    cashier: str = "cashier",
) -> data_manager.SaleRow:
    """Build a committed sale from ``(product_id, name, sku, price, qty)`` lines."""

    items = tuple(
        data_manager.SaleItemRow(
            sale_id=sale_id,
            line_number=index,
            product_id=product_id,
            product_name=name,
            sku=sku,
            price=price,
            quantity=quantity,
            total=price * quantity,
        )
        for index, (product_id, name, sku, price, quantity) in enumerate(lines, start=1)
    )
    subtotal = sum((item.total for item in items), Decimal("0"))
    return data_manager.SaleRow(
        sale_id=sale_id,
        created_at=created_at,
        items=items,
        subtotal=subtotal,
        discount_percent=Decimal("0"),
        discount=Decimal("0"),
        tax_percent=Decimal("0"),
        tax=Decimal("0"),
        total=subtotal,
        payment_method=constants.PaymentMethod.CASH.value,
        customer_name=constants.DEFAULT_CUSTOMER_NAME,
        cashier_id=2,
        cashier_name=cashier,
    )


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="retail-pos", description="Retail POS")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_table_entry() -> tuple[str, cli.CommandSpec]:
    """Provide a placeholder command table entry for dispatch tests."""

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        execute.__dict__["called"] = True
        return 0

    def register(
        subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    ) -> argparse.ArgumentParser:
        return subparsers.add_parser("catalog-test")

    spec = cli.CommandSpec(
        name="catalog-test",
        help_text="help",
        register=register,
        execute=execute,
    )
    return "catalog-test", spec


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        store_name="Test Store",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_username=DEFAULT_USERNAME,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` so ``now`` returns a predetermined moment.

    Only ``now`` is provided; use it for write paths that stamp timestamps.
    """

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
