"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Mapping

import pytest

from retail_pos import cli, constants, core_logic

from conftest import make_sale


WRITE_COMMANDS = {
    "sale",
    "add-category",
    "delete-category",
    "edit-category",
    "add-product",
    "delete-product",
    "edit-product",
    "restock",
}

READ_COMMANDS = {
    "stock",
    "low-stock",
    "sales",
    "analytics",
    "dashboard",
}


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return set(action.choices)
    return set()


def _parse(*argv: str) -> argparse.Namespace:
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    return parser.parse_args(list(argv))


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "retail-pos"


def test_configure_subcommands_registers_all_commands(cli_parser):
    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    assert all(isinstance(spec, cli.CommandSpec) for spec in specs.values())
    assert WRITE_COMMANDS <= set(subparsers_action.choices)


def test_register_read_commands_returns_command_specs(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    assert READ_COMMANDS <= set(subparsers_action.choices)


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def test_sale_command_collects_repeated_items():
    namespace = _parse(
        "--user",
        "admin",
        "sale",
        "--item",
        "1:3",
        "--item",
        "2:1",
        "--payment-method",
        "card",
        "--discount",
        "10",
        "--tax",
        "5.5",
        "--customer",
        "Dana",
    )

    assert namespace.command == "sale"
    assert namespace.user == "admin"
    assert namespace.items == [core_logic.CartLine(1, 3), core_logic.CartLine(2, 1)]
    assert namespace.payment_method == "card"
    assert namespace.discount == Decimal("10")
    assert namespace.tax == Decimal("5.5")
    assert namespace.customer_name == "Dana"


def test_sale_command_defaults():
    namespace = _parse("sale", "--item", "1:1")
    assert namespace.payment_method == constants.PaymentMethod.CASH.value
    assert namespace.discount == Decimal("0")
    assert namespace.customer_name is None


@pytest.mark.parametrize("token", ["1", "a:2", "1:b"])
def test_sale_command_rejects_bad_item_tokens(token):
    with pytest.raises(SystemExit):
        _parse("sale", "--item", token)


def test_sale_command_rejects_unknown_payment_method():
    with pytest.raises(SystemExit):
        _parse("sale", "--item", "1:1", "--payment-method", "barter")


def test_date_range_arguments_accept_dates_and_timestamps():
    namespace = _parse("analytics", "--start", "2024-01-01", "--end", "2024-01-31T18:00:00+00:00")
    assert namespace.start == date(2024, 1, 1)
    assert namespace.end == datetime(2024, 1, 31, 18, tzinfo=UTC)

    with pytest.raises(SystemExit):
        _parse("sales", "--start", "yesterday")


def test_add_product_command_arguments():
    namespace = _parse(
        "add-product",
        "--name",
        "Lamp",
        "--sku",
        "L001",
        "--category-id",
        "1",
        "--price",
        "15.50",
        "--stock",
        "4",
    )
    assert namespace.category_id == 1
    assert namespace.price == Decimal("15.50")
    assert namespace.stock == 4
    assert namespace.reorder_point == 0


def test_edit_product_command_defaults_to_stored_values():
    namespace = _parse("edit-product", "--product-id", "2", "--price", "19.99")
    assert namespace.product_id == 2
    assert namespace.price == Decimal("19.99")
    assert namespace.stock is None
    assert namespace.sku is None


def test_edit_category_command_restricts_status():
    namespace = _parse("edit-category", "--category-id", "3", "--status", "active")
    assert namespace.status == "active"
    assert namespace.name is None
    with pytest.raises(SystemExit):
        _parse("edit-category", "--category-id", "3", "--status", "archived")


# ---------------------------------------------------------------------------
# Dispatch helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_checks_schema(config_factory):
    bundle = config_factory(schema_version="0.1")
    with pytest.raises(RuntimeError):
        cli.load_runtime_context(bundle.config_path)


def test_load_runtime_context_uses_provided_path(config_file, monkeypatch):
    sentinel = object()
    seen = {}

    def fake_loader(path):
        seen["path"] = path
        return sentinel

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    monkeypatch.setattr(core_logic, "ensure_schema_version", lambda context: None)

    assert cli.load_runtime_context(config_file) is sentinel
    assert seen["path"] == config_file


def test_dispatch_command_invokes_executor(runtime_context, command_table_entry):
    command_name, spec = command_table_entry
    args = argparse.Namespace(command=command_name)
    result = cli.dispatch_command(runtime_context, args, {command_name: spec})
    assert result == 0
    assert spec.execute.__dict__["called"] is True


def test_dispatch_command_handles_unknown_commands(runtime_context):
    with pytest.raises(KeyError):
        cli.dispatch_command(runtime_context, argparse.Namespace(command="unknown"), {})


def test_build_command_table_indexes_specs(command_spec_iterable):
    table = cli.build_command_table(command_spec_iterable)
    assert set(table) == {spec.name for spec in command_spec_iterable}


def test_build_command_table_detects_duplicate_commands():
    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def test_translate_sale_builds_command(runtime_context):
    args = _parse("sale", "--item", "1:2", "--payment-method", "digital", "--discount", "5")

    command = cli.translate_sale(runtime_context, args)

    assert command.cart == [core_logic.CartLine(1, 2)]
    assert command.payment_method is constants.PaymentMethod.DIGITAL
    assert command.discount_percent == Decimal("5")
    assert command.actor.username == runtime_context.settings.default_username


def test_translate_add_product_uses_requested_user(runtime_context):
    args = _parse(
        "--user", "admin", "add-product", "--name", "Lamp", "--sku", "L1", "--category-id", "2", "--price", "3"
    )

    command = cli.translate_add_product(runtime_context, args)

    assert command.actor.role is constants.Role.ADMIN
    assert command.category_id == 2
    assert command.price == Decimal("3")


def test_resolve_actor_unknown_user_raises(runtime_context):
    args = argparse.Namespace(user="nobody")
    with pytest.raises(core_logic.MissingReferenceError):
        cli.resolve_actor(runtime_context, args)


# ---------------------------------------------------------------------------
# Command execution helpers
# ---------------------------------------------------------------------------


def test_run_sale_invokes_bll_and_prints_receipt(runtime_context, monkeypatch, capsys):
    args = argparse.Namespace()
    sale = make_sale(5, datetime(2024, 2, 1, 9, 30, tzinfo=UTC), [(1, "Widget", "W001", Decimal("10"), 2)])
    command = object()
    monkeypatch.setattr(cli, "translate_sale", lambda context, value: command)
    called = {}

    def fake_commit(context, cmd):
        called["context"] = context
        called["cmd"] = cmd
        return sale

    monkeypatch.setattr(cli.core_logic, "commit_sale", fake_commit)

    assert cli.run_sale(runtime_context, args) == 0
    assert called["context"] is runtime_context
    assert called["cmd"] is command
    output = capsys.readouterr().out
    assert "Receipt #5" in output
    assert "Total: 20.00" in output


def test_run_restock_invokes_bll(runtime_context, monkeypatch, capsys):
    args = _parse("--user", "admin", "restock", "--product-id", "3", "--quantity", "4")

    assert cli.run_restock(runtime_context, args) == 0
    assert core_logic.get_product(runtime_context, 3).stock == 6
    assert "stock is now 6" in capsys.readouterr().out


def test_translate_edit_product_fills_omitted_fields(runtime_context):
    args = _parse("--user", "admin", "edit-product", "--product-id", "2", "--stock", "7")

    command = cli.translate_edit_product(runtime_context, args)

    assert (command.name, command.sku, command.category_id) == ("Shirt", "S001", 2)
    assert command.price == Decimal("20.00")
    assert (command.stock, command.reorder_point) == (7, 2)
    assert command.description is None
    assert command.actor.role is constants.Role.ADMIN


def test_run_edit_product_updates_catalog(runtime_context, capsys):
    args = _parse("--user", "admin", "edit-product", "--product-id", "3", "--price", "6.50", "--stock", "9")

    assert cli.run_edit_product(runtime_context, args) == 0
    cable = core_logic.get_product(runtime_context, 3)
    assert (cable.price, cable.stock, cable.sku) == (Decimal("6.50"), 9, "C001")
    assert "price 6.50, stock 9" in capsys.readouterr().out


def test_run_edit_category_reactivates(runtime_context, capsys):
    args = _parse("--user", "admin", "edit-category", "--category-id", "3", "--status", "active")

    assert cli.run_edit_category(runtime_context, args) == 0
    active = core_logic.list_categories(runtime_context, include_inactive=False)
    assert [c.name for c in active] == ["Electronics", "Clothing", "Archive"]
    assert "Archive (active)" in capsys.readouterr().out


def test_run_stock_report_lists_products(runtime_context, capsys):
    assert cli.run_stock_report(runtime_context, argparse.Namespace()) == 0
    output = capsys.readouterr().out
    assert "W001" in output
    assert "S001" in output


def test_run_low_stock_report(runtime_context, capsys):
    assert cli.run_low_stock_report(runtime_context, argparse.Namespace()) == 0
    output = capsys.readouterr().out
    assert "C001" in output
    assert "W001" not in output


def test_run_analytics_report_passes_range(runtime_context, monkeypatch, capsys):
    seen = {}
    result = core_logic.AnalyticsResult(
        total_sales=Decimal("12.5"),
        total_transactions=1,
        sales_by_category={"Books": Decimal("12.5")},
        top_products=[core_logic.TopProduct(4, "Novel", "B1", 1, Decimal("12.5"))],
    )

    def fake_analytics(context, start, end):
        seen["range"] = (start, end)
        return result

    monkeypatch.setattr(cli.core_logic, "calculate_sales_analytics", fake_analytics)
    args = _parse("analytics", "--start", "2024-01-01")

    assert cli.run_analytics_report(runtime_context, args) == 0
    assert seen["range"] == (date(2024, 1, 1), None)
    output = capsys.readouterr().out
    assert "Total sales: 12.50" in output
    assert "Novel" in output


def test_run_dashboard_report(runtime_context, capsys):
    assert cli.run_dashboard_report(runtime_context, argparse.Namespace()) == 0
    output = capsys.readouterr().out
    assert "Products: 3" in output
    assert "Active categories: 2" in output


def test_format_receipt_shows_discount_and_tax():
    sale = make_sale(1, datetime(2024, 2, 1, tzinfo=UTC), [(1, "Widget", "W001", Decimal("10.00"), 3)])
    sale = core_logic.build_sale_record(
        core_logic.PricedCart(
            lines=tuple(
                core_logic.PricedLine(i.product_id, i.product_name, i.sku, i.price, i.quantity, i.total)
                for i in sale.items
            ),
            subtotal=sale.subtotal,
        ),
        core_logic.compute_totals(sale.subtotal, Decimal("10"), Decimal("5")),
        sale_id=1,
        timestamp=sale.created_at,
        actor=core_logic.ActorIdentity(2, "cashier", constants.Role.CASHIER),
        payment_method=constants.PaymentMethod.CARD,
        customer_name="Dana",
        discount_percent=Decimal("10"),
        tax_percent=Decimal("5"),
    )

    receipt = cli.format_receipt(sale, "Corner Shop")

    assert receipt.splitlines()[0] == "Corner Shop"
    assert "3 x 10.00 = 30.00" in receipt
    assert "Discount (10%): -3.00" in receipt
    assert "Tax (5%): 1.35" in receipt
    assert "Total: 28.35" in receipt
    assert "Paid by: card" in receipt


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (core_logic.BusinessRuleViolation("invalid"), 2),
        (core_logic.InsufficientStock(1, 3, 2), 2),
        (FileNotFoundError("missing"), 3),
        (core_logic.PersistenceError("disk full"), 4),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    caplog.set_level("ERROR")
    exit_code = cli.handle_cli_error(error)
    assert exit_code == expected
    assert caplog.records


def test_handle_cli_error_logs_human_readable_message(caplog: pytest.LogCaptureFixture):
    caplog.set_level("ERROR")
    cli.handle_cli_error(core_logic.BusinessRuleViolation("invalid"))
    assert any("invalid" in record.getMessage() for record in caplog.records)


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def test_main_executes_specified_command(monkeypatch, runtime_context):
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)
    called = {}

    def fake_dispatch(context: core_logic.RuntimeContext, args: argparse.Namespace, table: Mapping[str, cli.CommandSpec]) -> int:
        called["context"] = context
        called["args"] = args
        return 0

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)

    assert cli.main(["stock"]) == 0
    assert called["context"] is runtime_context
    assert called["args"].command == "stock"


def test_main_handles_bll_errors(monkeypatch, runtime_context):
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: runtime_context)

    def fake_dispatch(*_: object) -> int:
        raise core_logic.BusinessRuleViolation("invalid")

    monkeypatch.setattr(cli, "dispatch_command", fake_dispatch)
    handled = {}

    def fake_handle(error: Exception) -> int:
        handled["error"] = error
        return 99

    monkeypatch.setattr(cli, "handle_cli_error", fake_handle)
    assert cli.main(["stock"]) == 99
    assert isinstance(handled["error"], core_logic.BusinessRuleViolation)


def test_main_missing_config_returns_three(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert cli.main(["--config", str(Path(tmp_path) / "absent.ini"), "stock"]) == 3
