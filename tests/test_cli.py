"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from pos_ledger import cli, core_logic, data_manager
from pos_ledger.constants import PaymentMethod


WRITE_COMMANDS = {
    "add-product",
    "edit-product",
    "delete-product",
    "add-category",
    "rename-category",
    "delete-category",
    "add-supplier",
    "add-client",
    "sale",
    "cancel-sale",
    "add-purchase",
    "receive-purchase",
}

READ_COMMANDS = {
    "stock",
    "history",
    "sales",
    "profit",
    "low-stock",
    "valuation",
    "verify",
}


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return set(action.choices)
    return set()


def _run(config_path, *argv: str) -> int:
    return cli.main(["--config", str(config_path), *argv])


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "pos-ledger"
    assert "POS ledger" in (parser.description or "")


def test_configure_subcommands_registers_every_command():
    parser = cli.build_parser()
    command_table = cli.configure_subcommands(parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(parser) == WRITE_COMMANDS | READ_COMMANDS


def test_sale_command_collects_repeated_items():
    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    args = parser.parse_args(
        ["sale", "--item", "P1:2", "--item", "P2:1:3.50", "--payment-method", "card"]
    )

    assert args.command == "sale"
    assert args.items == [("P1", 2, None), ("P2", 1, Decimal("3.50"))]
    assert args.payment_method == "card"


def test_parse_item_rejects_malformed_values():
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_item("P1")
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_item("P1:two")
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_item(":1")


def test_price_options_reject_malformed_amounts(capsys):
    parser = cli.build_parser()
    cli.configure_subcommands(parser)

    args = parser.parse_args(["add-product", "--name", "Cola", "--selling-price", "2.50"])
    assert args.selling_price == Decimal("2.50")
    assert args.cost_price == Decimal("0")

    with pytest.raises(SystemExit) as excinfo:
        parser.parse_args(["add-product", "--name", "Cola", "--selling-price", "abc"])
    assert excinfo.value.code == 2
    with pytest.raises(SystemExit) as excinfo:
        parser.parse_args(["edit-product", "--product-id", "P1", "--cost-price", "1,5"])
    assert excinfo.value.code == 2
    assert "Invalid amount" in capsys.readouterr().err


def test_parse_date_assumes_utc_for_naive_values():
    assert cli.parse_date("2024-02-01") == datetime(2024, 2, 1, tzinfo=UTC)
    with pytest.raises(argparse.ArgumentTypeError):
        cli.parse_date("yesterday")


# ---------------------------------------------------------------------------
# Dispatch helpers
# ---------------------------------------------------------------------------


def test_dispatch_command_invokes_executor(context):
    called = {}

    def execute(ctx, args):
        called["context"] = ctx
        return 0

    spec = cli.CommandSpec("ping", "help", lambda s: s.add_parser("ping"), execute)
    result = cli.dispatch_command(context, argparse.Namespace(command="ping"), {"ping": spec})

    assert result == 0
    assert called["context"] is context


def test_dispatch_command_handles_unknown_commands(context):
    with pytest.raises(KeyError):
        cli.dispatch_command(context, argparse.Namespace(command="unknown"), {})


def test_build_command_table_detects_duplicate_commands():
    specs = [
        cli.CommandSpec("alpha", "A", lambda s: s.add_parser("alpha"), lambda c, a: 0),
        cli.CommandSpec("alpha", "Duplicate", lambda s: s.add_parser("alpha"), lambda c, a: 0),
    ]
    with pytest.raises(ValueError):
        cli.build_command_table(specs)


def test_load_runtime_context_validates_schema(config_factory):
    bundle = config_factory(schema_version="0.1.0")
    with pytest.raises(RuntimeError):
        cli.load_runtime_context(bundle.config_path)


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def test_translate_sale_defaults_price_and_client(context, make_product):
    product = make_product(selling_price="4.50")
    args = argparse.Namespace(
        items=[(product.product_id, 2, None)],
        payment_method="cash",
        client_id=None,
        customer_name="",
        customer_phone="",
    )

    command = cli.translate_sale(context, args)

    assert command.items == [core_logic.SaleLine(product.product_id, 2, Decimal("4.50"))]
    assert command.client_id == context.settings.default_client_id
    assert command.payment_method is PaymentMethod.CASH


def test_translate_sale_keeps_casual_customer(context, make_product):
    product = make_product()
    args = argparse.Namespace(
        items=[(product.product_id, 1, Decimal("1.00"))],
        payment_method="card",
        client_id=None,
        customer_name="Ana",
        customer_phone="555",
    )

    command = cli.translate_sale(context, args)

    assert command.client_id is None
    assert command.customer_name == "Ana"


def test_translate_purchase_items_requires_cost():
    assert cli.translate_purchase_items([("P1", 3, Decimal("1.25"))]) == [
        data_manager.PurchaseItem("P1", 3, Decimal("1.25"))
    ]
    with pytest.raises(core_logic.ValidationError):
        cli.translate_purchase_items([("P1", 3, None)])


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "error, expected",
    [
        (core_logic.BusinessRuleViolation("invalid"), 2),
        (core_logic.ValidationError("bad quantity"), 2),
        (FileNotFoundError("missing"), 3),
        (data_manager.StoreFailure("disk full"), 4),
        (ValueError("bad value"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    caplog.set_level("ERROR")
    assert cli.handle_cli_error(error) == expected
    assert any(str(error) in record.getMessage() for record in caplog.records)


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def test_main_persists_successful_commands(config_factory, capsys):
    bundle = config_factory()

    assert _run(bundle.config_path, "add-product", "--name", "Cola", "--selling-price", "2.00", "--stock", "5") == 0
    product_id = capsys.readouterr().out.strip()

    assert _run(bundle.config_path, "sale", "--item", f"{product_id}:2") == 0
    assert _run(bundle.config_path, "verify") == 0

    context = core_logic.load_runtime_context(bundle.config_path)
    assert core_logic.get_product(context, product_id).stock == 3
    [sale] = core_logic.list_sales(context)
    assert sale.client_id == bundle.default_client_id
    assert sale.total == Decimal("4.00")


def test_main_does_not_persist_failed_commands(config_factory, capsys):
    bundle = config_factory()
    assert _run(bundle.config_path, "add-product", "--name", "Cola", "--selling-price", "2.00", "--stock", "5") == 0
    product_id = capsys.readouterr().out.strip()

    # The unknown product aborts the command; nothing reaches the workbook on disk.
    exit_code = _run(
        bundle.config_path,
        "sale",
        "--item",
        f"{product_id}:1",
        "--item",
        "PROD-404:1:1.00",
    )

    assert exit_code == 2
    context = core_logic.load_runtime_context(bundle.config_path)
    assert core_logic.get_product(context, product_id).stock == 5
    assert core_logic.list_sales(context) == []


def test_main_reports_missing_config(tmp_path):
    assert _run(tmp_path / "missing.ini", "stock") == 3


def test_main_purchase_flow_updates_cost(config_factory, capsys):
    bundle = config_factory()
    _run(bundle.config_path, "add-supplier", "--name", "Acme")
    supplier_id = capsys.readouterr().out.strip()
    _run(bundle.config_path, "add-product", "--name", "Cola", "--selling-price", "2.00", "--cost-price", "1.00")
    product_id = capsys.readouterr().out.strip()

    assert _run(bundle.config_path, "add-purchase", "--supplier-id", supplier_id, "--item", f"{product_id}:6:1.10") == 0
    purchase_id = capsys.readouterr().out.split()[0]
    assert _run(bundle.config_path, "receive-purchase", "--purchase-id", purchase_id) == 0
    assert _run(bundle.config_path, "receive-purchase", "--purchase-id", purchase_id) == 2

    context = core_logic.load_runtime_context(bundle.config_path)
    product = core_logic.get_product(context, product_id)
    assert product.stock == 6
    assert product.cost_price == Decimal("1.1")


def test_main_verify_exits_non_zero_on_inconsistent_history(config_factory, capsys):
    bundle = config_factory()
    _run(bundle.config_path, "add-product", "--name", "Cola", "--selling-price", "2.00", "--stock", "5")
    product_id = capsys.readouterr().out.strip()

    context = core_logic.load_runtime_context(bundle.config_path)
    product = core_logic.get_product(context, product_id)
    data_manager.update(
        context.workbook,
        data_manager.PRODUCTS,
        replace(product, stock=50),
    )
    core_logic.persist_context(context)

    assert _run(bundle.config_path, "verify") == 1
    assert product_id in capsys.readouterr().out


def test_reports_are_headed_with_store_name(config_factory, capsys):
    bundle = config_factory(store_name="Corner Shop")
    _run(bundle.config_path, "add-product", "--name", "Cola", "--selling-price", "2.00", "--cost-price", "1.00", "--stock", "3")
    capsys.readouterr()

    assert _run(bundle.config_path, "valuation") == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "STORE\tCorner Shop"
    assert lines[-1] == "TOTAL\t3.00"

    assert _run(bundle.config_path, "profit") == 0
    assert capsys.readouterr().out.splitlines()[0] == "STORE\tCorner Shop"
