"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock

import pytest

from standkasse import cli, constants, core_logic, log, use_log_directory


WRITE_COMMANDS = {
    "start-event",
    "sell",
    "cancel",
    "tip",
    "stock-set",
    "refill",
    "close-event",
    "reset-orders",
    "set-passcode",
    "add-product",
}

READ_COMMANDS = {
    "products",
    "stock",
    "orders",
    "report",
    "kassensturz",
    "archive",
}

PASSCODE = "4711"


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    for action in parser._actions:
        if isinstance(action, argparse._SubParsersAction):
            return set(action.choices)
    return set()


def _value(output: str, label: str) -> str:
    for line in output.splitlines():
        if line.startswith(label):
            return line.split(":", 1)[1].strip()
    raise AssertionError(f"{label} not printed")


def _parse(*argv: str) -> argparse.Namespace:
    parser = cli.build_parser()
    cli.configure_subcommands(parser)
    return parser.parse_args(list(argv))


# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "standkasse"
    assert "Standkasse" in (parser.description or "")


def test_configure_subcommands_registers_all_commands(cli_parser):
    """configure_subcommands should wire mutating and reporting sub-commands."""

    command_table = cli.configure_subcommands(cli_parser)
    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_register_write_commands_returns_command_specs(subparsers_action):
    specs = cli.register_write_commands(subparsers_action)
    assert set(specs) == WRITE_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.help_text
        assert spec.name in subparsers_action.choices


def test_register_read_commands_returns_command_specs(subparsers_action):
    specs = cli.register_read_commands(subparsers_action)
    assert set(specs) == READ_COMMANDS
    for spec in specs.values():
        assert isinstance(spec, cli.CommandSpec)
        assert spec.name in subparsers_action.choices


def test_sell_command_configures_arguments():
    """The sell parser accepts repeated items and overrides."""

    namespace = _parse(
        "sell",
        "--item", "s1:2",
        "--item", "s3",
        "--price-override", "s3=9,50",
        "--payment", "Cash",
        "--tax-type", "takeaway",
        "--tendered", "30",
        "--passcode", PASSCODE,
    )
    assert namespace.command == "sell"
    assert namespace.item == ["s1:2", "s3"]
    assert namespace.price_override == ["s3=9,50"]
    assert namespace.payment == "Cash"
    assert namespace.tax_type == "takeaway"
    assert namespace.tendered == "30"


def test_sell_command_rejects_unknown_payment():
    with pytest.raises(SystemExit):
        _parse("sell", "--item", "s1", "--payment", "Bitcoin", "--tax-type", "onsite")


def test_cancel_command_configures_arguments():
    namespace = _parse("cancel", "--order-id", "O1", "--reason", "Other", "--note", "Tisch 4", "--passcode", "1")
    assert namespace.order_id == "O1"
    assert namespace.reason == "Other"
    assert namespace.note == "Tisch 4"


def test_close_event_count_defaults_to_empty():
    assert _parse("close-event").count == []
    assert _parse("close-event").yes is False
    assert _parse("close-event", "--yes").yes is True
    assert _parse("close-event", "--count", "20_note=2").count == ["20_note=2"]


def test_set_passcode_uses_new_passcode_destination():
    namespace = _parse("set-passcode", "--current", "1234", "--new", "9999")
    assert namespace.new_passcode == "9999"


# ---------------------------------------------------------------------------
# Runtime context helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_uses_provided_path(config_file, monkeypatch):
    """load_runtime_context should load settings from the specified config path."""

    loaded = core_logic.load_runtime_context(config_file)

    def fake_loader(path: Path | None) -> core_logic.RuntimeContext:
        assert path == config_file
        return loaded

    monkeypatch.setattr(core_logic, "load_runtime_context", fake_loader)
    assert cli.load_runtime_context(config_file) is loaded


def test_load_runtime_context_supports_defaults(monkeypatch, config_file):
    """load_runtime_context should resolve config.ini from the working directory."""

    monkeypatch.chdir(config_file.parent)
    context = cli.load_runtime_context()
    assert context.settings.stall_name == "Test Stand"


def test_load_runtime_context_checks_schema(config_factory):
    bundle = config_factory(schema_version="0.9")
    with pytest.raises(RuntimeError):
        cli.load_runtime_context(bundle.config_path)


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


def test_parse_pair_rejects_missing_half():
    assert cli.parse_pair("s1=3") == ("s1", "3")
    with pytest.raises(ValueError):
        cli.parse_pair("s1=")
    with pytest.raises(ValueError):
        cli.parse_pair("s1")


def test_parse_quantities_adds_repeated_products():
    assert cli.parse_quantities(["s1=3", "s2=1", "s1=2"]) == {"s1": 5, "s2": 1}
    with pytest.raises(ValueError):
        cli.parse_quantities(["s1=drei"])


def test_parse_cash_count_validates_denominations():
    assert cli.parse_cash_count(["20_note=2", "50_cent=4"]) == {"20_note": 2, "50_cent": 4}
    with pytest.raises(ValueError):
        cli.parse_cash_count(["3_note=1"])


def test_translate_start_event_defaults_balance():
    command = cli.translate_start_event(argparse.Namespace(name="Fest", balance=None))
    assert command == core_logic.StartEventCommand(name="Fest", initial_balance=Decimal("0.00"))


def test_translate_sell_builds_lines(active_context):
    """Repeated items merge and overrides keep the catalog price."""

    args = _parse(
        "sell",
        "--item", "s1:2",
        "--item", "s1",
        "--item", "s3",
        "--price-override", "s3=9,50",
        "--payment", "Cash",
        "--tax-type", "onsite",
        "--tendered", "50",
        "--passcode", PASSCODE,
    )
    command = cli.translate_sell(active_context, args)

    first, second = command.lines
    assert (first.product_id, first.quantity, first.unit_price) == ("s1", 3, Decimal("10.00"))
    assert first.is_overridden is False
    assert (second.product_id, second.unit_price, second.original_price) == ("s3", Decimal("9.50"), Decimal("11.00"))
    assert second.is_overridden is True
    assert command.payment_method is constants.PaymentMethod.CASH
    assert command.tendered == Decimal("50.00")


def test_translate_sell_override_needs_passcode(active_context):
    args = _parse(
        "sell", "--item", "s1", "--price-override", "s1=1", "--payment", "Card", "--tax-type", "onsite",
    )
    with pytest.raises(core_logic.AuthorizationError):
        cli.translate_sell(active_context, args)


def test_translate_sell_override_for_unsold_product(active_context):
    args = _parse(
        "sell", "--item", "s1", "--price-override", "s2=1", "--payment", "Card", "--tax-type", "onsite",
        "--passcode", PASSCODE,
    )
    with pytest.raises(ValueError):
        cli.translate_sell(active_context, args)


def test_translate_cancel_returns_cancel_command():
    args = argparse.Namespace(order_id="O1", reason="Breakage", passcode="1", note=None)
    command = cli.translate_cancel(args)
    assert command.reason_code is constants.CancelReason.BREAKAGE
    assert command.order_id == "O1"


def test_translate_add_product_returns_product():
    args = argparse.Namespace(product_id="d1", name="Wasser", price="2,50", category="Getränke", color="#fff")
    product = cli.translate_add_product(args)
    assert product.unit_price == Decimal("2.50")
    assert product.display_color == "#fff"


# ---------------------------------------------------------------------------
# Command execution helpers
# ---------------------------------------------------------------------------


def test_run_sell_prints_change(active_context, capsys):
    args = _parse("sell", "--item", "s1:2", "--payment", "Cash", "--tax-type", "onsite", "--tendered", "25")
    assert cli.run_sell(active_context, args) == 0

    output = capsys.readouterr().out
    assert "Order #1" in output
    assert "Change: 5.00" in output


def test_run_cancel_invokes_bll(active_context, monkeypatch, capsys):
    """run_cancel should delegate to the business logic layer."""

    called = {}

    def fake_cancel(context, command):
        called["context"] = context
        called["command"] = command
        return Mock(order_number=7)

    monkeypatch.setattr(cli.core_logic, "cancel_order", fake_cancel)
    args = _parse("cancel", "--order-id", "O1", "--reason", "Return", "--passcode", PASSCODE)
    assert cli.run_cancel(active_context, args) == 0
    assert called["context"] is active_context
    assert called["command"].reason_code is constants.CancelReason.RETURN
    assert "Order #7 cancelled." in capsys.readouterr().out


def test_run_stock_set_and_refill_print_levels(active_context, capsys):
    cli.run_stock_set(active_context, _parse("stock-set", "--item", "s1=4"))
    cli.run_refill(active_context, _parse("refill", "--item", "s1=2"))

    lines = capsys.readouterr().out.strip().splitlines()
    assert lines[-1].split() == ["s1", "6", "/", "6"]


def test_run_kassensturz_report(active_context, capsys):
    args = _parse("kassensturz", "--count", "50_note=1")
    assert cli.run_kassensturz_report(active_context, args) == 0
    output = capsys.readouterr().out
    assert _value(output, "Expected") == "50.00"
    assert _value(output, "Difference") == "0.00"


def test_run_event_report_prints_vat(active_context, capsys):
    cli.run_sell(active_context, _parse("sell", "--item", "s1", "--payment", "Card", "--tax-type", "takeaway"))
    assert cli.run_event_report(active_context, _parse("report")) == 0
    output = capsys.readouterr().out
    assert _value(output, "Revenue") == "10.00"
    assert "VAT  7%" in output


def test_run_archive_report_lists_events(active_context, capsys):
    cli.run_close_event(active_context, _parse("close-event", "--yes", "--count", "50_note=1"))
    assert cli.run_archive_report(active_context, _parse("archive")) == 0
    output = capsys.readouterr().out
    assert "2026-0001" in output
    assert "difference 0.00" in output


def test_run_products_report_filters_category(context, capsys):
    cli.run_products_report(context, _parse("products", "--category", "Flammkuchen"))
    assert len(capsys.readouterr().out.strip().splitlines()) == 5


# ---------------------------------------------------------------------------
# Error handling and entry point
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("error", "code"),
    [
        (core_logic.SoldOutError("gone"), 2),
        (core_logic.AuthorizationError("no"), 2),
        (FileNotFoundError("config.ini"), 3),
        (ValueError("bad"), 4),
        (RuntimeError("boom"), 1),
    ],
)
def test_handle_cli_error_maps_exit_codes(error, code):
    assert cli.handle_cli_error(error) == code


def test_main_runs_command_against_workbook(config_file, capsys):
    """main should load the configured workbook and persist changes."""

    assert cli.main(["--config", str(config_file), "start-event", "--name", "Fest", "--balance", "20"]) == 0
    assert cli.main(["--config", str(config_file), "sell", "--item", "s2", "--payment", "Card", "--tax-type", "onsite"]) == 0

    context = core_logic.load_runtime_context(config_file)
    assert [order.order_number for order in core_logic.list_orders(context)] == [1]
    assert core_logic.get_session(context).active_initial_balance == Decimal("20.00")


def test_main_reports_business_rule_violation(config_file):
    assert cli.main(["--config", str(config_file), "tip", "--amount", "1"]) == 2


def test_main_reports_missing_config(tmp_path):
    assert cli.main(["--config", str(tmp_path / "missing.ini"), "products"]) == 3


def test_main_reports_invalid_input(config_file):
    cli.main(["--config", str(config_file), "start-event", "--name", "Fest"])
    assert cli.main(["--config", str(config_file), "tip", "--amount", "3"]) == 4


def test_main_rejects_amount_beyond_precision(config_file):
    assert cli.main(["--config", str(config_file), "start-event", "--name", "Fest", "--balance", "1e30"]) == 4


def test_run_close_event_requires_confirmation(active_context, capsys):
    """Without --yes nothing is archived and the event stays open."""

    assert cli.run_close_event(active_context, _parse("close-event")) == 1
    assert "--yes" in capsys.readouterr().out
    assert core_logic.get_session(active_context).is_event_active is True
    assert core_logic.list_archive(active_context) == []

    assert cli.run_close_event(active_context, _parse("close-event", "--yes")) == 0
    assert core_logic.get_session(active_context).is_event_active is False


def test_load_runtime_context_logs_beside_workbook(config_file, monkeypatch):
    monkeypatch.delenv("STANDKASSE_LOG_DIR", raising=False)
    context = cli.load_runtime_context(config_file)
    log_file = context.settings.data_file.parent / ".logs" / "standkasse.log"

    log.warning("Till opened for %s", context.settings.stall_name)

    assert "Till opened for Test Stand" in log_file.read_text(encoding="utf-8")


def test_log_directory_can_be_pinned(tmp_path, monkeypatch):
    monkeypatch.setenv("STANDKASSE_LOG_DIR", str(tmp_path / "pinned"))
    assert use_log_directory(tmp_path / "beside-workbook") == tmp_path / "pinned"
    assert (tmp_path / "pinned" / "standkasse.log").exists()
    assert not (tmp_path / "beside-workbook").exists()
