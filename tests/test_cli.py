"""Unit tests describing the CLI presentation layer contract."""

from __future__ import annotations

import argparse
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Iterable, Mapping

import pytest

from coldstore_erp import cli, constants, core_logic, errors


WRITE_COMMANDS = {
    "add-lot",
    "sale",
    "edit-sale",
    "mark-paid",
    "mark-due",
    "reverse-sale",
    "edit-lot",
    "reverse-lot-edit",
}

READ_COMMANDS = {
    "lots",
    "sales",
    "history",
    "dues",
    "verify-charges",
}

# ---------------------------------------------------------------------------
# Parser construction
# ---------------------------------------------------------------------------


def test_build_parser_sets_program_metadata():
    """build_parser should set user-facing program metadata."""

    parser = cli.build_parser()
    assert isinstance(parser, argparse.ArgumentParser)
    assert parser.prog == "coldstore-cli"
    assert "cold-storage" in (parser.description or "")


def test_configure_subcommands_registers_every_command(cli_parser):
    """configure_subcommands should wire mutating and reporting sub-commands."""

    command_table = cli.configure_subcommands(cli_parser)

    assert set(command_table) == WRITE_COMMANDS | READ_COMMANDS
    assert _registered_choices(cli_parser) == WRITE_COMMANDS | READ_COMMANDS


def test_write_and_read_commands_are_flagged(subparsers_action):
    """Only mutating commands should ask main to persist the workbook."""

    write_specs = cli.register_write_commands(subparsers_action)
    read_specs = cli.register_read_commands(subparsers_action)

    assert set(write_specs) == WRITE_COMMANDS
    assert set(read_specs) == READ_COMMANDS
    assert all(spec.writes for spec in write_specs.values())
    assert not any(spec.writes for spec in read_specs.values())


# ---------------------------------------------------------------------------
# Command registrations
# ---------------------------------------------------------------------------


def test_register_sale_command_configures_arguments():
    """register_sale_command should define sale-specific arguments."""

    namespace = _parse_with(
        cli.register_sale_command,
        [
            "sale",
            "--lot-id",
            "L1",
            "--quantity",
            "30",
            "--buyer",
            "Gupta Traders",
            "--basis",
            "totalRemaining",
            "--weighing",
            "10",
            "--status",
            "partial",
            "--paid-amount",
            "100",
            "--mode",
            "account",
        ],
    )

    assert namespace.lot_id == "L1"
    assert namespace.quantity == 30
    assert namespace.buyer_name == "Gupta Traders"
    assert namespace.basis == "totalRemaining"
    assert namespace.weighing == Decimal("10")
    assert namespace.paid_amount == Decimal("100")
    assert namespace.final is False


def test_register_sale_command_defaults_to_due_on_actual_basis():
    """A bare sale should bill the bags sold and leave the total due."""

    namespace = _parse_with(
        cli.register_sale_command,
        ["sale", "--lot-id", "L1", "--quantity", "3", "--buyer", "Verma"],
    )

    assert namespace.basis == constants.ChargeBasis.ACTUAL.value
    assert namespace.status == constants.PaymentStatus.DUE.value
    assert namespace.weighing is None


def test_register_sale_command_rejects_bad_decimal():
    """Money arguments must parse as decimals."""

    with pytest.raises(SystemExit):
        _parse_with(
            cli.register_sale_command,
            ["sale", "--lot-id", "L1", "--quantity", "3", "--buyer", "Verma", "--weighing", "ten"],
        )


def test_register_edit_lot_command_sale_flag_is_tristate():
    """Omitting both sale flags should leave the lot's flag untouched."""

    untouched = _parse_with(cli.register_edit_lot_command, ["edit-lot", "--lot-id", "L1"])
    cleared = _parse_with(cli.register_edit_lot_command, ["edit-lot", "--lot-id", "L1", "--not-for-sale"])
    listed = _parse_with(cli.register_edit_lot_command, ["edit-lot", "--lot-id", "L1", "--up-for-sale"])

    assert (untouched.up_for_sale, cleared.up_for_sale, listed.up_for_sale) == (None, False, True)


def test_register_history_command_requires_a_target():
    """history needs either a lot or a sale identifier."""

    with pytest.raises(SystemExit):
        _parse_with(cli.register_history_command, ["history"])


def test_register_sales_command_parses_dates():
    """The sales listing should accept ISO dates."""

    namespace = _parse_with(cli.register_sales_command, ["sales", "--from", "2026-03-01", "--to", "2026-03-31"])

    assert namespace.date_from == date(2026, 3, 1)
    assert namespace.date_to == date(2026, 3, 31)


# ---------------------------------------------------------------------------
# Runtime context and dispatch helpers
# ---------------------------------------------------------------------------


def test_load_runtime_context_validates_schema(config_factory):
    """The CLI refuses to work on a workbook of another schema version."""

    bundle = config_factory(schema_version="2.0.0")
    with pytest.raises(RuntimeError):
        cli.load_runtime_context(bundle.config_path)


def test_load_runtime_context_defaults_to_working_directory(monkeypatch, config_factory):
    """Without --config the CLI looks for config.ini in the working directory."""

    bundle = config_factory(make_relative=True)
    monkeypatch.chdir(bundle.directory)

    context = cli.load_runtime_context()
    assert context.settings.data_file == bundle.workbook_path.resolve()


def test_dispatch_command_invokes_executor(runtime_context):
    """dispatch_command should call the executor registered for the command."""

    calls = []
    table = {"dues": cli.CommandSpec("dues", "help", lambda _: None, lambda ctx, args: calls.append(args) or 5)}
    args = argparse.Namespace(command="dues")

    assert cli.dispatch_command(runtime_context, args, table) == 5
    assert calls == [args]


def test_dispatch_command_handles_unknown_commands(runtime_context):
    """dispatch_command should reject commands missing from the table."""

    with pytest.raises(KeyError):
        cli.dispatch_command(runtime_context, argparse.Namespace(command="bogus"), {})


def test_build_command_table_indexes_specs(command_spec_iterable):
    """build_command_table should key specs by name."""

    table = cli.build_command_table(command_spec_iterable)
    assert list(table) == ["alpha", "beta", "gamma"]


def test_build_command_table_detects_duplicate_commands(command_spec_iterable):
    """Registering the same name twice is a programming error."""

    with pytest.raises(ValueError):
        cli.build_command_table([*command_spec_iterable, command_spec_iterable[0]])


# ---------------------------------------------------------------------------
# Translation helpers
# ---------------------------------------------------------------------------


def test_translate_sale_returns_sale_command():
    """translate_sale should build the command consumed by the engine."""

    namespace = _parse_with(
        cli.register_sale_command,
        [
            "sale",
            "--lot-id",
            "L1",
            "--quantity",
            "30",
            "--buyer",
            "Gupta Traders",
            "--hammali-rate",
            "3",
            "--grading",
            "15",
            "--status",
            "paid",
            "--final",
        ],
    )
    command = cli.translate_sale(namespace)

    assert command.lot_id == "L1"
    assert command.quantity == 30
    assert command.final is True
    assert command.charge_basis is constants.ChargeBasis.ACTUAL
    assert command.overrides == core_logic.PricingOverrides(cold_charge_rate=None, hammali_rate=Decimal("3"))
    assert command.extras.grading == Decimal("15")
    assert command.extras.weighing == Decimal("0")
    assert command.payment == core_logic.PaymentIntent(constants.PaymentStatus.PAID, None, None)


def test_translate_sale_without_rate_flags_uses_storage_rates():
    """No override object should be built when no rate flag is given."""

    namespace = _parse_with(
        cli.register_sale_command,
        ["sale", "--lot-id", "L1", "--quantity", "3", "--buyer", "Verma"],
    )

    assert cli.translate_sale(namespace).overrides is None


def test_translate_edit_sale_keeps_unset_fields_empty():
    """Unset flags should map to None so the engine keeps current values."""

    namespace = _parse_with(
        cli.register_edit_sale_command,
        ["edit-sale", "--sale-id", "S1", "--paid-amount", "50"],
    )
    changes = cli.translate_edit_sale(namespace)

    assert changes == core_logic.SaleChanges(paid_amount=Decimal("50"))


def test_translate_add_lot_returns_lot_command():
    """translate_add_lot should convert choices into enums."""

    namespace = _parse_with(
        cli.register_add_lot_command,
        [
            "add-lot",
            "--farmer-name",
            "Suresh Patel",
            "--bag-type",
            "seed",
            "--quality",
            "medium",
            "--bags",
            "120",
            "--net-weight",
            "6000",
            "--chamber",
            "B",
        ],
    )
    command = cli.translate_add_lot(namespace)

    assert command.bag_type is constants.BagCategory.SEED
    assert command.quality is constants.Quality.MEDIUM
    assert command.original_size == 120
    assert command.net_weight == Decimal("6000")
    assert command.chamber == "B"
    assert command.lot_no is None


def test_translate_sales_filters_makes_end_date_inclusive():
    """--to should cover the whole of its last day."""

    namespace = _parse_with(
        cli.register_sales_command,
        ["sales", "--from", "2026-03-01", "--to", "2026-03-31", "--status", "due"],
    )
    filters = cli.translate_sales_filters(namespace)

    assert filters["start"] == datetime(2026, 3, 1, tzinfo=UTC)
    assert filters["end"] == datetime(2026, 4, 1, tzinfo=UTC)
    assert filters["payment_status"] is constants.PaymentStatus.DUE
    assert filters["include_reversed"] is False


# ---------------------------------------------------------------------------
# Error handling and persistence
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (errors.InsufficientInventory("L1", 5, 2), 2),
        (errors.AlreadyReversed("done"), 2),
        (FileNotFoundError("config.ini"), 3),
        (errors.StorageFailure("disk"), 4),
        (errors.InconsistentChargeState("drift"), 4),
        (RuntimeError("schema"), 1),
    ],
)
def test_handle_cli_error_returns_exit_code(error: Exception, expected: int, caplog: pytest.LogCaptureFixture):
    """handle_cli_error should map exceptions to stable exit codes."""

    caplog.set_level("ERROR")
    assert cli.handle_cli_error(error) == expected
    assert caplog.records


def test_persist_workbook_handles_read_only_workbooks(runtime_context, monkeypatch):
    """persist_workbook should turn permission problems into runtime errors."""

    def fake_persist(_: core_logic.RuntimeContext) -> None:
        raise PermissionError("read-only")

    monkeypatch.setattr(cli.core_logic, "persist_context", fake_persist)
    with pytest.raises(RuntimeError, match="read-only"):
        cli.persist_workbook(runtime_context)


# ---------------------------------------------------------------------------
# Program entry point
# ---------------------------------------------------------------------------


def test_main_persists_write_commands(monkeypatch, runtime_context):
    """main should persist workbook changes when a write command succeeds."""

    parser = _stub_parser(command="sale")
    command_table = {"sale": cli.CommandSpec("sale", "help", lambda _: parser, lambda *_: 0, writes=True)}
    _install_stubs(monkeypatch, parser, command_table, runtime_context)

    persisted = {}
    monkeypatch.setattr(cli, "persist_workbook", lambda ctx: persisted.setdefault("context", ctx))

    assert cli.main(["sale"]) == 0
    assert persisted["context"] is runtime_context


def test_main_skips_persisting_reports(monkeypatch, runtime_context):
    """Read-only commands never write the workbook."""

    parser = _stub_parser(command="dues")
    command_table = {"dues": cli.CommandSpec("dues", "help", lambda _: parser, lambda *_: 0)}
    _install_stubs(monkeypatch, parser, command_table, runtime_context)
    monkeypatch.setattr(cli, "persist_workbook", lambda _: pytest.fail("reports must not persist"))

    assert cli.main(["dues"]) == 0


def test_main_handles_business_errors(monkeypatch, runtime_context):
    """main should surface business rule violations as non-zero exits without saving."""

    parser = _stub_parser(command="sale")

    def failing(*_: object) -> int:
        raise errors.InsufficientInventory("L1", 5, 2)

    command_table = {"sale": cli.CommandSpec("sale", "help", lambda _: parser, failing, writes=True)}
    _install_stubs(monkeypatch, parser, command_table, runtime_context)
    monkeypatch.setattr(cli, "persist_workbook", lambda _: pytest.fail("failed commands must not persist"))

    assert cli.main(["sale"]) == 2


def test_main_round_trip_through_workbook(config_file, capsys):
    """Registering a lot and selling from it should land on disk."""

    assert (
        cli.main(
            [
                "--config",
                str(config_file),
                "add-lot",
                "--farmer-name",
                "Suresh Patel",
                "--bag-type",
                "wafer",
                "--quality",
                "good",
                "--bags",
                "100",
            ]
        )
        == 0
    )
    [lot] = core_logic.list_lots(core_logic.load_runtime_context(config_file))

    exit_code = cli.main(
        [
            "--config",
            str(config_file),
            "sale",
            "--lot-id",
            lot.lot_id,
            "--quantity",
            "30",
            "--buyer",
            "Gupta Traders",
            "--weighing",
            "10",
        ]
    )
    assert exit_code == 0
    assert "total=220.0" in capsys.readouterr().out

    context = core_logic.load_runtime_context(config_file)
    assert core_logic.get_lot(context, lot.lot_id).remaining_size == 70
    [sale] = core_logic.list_sales(context)
    assert sale.due_amount == Decimal("220")


def test_main_reports_oversell(config_file):
    """An oversell exits with the business error code and leaves the lot intact."""

    cli.main(
        [
            "--config",
            str(config_file),
            "add-lot",
            "--farmer-name",
            "Suresh Patel",
            "--bag-type",
            "wafer",
            "--quality",
            "good",
            "--bags",
            "5",
        ]
    )
    [lot] = core_logic.list_lots(core_logic.load_runtime_context(config_file))

    exit_code = cli.main(
        ["--config", str(config_file), "sale", "--lot-id", lot.lot_id, "--quantity", "6", "--buyer", "Verma"]
    )

    assert exit_code == 2
    context = core_logic.load_runtime_context(config_file)
    assert core_logic.get_lot(context, lot.lot_id).remaining_size == 5


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _parse_with(register, argv: list[str]) -> argparse.Namespace:
    """Register a single command on a fresh parser and parse ``argv``."""

    parser = argparse.ArgumentParser(prog="cli")
    subparsers = parser.add_subparsers(dest="command")
    spec = register(subparsers)
    spec.register(subparsers)
    return parser.parse_args(argv)


def _install_stubs(monkeypatch, parser, command_table: Mapping[str, cli.CommandSpec], context) -> None:
    monkeypatch.setattr(cli, "build_parser", lambda: parser)
    monkeypatch.setattr(cli, "configure_subcommands", lambda _: command_table)
    monkeypatch.setattr(cli, "load_runtime_context", lambda path=None: context)


def _stub_parser(command: str) -> argparse.ArgumentParser:
    """Create a stub parser that always returns the supplied command."""

    class _Stub(argparse.ArgumentParser):
        def parse_args(self, args: Iterable[str] | None = None, namespace: argparse.Namespace | None = None):  # type: ignore[override]
            return argparse.Namespace(command=command, config=None)

    return _Stub(prog="test")


def _registered_choices(parser: argparse.ArgumentParser) -> set[str]:
    """Return the set of registered sub-command names for assertion helpers."""

    actions = getattr(parser, "_subparsers", None)
    if not actions:
        return set()
    group_actions = actions._group_actions  # type: ignore[attr-defined]
    if not group_actions:
        return set()
    return set(group_actions[0].choices)  # type: ignore[index]
