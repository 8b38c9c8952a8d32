"""Shared pytest fixtures and utilities for the cold-storage ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

for candidate in (SRC_DIR, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from coldstore_erp import cli, constants, core_logic, data_manager  # noqa: E402
from coldstore_erp.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_OPERATOR = "ramesh"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StorageName = {storage_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Pricing]\n"
    "ChargeUnit = {charge_unit}\n"
    "WaferRate = 7\n"
    "WaferHammali = 2\n"
    "SeedRate = 9\n"
    "SeedHammali = 3\n\n"
    "[Session]\n"
    "Operator = {operator}\n"
    "AccessLevel = {access_level}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    storage_name: str
    charge_unit: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized ledger workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "ledger.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh ledger workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        storage_name: str = "Test Storage",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        charge_unit: str = "bag",
        operator: str = DEFAULT_OPERATOR,
        access_level: str = "edit",
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                storage_name=storage_name,
                schema_version=schema_version,
                charge_unit=charge_unit,
                operator=operator,
                access_level=access_level,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            storage_name=storage_name,
            charge_unit=charge_unit,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a per-bag runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def quintal_context(config_factory: Callable[..., ConfigBundle]) -> core_logic.RuntimeContext:
    """Load a runtime context for a storage that charges per quintal."""

    bundle = config_factory(charge_unit="quintal")
    return core_logic.load_runtime_context(bundle.config_path)


@pytest.fixture
def view_context(config_factory: Callable[..., ConfigBundle]) -> core_logic.RuntimeContext:
    """Load a runtime context whose session may only read."""

    bundle = config_factory(access_level="view", operator="clerk")
    return core_logic.load_runtime_context(bundle.config_path)


@pytest.fixture
def lot_factory() -> Callable[..., data_manager.LotRow]:
    """Register lots through the business layer with sensible defaults."""

    def _create_lot(
        context: core_logic.RuntimeContext,
        *,
        bags: int = 100,
        bag_type: constants.BagCategory = constants.BagCategory.WAFER,
        net_weight: Decimal | None = None,
        farmer_name: str = "Suresh Patel",
        **overrides,
    ) -> data_manager.LotRow:
        command = core_logic.LotCommand(
            farmer_name=farmer_name,
            bag_type=bag_type,
            quality=constants.Quality.GOOD,
            original_size=bags,
            net_weight=net_weight,
            **overrides,
        )
        return core_logic.create_lot(context, command)

    return _create_lot


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            fromisoformat = staticmethod(datetime.fromisoformat)

            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="coldstore-cli", description="Cold storage CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


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
