"""Data access layer for the cold-storage ledger.

This module provides low-level helpers that read from and write to the ledger
workbook. Business logic belongs elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending or updating
   individual rows.
4. Conditional updates and snapshots: the check-and-write primitives on lot
   quantities and the reversal flag, plus whole-workbook snapshots used by the
   business layer to roll a failed transaction back.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import AccessLevel, BagCategory, ChargeUnit, SheetName
from .errors import AlreadyReversed, InsufficientInventory, MissingReferenceError


CONFIG_FILE_NAME = "config.ini"
LOTS_SHEET = SheetName.LOTS.value
SALES_SHEET = SheetName.SALES.value
LOT_HISTORY_SHEET = SheetName.LOT_HISTORY.value
SALE_HISTORY_SHEET = SheetName.SALE_HISTORY.value

SHEET_COLUMNS: Dict[str, Tuple[str, ...]] = {
    LOTS_SHEET: (
        "LotID",
        "LotNo",
        "StorageYear",
        "FarmerName",
        "ContactNumber",
        "Village",
        "District",
        "State",
        "BagType",
        "Quality",
        "OriginalSize",
        "RemainingSize",
        "NetWeight",
        "Chamber",
        "Floor",
        "Position",
        "BaseChargeBilled",
        "UpForSale",
        "CreatedAt",
    ),
    SALES_SHEET: (
        "SaleID",
        "LotID",
        "SaleType",
        "Quantity",
        "BuyerName",
        "PricePerKg",
        "ChargeUnit",
        "ChargeBasis",
        "ColdChargeRate",
        "HammaliRate",
        "NetWeight",
        "OriginalLotSize",
        "RemainingAtSale",
        "BasisQuantity",
        "BaseAlreadyBilled",
        "SetsBaseChargeFlag",
        "SplitStrategy",
        "BaseCharge",
        "ColdChargeAmount",
        "HammaliAmount",
        "WeighingCharge",
        "ExtraHandlingPerBag",
        "GradingCharge",
        "TotalCharge",
        "PaidAmount",
        "DueAmount",
        "PaymentStatus",
        "PaymentMode",
        "Reversed",
        "SoldAt",
        "ReversedAt",
    ),
    LOT_HISTORY_SHEET: (
        "HistoryID",
        "LotID",
        "ChangeType",
        "ChangedAt",
        "PreviousData",
        "NewData",
        "SaleID",
        "SoldQuantity",
        "ChargePerBag",
        "BuyerName",
        "SalePaymentStatus",
        "SaleCharge",
        "ChangedBy",
    ),
    SALE_HISTORY_SHEET: (
        "HistoryID",
        "SaleID",
        "FieldChanged",
        "OldValue",
        "NewValue",
        "ChangedAt",
        "ChangedBy",
    ),
}


@dataclass(frozen=True)
class StorageRates:
    """Configured rates for one bag category; ``rate`` includes hammali."""

    rate: Decimal
    hammali: Decimal

    @property
    def cold_charge(self) -> Decimal:
        return self.rate - self.hammali


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    storage_name: str
    schema_version: str
    charge_unit: ChargeUnit
    wafer_rates: StorageRates
    seed_rates: StorageRates
    operator: str
    access_level: AccessLevel

    def rates_for(self, bag_type: BagCategory) -> StorageRates:
        """Wafer lots bill on wafer rates; seed and ration lots on seed rates."""
        return self.wafer_rates if bag_type is BagCategory.WAFER else self.seed_rates


@dataclass(frozen=True)
class LotRow:
    """In-memory view of a row from the ``Lots`` sheet."""

    lot_id: str
    lot_no: str
    storage_year: int
    farmer_name: str
    contact_number: Optional[str]
    village: Optional[str]
    district: Optional[str]
    state: Optional[str]
    bag_type: str
    quality: str
    original_size: int
    remaining_size: int
    net_weight: Optional[Decimal]
    chamber: Optional[str]
    floor: Optional[int]
    position: Optional[str]
    base_charge_billed: bool
    up_for_sale: bool
    created_at: str


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a row from the ``Sales`` sheet."""

    sale_id: str
    lot_id: str
    sale_type: str
    quantity: int
    buyer_name: str
    price_per_kg: Optional[Decimal]
    charge_unit: str
    charge_basis: str
    cold_charge_rate: Decimal
    hammali_rate: Decimal
    net_weight: Optional[Decimal]
    original_lot_size: int
    remaining_at_sale: int
    basis_quantity: int
    base_already_billed: bool
    sets_base_charge_flag: bool
    split_strategy: str
    base_charge: Decimal
    cold_charge_amount: Decimal
    hammali_amount: Decimal
    weighing_charge: Decimal
    extra_handling_per_bag: Decimal
    grading_charge: Decimal
    total_charge: Decimal
    paid_amount: Decimal
    due_amount: Decimal
    payment_status: str
    payment_mode: Optional[str]
    reversed: bool
    sold_at: str
    reversed_at: Optional[str]


@dataclass(frozen=True)
class LotHistoryRow:
    """In-memory view of a row from the ``LotHistory`` sheet."""

    history_id: str
    lot_id: str
    change_type: str
    changed_at: str
    previous_data: str
    new_data: str
    sale_id: Optional[str]
    sold_quantity: Optional[int]
    # Total charge billed divided by bags sold; empty on lot edits.
    charge_per_bag: Optional[Decimal]
    buyer_name: Optional[str]
    sale_payment_status: Optional[str]
    sale_charge: Optional[Decimal]
    changed_by: Optional[str]


@dataclass(frozen=True)
class SaleEditRow:
    """In-memory view of a row from the ``SaleHistory`` sheet."""

    history_id: str
    sale_id: str
    field_changed: str
    old_value: Optional[str]
    new_value: Optional[str]
    changed_at: str
    changed_by: Optional[str]


WorkbookSnapshot = Dict[str, List[Tuple[Any, ...]]]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. When no explicit path is given the function
    walks up from the current working directory toward the filesystem root
    looking for a file named ``CONFIG_FILE_NAME``.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
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

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

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


def _parse_decimal_option(parser: configparser.ConfigParser, section: str, option: str) -> Decimal:
    raw = parser.get(section, option)
    try:
        value = Decimal(raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid decimal for {section}.{option}: {raw!r}") from exc
    if value < Decimal("0"):
        raise ValueError(f"{section}.{option} must be zero or positive")
    return value


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are expanded against ``base_path`` (or the
    working directory). Rates are parsed as decimals and the hammali portion
    of each category may not exceed its combined rate.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor a relative
            ``DataFile`` entry.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If a rate, charge unit or access level is invalid.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        storage_name = parser.get("System", "StorageName")
        schema_version = parser.get("System", "SchemaVersion")
        charge_unit_raw = parser.get("Pricing", "ChargeUnit")
        wafer_rates = StorageRates(
            rate=_parse_decimal_option(parser, "Pricing", "WaferRate"),
            hammali=_parse_decimal_option(parser, "Pricing", "WaferHammali"),
        )
        seed_rates = StorageRates(
            rate=_parse_decimal_option(parser, "Pricing", "SeedRate"),
            hammali=_parse_decimal_option(parser, "Pricing", "SeedHammali"),
        )
        operator = parser.get("Session", "Operator")
        access_raw = parser.get("Session", "AccessLevel")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    for label, rates in (("Wafer", wafer_rates), ("Seed", seed_rates)):
        if rates.hammali > rates.rate:
            raise ValueError(f"{label}Hammali cannot exceed {label}Rate")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        storage_name=storage_name,
        schema_version=schema_version,
        charge_unit=ChargeUnit(charge_unit_raw.strip().lower()),
        wafer_rates=wafer_rates,
        seed_rates=seed_rates,
        operator=operator,
        access_level=AccessLevel(access_raw.strip().lower()),
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and verify every managed sheet is present.

    Args:
        data_file (Path): Filesystem path to the ledger workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
        KeyError: If the workbook lacks one of the managed sheets.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    missing = [name for name in SHEET_COLUMNS if name not in wb.sheetnames]
    if missing:
        raise KeyError(f"Workbook is missing sheets: {', '.join(missing)}")
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterable[Tuple[Any, ...]]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_lots(workbook: Workbook) -> Iterable[LotRow]:
    """Iterate over lot records stored on the ``Lots`` worksheet."""

    for raw in _iter_raw_rows(workbook, LOTS_SHEET):
        yield deserialize_lot(raw)


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Iterate over sale records stored on the ``Sales`` worksheet."""

    for raw in _iter_raw_rows(workbook, SALES_SHEET):
        yield deserialize_sale(raw)


def iter_lot_history(workbook: Workbook) -> Iterable[LotHistoryRow]:
    """Stream lot history entries in the order they were appended."""

    for raw in _iter_raw_rows(workbook, LOT_HISTORY_SHEET):
        yield deserialize_lot_history(raw)


def iter_sale_history(workbook: Workbook) -> Iterable[SaleEditRow]:
    """Stream sale edit entries in the order they were appended."""

    for raw in _iter_raw_rows(workbook, SALE_HISTORY_SHEET):
        yield deserialize_sale_edit(raw)


def read_lot(workbook: Workbook, lot_id: str) -> LotRow:
    """Load a single lot by identifier.

    Raises:
        MissingReferenceError: If no row carries ``lot_id``.
    """

    raw = _read_row(workbook, LOTS_SHEET, "LotID", lot_id)
    if raw is None:
        raise MissingReferenceError(f"Unknown lot id: {lot_id}")
    return deserialize_lot(raw)


def read_sale(workbook: Workbook, sale_id: str) -> SaleRow:
    """Load a single sale by identifier.

    Raises:
        MissingReferenceError: If no row carries ``sale_id``.
    """

    raw = _read_row(workbook, SALES_SHEET, "SaleID", sale_id)
    if raw is None:
        raise MissingReferenceError(f"Unknown sale id: {sale_id}")
    return deserialize_sale(raw)


def _read_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[Tuple[Any, ...]]:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        return None
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=row_index, max_row=row_index, values_only=True):
        return raw
    return None


def append_lot(workbook: Workbook, record: LotRow) -> None:
    """Append a lot record to the ``Lots`` worksheet."""

    workbook[LOTS_SHEET].append(serialize_lot(record))


def append_sale(workbook: Workbook, record: SaleRow) -> None:
    """Append a sale record to the ``Sales`` worksheet."""

    workbook[SALES_SHEET].append(serialize_sale(record))


def append_lot_history(workbook: Workbook, record: LotHistoryRow) -> None:
    """Append an entry to the append-only ``LotHistory`` worksheet."""

    workbook[LOT_HISTORY_SHEET].append(serialize_lot_history(record))


def append_sale_edit(workbook: Workbook, record: SaleEditRow) -> None:
    """Append an entry to the append-only ``SaleHistory`` worksheet."""

    workbook[SALE_HISTORY_SHEET].append(serialize_sale_edit(record))


def update_lot(workbook: Workbook, lot_id: str, *, field_values: Dict[str, Any]) -> None:
    """Update selected columns for an existing lot.

    Args:
        workbook (Workbook): Workbook containing the lots sheet.
        lot_id (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the lot or any referenced column cannot be found.
    """

    _update_row(workbook, LOTS_SHEET, "LotID", lot_id, field_values)


def update_sale(workbook: Workbook, sale_id: str, *, field_values: Dict[str, Any]) -> None:
    """Update selected columns for an existing sale.

    Raises:
        KeyError: If the sale or any referenced column cannot be found.
    """

    _update_row(workbook, SALES_SHEET, "SaleID", sale_id, field_values)


def _update_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str, field_values: Dict[str, Any]) -> None:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"Row not found in {sheet_name}: {key_value}")

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)

    unknown = [name for name in field_values if name not in header_map]
    if unknown:
        raise KeyError(f"Unknown {sheet_name} field(s): {', '.join(unknown)}")
    for field, value in field_values.items():
        sheet.cell(row=row_index, column=header_map[field], value=_to_cell(value))


def _header_map(sheet: Any) -> Dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if row[key_col_index - 1] == key_value:
            return row_idx

    return None


def decrement_remaining(workbook: Workbook, lot_id: str, quantity: int) -> LotRow:
    """Conditionally remove ``quantity`` bags from a lot.

    The check and the write happen in one call against the same row; callers
    run it inside the business layer's locked transaction so no other writer
    can interleave between them.

    Returns:
        LotRow: The lot as it reads after the decrement.

    Raises:
        MissingReferenceError: If the lot does not exist.
        InsufficientInventory: If fewer than ``quantity`` bags remain. Nothing
            is written in that case.
    """

    lot = read_lot(workbook, lot_id)
    if quantity < 1 or lot.remaining_size < quantity:
        raise InsufficientInventory(lot_id, quantity, lot.remaining_size)
    remaining = lot.remaining_size - quantity
    update_lot(workbook, lot_id, field_values={"RemainingSize": remaining})
    return replace(lot, remaining_size=remaining)


def increment_remaining(workbook: Workbook, lot_id: str, quantity: int) -> LotRow:
    """Return ``quantity`` bags to a lot, never exceeding its original size."""

    lot = read_lot(workbook, lot_id)
    remaining = min(lot.original_size, lot.remaining_size + quantity)
    update_lot(workbook, lot_id, field_values={"RemainingSize": remaining})
    return replace(lot, remaining_size=remaining)


def mark_sale_reversed(workbook: Workbook, sale_id: str, *, reversed_at: str) -> SaleRow:
    """Flip a sale's ``Reversed`` flag from ``False`` to ``True``.

    Raises:
        MissingReferenceError: If the sale does not exist.
        AlreadyReversed: If the flag is already set; nothing is written.
    """

    sale = read_sale(workbook, sale_id)
    if sale.reversed:
        raise AlreadyReversed(f"Sale '{sale_id}' is already reversed")
    update_sale(workbook, sale_id, field_values={"Reversed": True, "ReversedAt": reversed_at})
    return replace(sale, reversed=True, reversed_at=reversed_at)


def snapshot_workbook(workbook: Workbook) -> WorkbookSnapshot:
    """Capture the data rows of every managed sheet."""

    return {name: [tuple(raw) for raw in _iter_raw_rows(workbook, name)] for name in SHEET_COLUMNS}


def restore_workbook(workbook: Workbook, snapshot: WorkbookSnapshot) -> None:
    """Rewrite every managed sheet so it holds exactly the snapshot rows."""

    for name, rows in snapshot.items():
        sheet = workbook[name]
        for row_idx, values in enumerate(rows, start=2):
            for col_idx, value in enumerate(values, start=1):
                sheet.cell(row=row_idx, column=col_idx, value=value)
        first_stale = len(rows) + 2
        if sheet.max_row >= first_stale:
            sheet.delete_rows(first_stale, sheet.max_row - first_stale + 1)


def _to_cell(value: Any) -> Any:
    # Enums are persisted as their plain values.
    return getattr(value, "value", value)


def _dec(raw: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    if raw is None or raw == "":
        return default
    return Decimal(str(raw))


def _int(raw: Any, default: Optional[int] = None) -> Optional[int]:
    if raw is None or raw == "":
        return default
    return int(raw)


def _text(raw: Any) -> Optional[str]:
    return str(raw) if raw is not None else None


def serialize_lot(record: LotRow) -> list[object]:
    """Convert a lot dataclass into the ``Lots`` column ordering."""

    return [
        record.lot_id,
        record.lot_no,
        record.storage_year,
        record.farmer_name,
        record.contact_number,
        record.village,
        record.district,
        record.state,
        record.bag_type,
        record.quality,
        record.original_size,
        record.remaining_size,
        record.net_weight,
        record.chamber,
        record.floor,
        record.position,
        record.base_charge_billed,
        record.up_for_sale,
        record.created_at,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    """Convert a sale dataclass into the ``Sales`` column ordering."""

    return [
        record.sale_id,
        record.lot_id,
        record.sale_type,
        record.quantity,
        record.buyer_name,
        record.price_per_kg,
        record.charge_unit,
        record.charge_basis,
        record.cold_charge_rate,
        record.hammali_rate,
        record.net_weight,
        record.original_lot_size,
        record.remaining_at_sale,
        record.basis_quantity,
        record.base_already_billed,
        record.sets_base_charge_flag,
        record.split_strategy,
        record.base_charge,
        record.cold_charge_amount,
        record.hammali_amount,
        record.weighing_charge,
        record.extra_handling_per_bag,
        record.grading_charge,
        record.total_charge,
        record.paid_amount,
        record.due_amount,
        record.payment_status,
        record.payment_mode,
        record.reversed,
        record.sold_at,
        record.reversed_at,
    ]


def serialize_lot_history(record: LotHistoryRow) -> list[object]:
    """Convert a lot history dataclass into the ``LotHistory`` column ordering."""

    return [
        record.history_id,
        record.lot_id,
        record.change_type,
        record.changed_at,
        record.previous_data,
        record.new_data,
        record.sale_id,
        record.sold_quantity,
        record.charge_per_bag,
        record.buyer_name,
        record.sale_payment_status,
        record.sale_charge,
        record.changed_by,
    ]


def serialize_sale_edit(record: SaleEditRow) -> list[object]:
    """Convert a sale edit dataclass into the ``SaleHistory`` column ordering."""

    return [
        record.history_id,
        record.sale_id,
        record.field_changed,
        record.old_value,
        record.new_value,
        record.changed_at,
        record.changed_by,
    ]


def deserialize_lot(raw_row: Sequence[object]) -> LotRow:
    """Convert a raw worksheet row into a strongly typed lot record.

    Identifier and lot-number cells are coerced to ``str`` so Excel's numeric
    interpretation of values such as ``"12"`` does not leak into lookups.
    """

    (
        lot_id,
        lot_no,
        storage_year,
        farmer_name,
        contact_number,
        village,
        district,
        state,
        bag_type,
        quality,
        original_size,
        remaining_size,
        net_weight,
        chamber,
        floor,
        position,
        base_charge_billed,
        up_for_sale,
        created_at,
    ) = raw_row

    return LotRow(
        lot_id=str(lot_id),
        lot_no=str(lot_no),
        storage_year=_int(storage_year, 0),
        farmer_name=str(farmer_name) if farmer_name is not None else "",
        contact_number=_text(contact_number),
        village=_text(village),
        district=_text(district),
        state=_text(state),
        bag_type=str(bag_type),
        quality=str(quality),
        original_size=_int(original_size, 0),
        remaining_size=_int(remaining_size, 0),
        net_weight=_dec(net_weight),
        chamber=_text(chamber),
        floor=_int(floor),
        position=_text(position),
        base_charge_billed=bool(base_charge_billed),
        up_for_sale=bool(up_for_sale),
        created_at=str(created_at) if created_at is not None else "",
    )


def deserialize_sale(raw_row: Sequence[object]) -> SaleRow:
    """Convert a raw worksheet row into a strongly typed sale record.

    Money columns become :class:`~decimal.Decimal` instances, defaulting to
    zero when blank, so totals can be re-derived without float drift.
    """

    (
        sale_id,
        lot_id,
        sale_type,
        quantity,
        buyer_name,
        price_per_kg,
        charge_unit,
        charge_basis,
        cold_charge_rate,
        hammali_rate,
        net_weight,
        original_lot_size,
        remaining_at_sale,
        basis_quantity,
        base_already_billed,
        sets_base_charge_flag,
        split_strategy,
        base_charge,
        cold_charge_amount,
        hammali_amount,
        weighing_charge,
        extra_handling_per_bag,
        grading_charge,
        total_charge,
        paid_amount,
        due_amount,
        payment_status,
        payment_mode,
        reversed_flag,
        sold_at,
        reversed_at,
    ) = raw_row

    zero = Decimal("0")
    return SaleRow(
        sale_id=str(sale_id),
        lot_id=str(lot_id),
        sale_type=str(sale_type),
        quantity=_int(quantity, 0),
        buyer_name=str(buyer_name) if buyer_name is not None else "",
        price_per_kg=_dec(price_per_kg),
        charge_unit=str(charge_unit),
        charge_basis=str(charge_basis),
        cold_charge_rate=_dec(cold_charge_rate, zero),
        hammali_rate=_dec(hammali_rate, zero),
        net_weight=_dec(net_weight),
        original_lot_size=_int(original_lot_size, 0),
        remaining_at_sale=_int(remaining_at_sale, 0),
        basis_quantity=_int(basis_quantity, 0),
        base_already_billed=bool(base_already_billed),
        sets_base_charge_flag=bool(sets_base_charge_flag),
        split_strategy=str(split_strategy),
        base_charge=_dec(base_charge, zero),
        cold_charge_amount=_dec(cold_charge_amount, zero),
        hammali_amount=_dec(hammali_amount, zero),
        weighing_charge=_dec(weighing_charge, zero),
        extra_handling_per_bag=_dec(extra_handling_per_bag, zero),
        grading_charge=_dec(grading_charge, zero),
        total_charge=_dec(total_charge, zero),
        paid_amount=_dec(paid_amount, zero),
        due_amount=_dec(due_amount, zero),
        payment_status=str(payment_status),
        payment_mode=_text(payment_mode),
        reversed=bool(reversed_flag),
        sold_at=str(sold_at) if sold_at is not None else "",
        reversed_at=_text(reversed_at),
    )


def deserialize_lot_history(raw_row: Sequence[object]) -> LotHistoryRow:
    """Convert a raw worksheet row into a lot history record."""

    (
        history_id,
        lot_id,
        change_type,
        changed_at,
        previous_data,
        new_data,
        sale_id,
        sold_quantity,
        charge_per_bag,
        buyer_name,
        sale_payment_status,
        sale_charge,
        changed_by,
    ) = raw_row

    return LotHistoryRow(
        history_id=str(history_id),
        lot_id=str(lot_id),
        change_type=str(change_type),
        changed_at=str(changed_at) if changed_at is not None else "",
        previous_data=str(previous_data) if previous_data is not None else "{}",
        new_data=str(new_data) if new_data is not None else "{}",
        sale_id=_text(sale_id),
        sold_quantity=_int(sold_quantity),
        charge_per_bag=_dec(charge_per_bag),
        buyer_name=_text(buyer_name),
        sale_payment_status=_text(sale_payment_status),
        sale_charge=_dec(sale_charge),
        changed_by=_text(changed_by),
    )


def deserialize_sale_edit(raw_row: Sequence[object]) -> SaleEditRow:
    """Convert a raw worksheet row into a sale edit record."""

    history_id, sale_id, field_changed, old_value, new_value, changed_at, changed_by = raw_row
    return SaleEditRow(
        history_id=str(history_id),
        sale_id=str(sale_id),
        field_changed=str(field_changed),
        old_value=_text(old_value),
        new_value=_text(new_value),
        changed_at=str(changed_at) if changed_at is not None else "",
        changed_by=_text(changed_by),
    )
