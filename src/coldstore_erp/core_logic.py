"""Business logic layer for the cold-storage ledger.

This module contains the lot settlement engine: it registers lots, settles
sales against them, reconciles payments when a sale is edited, reverses sales
and lot edits, and keeps the append-only audit trail for every mutation. All
I/O goes through the data access layer (DAL); every mutating operation runs
inside :func:`_transaction` so a failure leaves the workbook exactly as it was.
"""

from __future__ import annotations

import json
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .charges import (
    ChargeBreakdown,
    Extras,
    PricingSnapshot,
    calculate_charge,
    quantize_money,
    select_basis_quantity,
)
from .constants import (
    EXPECTED_SCHEMA_VERSION,
    MONEY_TOLERANCE,
    AccessLevel,
    BagCategory,
    ChargeBasis,
    ChargeUnit,
    LotChangeType,
    LotSaleStatus,
    PaymentMode,
    PaymentStatus,
    Quality,
    SaleType,
    SplitStrategy,
)
from .errors import (
    AlreadyReversed,
    BusinessRuleViolation,
    InconsistentChargeState,
    LaterSaleExists,
    MissingReferenceError,
    NothingToReverse,
    PermissionDenied,
    StorageFailure,
    ValidationError,
)


ZERO = Decimal("0")

# Exceptions raised by the DAL or openpyxl that indicate a broken store rather
# than a rejected request.
_STORAGE_ERRORS = (KeyError, ValueError, TypeError, OSError)


@dataclass(frozen=True)
class OperatorSession:
    """Identity and permissions of whoever is driving the engine."""

    operator: str
    access_level: AccessLevel

    @property
    def can_edit(self) -> bool:
        return self.access_level is AccessLevel.EDIT


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook and session used by the BLL.

    The re-entrant lock serializes every mutation (and every cache rebuild)
    against the shared workbook.
    """

    settings: data_manager.ConfigSettings
    workbook: Workbook
    session: OperatorSession
    _lock: Any = field(default_factory=threading.RLock, repr=False, compare=False)
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class PricingOverrides:
    """Caller-provided rates replacing the storage defaults for one sale."""

    cold_charge_rate: Optional[Decimal] = None
    hammali_rate: Optional[Decimal] = None


@dataclass(frozen=True)
class PaymentIntent:
    """Requested payment state for a new sale."""

    status: PaymentStatus = PaymentStatus.DUE
    paid_amount: Optional[Decimal] = None
    mode: Optional[PaymentMode] = None


@dataclass(frozen=True)
class PaymentState:
    """Reconciled payment fields of a sale."""

    status: PaymentStatus
    paid_amount: Decimal
    due_amount: Decimal
    mode: Optional[PaymentMode]


@dataclass(frozen=True)
class LotCommand:
    """User intent for registering a newly deposited lot."""

    farmer_name: str
    bag_type: BagCategory
    quality: Quality
    original_size: int
    net_weight: Optional[Decimal] = None
    lot_no: Optional[str] = None
    storage_year: Optional[int] = None
    contact_number: Optional[str] = None
    village: Optional[str] = None
    district: Optional[str] = None
    state: Optional[str] = None
    chamber: Optional[str] = None
    floor: Optional[int] = None
    position: Optional[str] = None
    up_for_sale: bool = False
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SaleCommand:
    """User intent for settling a sale against a lot."""

    lot_id: str
    quantity: int
    buyer_name: str
    payment: PaymentIntent = PaymentIntent()
    charge_basis: ChargeBasis = ChargeBasis.ACTUAL
    extras: Extras = Extras()
    overrides: Optional[PricingOverrides] = None
    price_per_kg: Optional[Decimal] = None
    final: bool = False
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SaleChanges:
    """Fields an operator may change on a settled sale; ``None`` keeps a value."""

    buyer_name: Optional[str] = None
    price_per_kg: Optional[Decimal] = None
    cold_charge_rate: Optional[Decimal] = None
    hammali_rate: Optional[Decimal] = None
    net_weight: Optional[Decimal] = None
    weighing: Optional[Decimal] = None
    extra_handling_per_bag: Optional[Decimal] = None
    grading: Optional[Decimal] = None
    payment_status: Optional[PaymentStatus] = None
    paid_amount: Optional[Decimal] = None
    payment_mode: Optional[PaymentMode] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class LotChanges:
    """Display and location fields an operator may change on a lot."""

    farmer_name: Optional[str] = None
    contact_number: Optional[str] = None
    village: Optional[str] = None
    district: Optional[str] = None
    state: Optional[str] = None
    quality: Optional[Quality] = None
    net_weight: Optional[Decimal] = None
    chamber: Optional[str] = None
    floor: Optional[int] = None
    position: Optional[str] = None
    up_for_sale: Optional[bool] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class FieldChange:
    """One column of one record moving from ``old`` to ``new``."""

    column: str
    old: Any
    new: Any


@dataclass(frozen=True)
class LotChargeTotals:
    """Money aggregates over a lot's non-reversed sales."""

    lot_id: str
    sale_count: int
    total_charge: Decimal
    paid_amount: Decimal
    due_amount: Decimal


@dataclass(frozen=True)
class BuyerDue:
    """Outstanding balance of one buyer across non-reversed sales."""

    buyer_name: str
    sale_count: int
    due_amount: Decimal


@dataclass(frozen=True)
class ChargeDiscrepancy:
    """A persisted sale whose amounts disagree with a fresh calculation."""

    sale_id: str
    stored_total: Decimal
    computed_total: Optional[Decimal]
    paid_plus_due: Decimal
    reason: str


# Lot columns editable through :func:`edit_lot`, with the coercion applied when
# a value comes back out of a JSON history snapshot.
_LOT_EDITABLE_FIELDS: Tuple[Tuple[str, str, Callable[[Any], Any]], ...] = (
    ("farmer_name", "FarmerName", str),
    ("contact_number", "ContactNumber", str),
    ("village", "Village", str),
    ("district", "District", str),
    ("state", "State", str),
    ("quality", "Quality", str),
    ("net_weight", "NetWeight", lambda raw: Decimal(str(raw))),
    ("chamber", "Chamber", str),
    ("floor", "Floor", int),
    ("position", "Position", str),
    ("up_for_sale", "UpForSale", bool),
)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` in UTC, or the current UTC time when it is ``None``.

    Naive values are taken to already be UTC so that every stored timestamp
    compares against the aware bounds used by the date filters.
    """

    if candidate is None:
        return datetime.now(UTC)
    if candidate.tzinfo is None:
        return candidate.replace(tzinfo=UTC)
    return candidate.astimezone(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name.

    Args:
        context (RuntimeContext): Runtime state carrying the shared cache
            dictionary.
        name (str): Logical bucket name to fetch or create.

    Returns:
        dict[str, Any]: Mutable mapping used to cache derived collections for a
            specific record set.
    """

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state.

    Args:
        context (RuntimeContext): Active runtime context whose cache should be
            pruned.
        *names (str): Bucket identifiers to remove. When empty every bucket is
            dropped.
    """

    if not names:
        names = tuple(context._cache)
        if not names:
            return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_lots_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the lot cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` lots in sheet order and a
            ``by_id`` lookup dictionary.
    """

    with context._lock:
        bucket = _get_cache_bucket(context, "lots")
        if "all" not in bucket:
            all_lots = list(data_manager.iter_lots(context.workbook))
            bucket["all"] = all_lots
            bucket["by_id"] = {lot.lot_id: lot for lot in all_lots}
            log.debug("Populated lots cache with %d entries", len(all_lots))
        return bucket


def _ensure_sales_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the sale cache bucket on demand.

    Returns:
        dict[str, Any]: Bucket containing ``all`` sales in sheet order and a
            ``by_id`` lookup dictionary.
    """

    with context._lock:
        bucket = _get_cache_bucket(context, "sales")
        if "all" not in bucket:
            all_sales = list(data_manager.iter_sales(context.workbook))
            bucket["all"] = all_sales
            bucket["by_id"] = {sale.sale_id: sale for sale in all_sales}
            log.debug("Populated sales cache with %d entries", len(all_sales))
        return bucket


def _ensure_history_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the audit trail cache bucket on demand.

    History sheets are append-only, so both lists stay in chronological order.
    """

    with context._lock:
        bucket = _get_cache_bucket(context, "history")
        if "lots" not in bucket:
            bucket["lots"] = list(data_manager.iter_lot_history(context.workbook))
            bucket["sales"] = list(data_manager.iter_sale_history(context.workbook))
            log.debug(
                "Populated history cache with %d lot and %d sale entries",
                len(bucket["lots"]),
                len(bucket["sales"]),
            )
        return bucket


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    session: Optional[OperatorSession] = None,
) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        session (OperatorSession | None): Explicit session to run under. When
            omitted the ``[Session]`` section of the configuration is used.

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
    if session is None:
        session = OperatorSession(operator=settings.operator, access_level=settings.access_level)
    log.info(
        "Loaded runtime context for workbook '%s' (operator=%s, access=%s)",
        settings.data_file,
        session.operator,
        session.access_level.value,
    )
    return RuntimeContext(settings=settings, workbook=workbook, session=session)


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


def _require_edit_access(context: RuntimeContext, action: str) -> None:
    if not context.session.can_edit:
        log.warning(
            "Operator '%s' with %s access attempted to %s",
            context.session.operator,
            context.session.access_level.value,
            action,
        )
        raise PermissionDenied(f"Operator '{context.session.operator}' may not {action}")


@contextmanager
def _transaction(context: RuntimeContext, action: str) -> Iterator[None]:
    """Run a block of workbook writes as one all-or-nothing unit.

    The context lock is held for the whole block. The managed sheets are
    snapshotted on entry and restored if the block raises, so callers never
    observe a partial write. Storage-level exceptions are re-raised as
    :class:`StorageFailure`; business errors propagate unchanged.

    Args:
        context (RuntimeContext): Runtime context whose workbook is mutated.
        action (str): Short description used in log messages.

    Raises:
        StorageFailure: If the DAL raised a storage-level exception.
    """

    with context._lock:
        snapshot = data_manager.snapshot_workbook(context.workbook)
        try:
            yield
        except Exception as exc:
            data_manager.restore_workbook(context.workbook, snapshot)
            _invalidate_cache(context)
            if isinstance(exc, BusinessRuleViolation):
                log.warning("Rolled back %s: %s", action, exc)
                raise
            log.error("Rolled back %s after failure: %s", action, exc)
            if isinstance(exc, _STORAGE_ERRORS):
                raise StorageFailure(f"Ledger store failed during {action}: {exc}") from exc
            raise


def generate_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable, collision-resistant record identifier.

    Args:
        prefix (str): Record designator such as ``"S"`` for sales.
        when (datetime | None): Timestamp the identifier should sort by. When
            ``None`` the current UTC time is used.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}{hex6}``.

    The random suffix keeps identifiers unique when several records are
    created within the same microsecond, as happens with concurrent sales.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}{uuid.uuid4().hex[:6]}"


def _encode_snapshot(values: Dict[str, Any]) -> str:
    def _plain(value: Any) -> Any:
        if isinstance(value, Decimal):
            return str(value)
        return getattr(value, "value", value)

    return json.dumps({key: _plain(value) for key, value in values.items()}, sort_keys=True)


def _require_positive_bags(quantity: Any, label: str) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        log.warning("Rejected %s: %r", label, quantity)
        raise ValidationError(f"{label.capitalize()} must be a whole number of at least one bag")
    return quantity


def _require_nonnegative(amount: Optional[Decimal], label: str) -> None:
    if amount is not None and amount < ZERO:
        log.warning("Rejected negative %s: %s", label, amount)
        raise ValidationError(f"{label.capitalize()} must be zero or positive")


def _require_name(value: Optional[str], label: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        log.warning("Rejected empty %s", label)
        raise ValidationError(f"{label.capitalize()} is required")
    return cleaned


# ---------------------------------------------------------------------------
# Lots
# ---------------------------------------------------------------------------


def list_lots(
    context: RuntimeContext,
    *,
    bag_type: Optional[BagCategory] = None,
    storage_year: Optional[int] = None,
    status: Optional[LotSaleStatus] = None,
) -> List[data_manager.LotRow]:
    """Return cached lot rows, optionally filtered.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        bag_type (BagCategory | None): Only lots deposited in this bag type.
        storage_year (int | None): Only lots from this storage year.
        status (LotSaleStatus | None): Only lots with this derived sale status.

    Returns:
        list[data_manager.LotRow]: Matching lots in sheet order.
    """
    lots = _ensure_lots_cache(context)["all"]
    return [
        lot
        for lot in lots
        if (bag_type is None or lot.bag_type == bag_type.value)
        and (storage_year is None or lot.storage_year == storage_year)
        and (status is None or lot_sale_status(lot) is status)
    ]


def get_lot(context: RuntimeContext, lot_id: str) -> data_manager.LotRow:
    """Resolve a lot record by its identifier.

    Raises:
        MissingReferenceError: If ``lot_id`` is absent from the workbook.
    """
    cache = _ensure_lots_cache(context)
    try:
        return cache["by_id"][lot_id]
    except KeyError as exc:
        log.warning("Lot lookup failed for id '%s'", lot_id)
        raise MissingReferenceError(f"Unknown lot id: {lot_id}") from exc


def lot_sale_status(lot: data_manager.LotRow) -> LotSaleStatus:
    """Derive how far a lot has been sold from its bag counts."""

    if lot.remaining_size == 0:
        return LotSaleStatus.SOLD
    if lot.remaining_size < lot.original_size:
        return LotSaleStatus.PARTIAL
    return LotSaleStatus.STORED


def next_lot_number(context: RuntimeContext, bag_type: BagCategory, storage_year: int) -> str:
    """Return the next free sequential lot number for a numbering scope.

    Wafer lots are numbered separately from seed and ration lots, and the
    sequence restarts every storage year. Non-numeric lot numbers entered by
    hand are ignored when finding the highest number in use.
    """
    highest = 0
    for lot in _ensure_lots_cache(context)["all"]:
        if lot.storage_year != storage_year:
            continue
        if BagCategory(lot.bag_type).numbering_scope != bag_type.numbering_scope:
            continue
        if lot.lot_no.isdigit():
            highest = max(highest, int(lot.lot_no))
    return str(highest + 1)


def create_lot(context: RuntimeContext, command: LotCommand) -> data_manager.LotRow:
    """Register a deposited lot with ``remaining == original``.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (LotCommand): Deposit details.

    Returns:
        data_manager.LotRow: Newly appended lot.

    Raises:
        PermissionDenied: If the session lacks edit access.
        ValidationError: If the farmer name, size or weight is invalid, or the
            lot number is already used within its scope and year.
    """
    _require_edit_access(context, "register lots")
    farmer_name = _require_name(command.farmer_name, "farmer name")
    original_size = _require_positive_bags(command.original_size, "lot size")
    if command.net_weight is not None and command.net_weight <= ZERO:
        raise ValidationError("Net weight must be greater than zero")
    if context.settings.charge_unit is ChargeUnit.PER_QUINTAL and command.net_weight is None:
        log.warning("Rejected lot without net weight under per-quintal pricing")
        raise ValidationError("Net weight is required when the storage charges per quintal")

    timestamp = _resolve_timestamp(command.timestamp)
    storage_year = command.storage_year or timestamp.year

    with _transaction(context, "lot registration"):
        if command.lot_no is None:
            lot_no = next_lot_number(context, command.bag_type, storage_year)
        else:
            lot_no = _require_name(command.lot_no, "lot number")
            scope = command.bag_type.numbering_scope
            for existing in _ensure_lots_cache(context)["all"]:
                if (
                    existing.lot_no == lot_no
                    and existing.storage_year == storage_year
                    and BagCategory(existing.bag_type).numbering_scope == scope
                ):
                    log.warning(
                        "Duplicate lot number '%s' for %s lots in %d",
                        lot_no,
                        scope,
                        storage_year,
                    )
                    raise ValidationError(
                        f"Lot number {lot_no} already exists for {scope} lots in {storage_year}"
                    )

        lot = data_manager.LotRow(
            lot_id=generate_id("L", when=timestamp),
            lot_no=lot_no,
            storage_year=storage_year,
            farmer_name=farmer_name,
            contact_number=command.contact_number,
            village=command.village,
            district=command.district,
            state=command.state,
            bag_type=command.bag_type.value,
            quality=command.quality.value,
            original_size=original_size,
            remaining_size=original_size,
            net_weight=command.net_weight,
            chamber=command.chamber,
            floor=command.floor,
            position=command.position,
            base_charge_billed=False,
            up_for_sale=command.up_for_sale,
            created_at=timestamp.isoformat(),
        )
        data_manager.append_lot(context.workbook, lot)
        _invalidate_cache(context, "lots")

    log.info(
        "Registered lot '%s' (no=%s, type=%s, bags=%d)",
        lot.lot_id,
        lot.lot_no,
        lot.bag_type,
        lot.original_size,
    )
    return lot


def resolve_pricing(
    context: RuntimeContext,
    lot: data_manager.LotRow,
    overrides: Optional[PricingOverrides] = None,
) -> PricingSnapshot:
    """Build the pricing snapshot a new sale from ``lot`` is billed with.

    Storage rates come from the configuration for the lot's bag category;
    overrides replace individual components.
    """
    rates = context.settings.rates_for(BagCategory(lot.bag_type))
    cold_rate = rates.cold_charge
    hammali_rate = rates.hammali
    if overrides is not None:
        if overrides.cold_charge_rate is not None:
            cold_rate = overrides.cold_charge_rate
        if overrides.hammali_rate is not None:
            hammali_rate = overrides.hammali_rate
    return PricingSnapshot(
        cold_charge_rate=cold_rate,
        hammali_rate=hammali_rate,
        charge_unit=context.settings.charge_unit,
        net_weight=lot.net_weight,
        original_lot_size=lot.original_size,
    )


# ---------------------------------------------------------------------------
# Payment reconciliation
# ---------------------------------------------------------------------------


def validate_money_invariants(state: PaymentState, total_charge: Decimal) -> None:
    """Check that paid and due amounts agree with the total and the status.

    Raises:
        InconsistentChargeState: If any amount is negative, ``paid + due``
            drifts from ``total_charge``, or the status contradicts the
            amounts.
    """
    problem: Optional[str] = None
    if state.paid_amount < ZERO or state.due_amount < ZERO:
        problem = "negative paid or due amount"
    elif abs(state.paid_amount + state.due_amount - total_charge) > MONEY_TOLERANCE:
        problem = "paid plus due does not match total charge"
    elif state.status is PaymentStatus.PAID and state.due_amount != ZERO:
        problem = "paid sale still carries a due amount"
    elif state.status is PaymentStatus.DUE and state.paid_amount != ZERO:
        problem = "due sale carries a paid amount"
    elif state.status is PaymentStatus.PARTIAL and not (ZERO < state.paid_amount < total_charge):
        problem = "partial payment outside the open range"

    if problem is not None:
        log.error(
            "Inconsistent charge state (%s): status=%s paid=%s due=%s total=%s",
            problem,
            state.status.value,
            state.paid_amount,
            state.due_amount,
            total_charge,
        )
        raise InconsistentChargeState(problem)


def reconcile_payment(
    total_charge: Decimal,
    status: PaymentStatus,
    *,
    requested_paid: Optional[Decimal] = None,
    mode: Optional[PaymentMode] = None,
) -> PaymentState:
    """Derive paid/due amounts for a target status.

    ``paid`` settles the whole total and ``due`` settles nothing. ``partial``
    clamps the requested amount into ``[0, total]``; a clamped amount that
    covers the whole total becomes ``paid`` and one that covers nothing
    becomes ``due``. A payment mode is kept only when something was paid and
    defaults to cash.

    Args:
        total_charge (Decimal): Total the sale owes.
        status (PaymentStatus): Target status.
        requested_paid (Decimal | None): Amount received, required for
            ``partial``.
        mode (PaymentMode | None): How the money was received.

    Returns:
        PaymentState: Reconciled amounts that satisfy
            :func:`validate_money_invariants`.

    Raises:
        ValidationError: If ``partial`` is requested without an amount.
        InconsistentChargeState: If the total is negative.
    """
    total = quantize_money(total_charge)
    if total < ZERO:
        log.error("Refusing to reconcile negative total charge %s", total)
        raise InconsistentChargeState(f"Total charge cannot be negative: {total}")

    if status is PaymentStatus.PAID:
        state = PaymentState(PaymentStatus.PAID, total, ZERO, mode or PaymentMode.CASH)
    elif status is PaymentStatus.DUE:
        state = PaymentState(PaymentStatus.DUE, ZERO, total, None)
    else:
        if requested_paid is None:
            raise ValidationError("A partial payment needs the amount received")
        paid = quantize_money(min(max(requested_paid, ZERO), total))
        due = total - paid
        if due == ZERO:
            state = PaymentState(PaymentStatus.PAID, paid, ZERO, mode or PaymentMode.CASH)
        elif paid == ZERO:
            state = PaymentState(PaymentStatus.DUE, ZERO, due, None)
        else:
            state = PaymentState(PaymentStatus.PARTIAL, paid, due, mode or PaymentMode.CASH)

    validate_money_invariants(state, total)
    return state


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


def list_sales(
    context: RuntimeContext,
    *,
    lot_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    payment_status: Optional[PaymentStatus] = None,
    buyer_name: Optional[str] = None,
    include_reversed: bool = False,
) -> List[data_manager.SaleRow]:
    """Return cached sales matching every supplied filter.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        lot_id (str | None): Only sales drawn from this lot.
        start (datetime | None): Inclusive lower bound on the sale time.
        end (datetime | None): Exclusive upper bound on the sale time.
        payment_status (PaymentStatus | None): Only sales in this status.
        buyer_name (str | None): Case-insensitive buyer match.
        include_reversed (bool): Whether reversed sales are listed.

    Returns:
        list[data_manager.SaleRow]: Matching sales in sheet order.
    """
    buyer_key = buyer_name.strip().casefold() if buyer_name else None
    matches: List[data_manager.SaleRow] = []
    for sale in _ensure_sales_cache(context)["all"]:
        if sale.reversed and not include_reversed:
            continue
        if lot_id is not None and sale.lot_id != lot_id:
            continue
        if payment_status is not None and sale.payment_status != payment_status.value:
            continue
        if buyer_key is not None and sale.buyer_name.strip().casefold() != buyer_key:
            continue
        if start is not None or end is not None:
            sold_at = _resolve_timestamp(datetime.fromisoformat(sale.sold_at))
            if start is not None and sold_at < start:
                continue
            if end is not None and sold_at >= end:
                continue
        matches.append(sale)
    return matches


def get_sale(context: RuntimeContext, sale_id: str) -> data_manager.SaleRow:
    """Resolve a sale record by its identifier.

    Raises:
        MissingReferenceError: If ``sale_id`` is absent from the workbook.
    """
    cache = _ensure_sales_cache(context)
    try:
        return cache["by_id"][sale_id]
    except KeyError as exc:
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise MissingReferenceError(f"Unknown sale id: {sale_id}") from exc


def create_sale(context: RuntimeContext, command: SaleCommand) -> data_manager.SaleRow:
    """Settle a sale against a lot.

    The lot's remaining bags are decremented, the charge is computed from a
    pricing snapshot taken now, the requested payment is reconciled, and the
    sale plus its ``partial_sale``/``final_sale`` lot history entry are
    written. All of it happens in one transaction.

    A sale on the ``totalRemaining`` basis bills the base charge for every bag
    left in the lot and marks the lot as billed, so later sales from it carry
    no base charge. A sale on the ``actual`` basis bills only its own bags.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (SaleCommand): Structured sale intent.

    Returns:
        data_manager.SaleRow: The settled sale.

    Raises:
        PermissionDenied: If the session lacks edit access.
        ValidationError: If the quantity, buyer or money inputs are invalid,
            or a sale marked final does not exhaust the lot.
        InsufficientInventory: If the lot has fewer bags than requested.
        MissingReferenceError: If the lot does not exist.
        InconsistentChargeState: If the computed amounts are inconsistent.
        StorageFailure: If the workbook fails mid-transaction.
    """
    _require_edit_access(context, "record sales")
    quantity = _require_positive_bags(command.quantity, "quantity")
    buyer_name = _require_name(command.buyer_name, "buyer name")
    _require_nonnegative(command.price_per_kg, "price per kg")

    timestamp = _resolve_timestamp(command.timestamp)
    with _transaction(context, "sale settlement"):
        lot = data_manager.read_lot(context.workbook, command.lot_id)
        remaining_before = lot.remaining_size
        # Overselling is left to decrement_remaining.
        if command.final and quantity < remaining_before:
            log.warning(
                "Final sale of %d bag(s) does not exhaust lot '%s' (%d remaining)",
                quantity,
                lot.lot_id,
                remaining_before,
            )
            raise ValidationError(
                f"A final sale must take all {remaining_before} remaining bag(s)"
            )

        updated_lot = data_manager.decrement_remaining(context.workbook, lot.lot_id, quantity)

        pricing = resolve_pricing(context, lot, command.overrides)
        basis_quantity = select_basis_quantity(
            command.charge_basis,
            quantity_sold=quantity,
            remaining_before=remaining_before,
        )
        breakdown = calculate_charge(
            pricing,
            quantity_sold=quantity,
            basis_quantity=basis_quantity,
            already_billed=lot.base_charge_billed,
            extras=command.extras,
        )
        payment = reconcile_payment(
            breakdown.total,
            command.payment.status,
            requested_paid=command.payment.paid_amount,
            mode=command.payment.mode,
        )
        sets_flag = command.charge_basis is ChargeBasis.TOTAL_REMAINING and not lot.base_charge_billed
        sale_type = SaleType.FINAL if updated_lot.remaining_size == 0 else SaleType.PARTIAL

        sale = _build_sale_row(
            sale_id=generate_id("S", when=timestamp),
            lot=lot,
            command=command,
            buyer_name=buyer_name,
            sale_type=sale_type,
            pricing=pricing,
            breakdown=breakdown,
            payment=payment,
            sets_flag=sets_flag,
            sold_at=timestamp.isoformat(),
        )
        data_manager.append_sale(context.workbook, sale)

        previous = {"RemainingSize": remaining_before, "BaseChargeBilled": lot.base_charge_billed}
        new = {"RemainingSize": updated_lot.remaining_size, "BaseChargeBilled": lot.base_charge_billed}
        if sets_flag:
            data_manager.update_lot(context.workbook, lot.lot_id, field_values={"BaseChargeBilled": True})
            new["BaseChargeBilled"] = True

        change_type = (
            LotChangeType.FINAL_SALE if sale_type is SaleType.FINAL else LotChangeType.PARTIAL_SALE
        )
        _append_sale_history_entry(context, sale, change_type, previous, new, timestamp)
        _invalidate_cache(context, "lots", "sales", "history")

    log.info(
        "Settled %s sale '%s' on lot '%s' (bags=%d, total=%s, status=%s)",
        sale.sale_type,
        sale.sale_id,
        sale.lot_id,
        sale.quantity,
        sale.total_charge,
        sale.payment_status,
    )
    return sale


def _build_sale_row(
    *,
    sale_id: str,
    lot: data_manager.LotRow,
    command: SaleCommand,
    buyer_name: str,
    sale_type: SaleType,
    pricing: PricingSnapshot,
    breakdown: ChargeBreakdown,
    payment: PaymentState,
    sets_flag: bool,
    sold_at: str,
) -> data_manager.SaleRow:
    return data_manager.SaleRow(
        sale_id=sale_id,
        lot_id=lot.lot_id,
        sale_type=sale_type.value,
        quantity=command.quantity,
        buyer_name=buyer_name,
        price_per_kg=command.price_per_kg,
        charge_unit=pricing.charge_unit.value,
        charge_basis=command.charge_basis.value,
        cold_charge_rate=pricing.cold_charge_rate,
        hammali_rate=pricing.hammali_rate,
        net_weight=pricing.net_weight,
        original_lot_size=lot.original_size,
        remaining_at_sale=lot.remaining_size,
        basis_quantity=breakdown.basis_quantity,
        base_already_billed=lot.base_charge_billed,
        sets_base_charge_flag=sets_flag,
        split_strategy=breakdown.split_strategy.value,
        base_charge=breakdown.base_charge,
        cold_charge_amount=breakdown.cold_charge_amount,
        hammali_amount=breakdown.hammali_amount,
        weighing_charge=breakdown.weighing,
        extra_handling_per_bag=command.extras.extra_handling_per_bag,
        grading_charge=breakdown.grading,
        total_charge=breakdown.total,
        paid_amount=payment.paid_amount,
        due_amount=payment.due_amount,
        payment_status=payment.status.value,
        payment_mode=payment.mode.value if payment.mode is not None else None,
        reversed=False,
        sold_at=sold_at,
        reversed_at=None,
    )


def _append_sale_history_entry(
    context: RuntimeContext,
    sale: data_manager.SaleRow,
    change_type: LotChangeType,
    previous: Dict[str, Any],
    new: Dict[str, Any],
    when: datetime,
) -> data_manager.LotHistoryRow:
    entry = data_manager.LotHistoryRow(
        history_id=generate_id("H", when=when),
        lot_id=sale.lot_id,
        change_type=change_type.value,
        changed_at=when.isoformat(),
        previous_data=_encode_snapshot(previous),
        new_data=_encode_snapshot(new),
        sale_id=sale.sale_id,
        sold_quantity=sale.quantity,
        charge_per_bag=quantize_money(sale.total_charge / Decimal(sale.quantity)),
        buyer_name=sale.buyer_name,
        sale_payment_status=sale.payment_status,
        sale_charge=sale.total_charge,
        changed_by=context.session.operator,
    )
    data_manager.append_lot_history(context.workbook, entry)
    return entry


def edit_sale(context: RuntimeContext, sale_id: str, changes: SaleChanges) -> data_manager.SaleRow:
    """Apply an operator edit to a settled sale and reconcile its payment.

    When a rate, the weight or an extra changes, the total is recomputed
    from the sale's own pricing snapshot and split strategy. The payment is
    then reconciled: an explicit target status wins; otherwise the amount
    already paid is carried over and clamped against the new total. Every
    column whose value changes gets its own sale history row.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        sale_id (str): Identifier of the sale to edit.
        changes (SaleChanges): Requested field changes.

    Returns:
        data_manager.SaleRow: The sale as persisted after the edit.

    Raises:
        PermissionDenied: If the session lacks edit access.
        AlreadyReversed: If the sale has been reversed.
        MissingReferenceError: If the sale does not exist.
        ValidationError: If an edited value is invalid.
        InconsistentChargeState: If the recomputed amounts are inconsistent.
        StorageFailure: If the workbook fails mid-transaction.
    """
    _require_edit_access(context, "edit sales")
    for label, amount in (
        ("price per kg", changes.price_per_kg),
        ("cold charge rate", changes.cold_charge_rate),
        ("hammali rate", changes.hammali_rate),
        ("weighing charge", changes.weighing),
        ("extra handling charge", changes.extra_handling_per_bag),
        ("grading charge", changes.grading),
    ):
        _require_nonnegative(amount, label)
    if changes.net_weight is not None and changes.net_weight <= ZERO:
        raise ValidationError("Net weight must be greater than zero")

    timestamp = _resolve_timestamp(changes.timestamp)
    with _transaction(context, "sale edit"):
        sale = data_manager.read_sale(context.workbook, sale_id)
        if sale.reversed:
            log.warning("Attempted to edit reversed sale '%s'", sale_id)
            raise AlreadyReversed(f"Sale '{sale_id}' has been reversed and cannot be edited")

        buyer_name = sale.buyer_name
        if changes.buyer_name is not None:
            buyer_name = _require_name(changes.buyer_name, "buyer name")

        pricing = PricingSnapshot(
            cold_charge_rate=_pick(changes.cold_charge_rate, sale.cold_charge_rate),
            hammali_rate=_pick(changes.hammali_rate, sale.hammali_rate),
            charge_unit=ChargeUnit(sale.charge_unit),
            net_weight=_pick(changes.net_weight, sale.net_weight),
            original_lot_size=sale.original_lot_size,
        )
        extras = Extras(
            weighing=_pick(changes.weighing, sale.weighing_charge),
            extra_handling_per_bag=_pick(changes.extra_handling_per_bag, sale.extra_handling_per_bag),
            grading=_pick(changes.grading, sale.grading_charge),
        )
        charge_changed = (
            pricing.cold_charge_rate != sale.cold_charge_rate
            or pricing.hammali_rate != sale.hammali_rate
            or pricing.net_weight != sale.net_weight
            or extras.weighing != sale.weighing_charge
            or extras.extra_handling_per_bag != sale.extra_handling_per_bag
            or extras.grading != sale.grading_charge
        )

        amounts = {
            "BaseCharge": sale.base_charge,
            "ColdChargeAmount": sale.cold_charge_amount,
            "HammaliAmount": sale.hammali_amount,
            "TotalCharge": sale.total_charge,
        }
        if charge_changed:
            breakdown = calculate_charge(
                pricing,
                quantity_sold=sale.quantity,
                basis_quantity=sale.basis_quantity,
                already_billed=sale.base_already_billed,
                extras=extras,
                split_strategy=SplitStrategy(sale.split_strategy),
            )
            amounts = {
                "BaseCharge": breakdown.base_charge,
                "ColdChargeAmount": breakdown.cold_charge_amount,
                "HammaliAmount": breakdown.hammali_amount,
                "TotalCharge": breakdown.total,
            }

        current_mode = PaymentMode(sale.payment_mode) if sale.payment_mode else None
        if changes.payment_status is not None:
            target_status = changes.payment_status
            if target_status is PaymentStatus.PARTIAL and changes.paid_amount is None:
                raise ValidationError("A partial payment needs the amount received")
        elif changes.paid_amount is not None or charge_changed:
            target_status = PaymentStatus.PARTIAL
        else:
            target_status = PaymentStatus(sale.payment_status)
        payment = reconcile_payment(
            amounts["TotalCharge"],
            target_status,
            requested_paid=_pick(changes.paid_amount, sale.paid_amount),
            mode=changes.payment_mode or current_mode,
        )

        changeset: List[FieldChange] = []
        _diff(changeset, "BuyerName", sale.buyer_name, buyer_name)
        _diff(changeset, "PricePerKg", sale.price_per_kg, _pick(changes.price_per_kg, sale.price_per_kg))
        _diff(changeset, "ColdChargeRate", sale.cold_charge_rate, pricing.cold_charge_rate)
        _diff(changeset, "HammaliRate", sale.hammali_rate, pricing.hammali_rate)
        _diff(changeset, "NetWeight", sale.net_weight, pricing.net_weight)
        _diff(changeset, "WeighingCharge", sale.weighing_charge, quantize_money(extras.weighing))
        _diff(changeset, "ExtraHandlingPerBag", sale.extra_handling_per_bag, extras.extra_handling_per_bag)
        _diff(changeset, "GradingCharge", sale.grading_charge, quantize_money(extras.grading))
        _diff(changeset, "BaseCharge", sale.base_charge, amounts["BaseCharge"])
        _diff(changeset, "ColdChargeAmount", sale.cold_charge_amount, amounts["ColdChargeAmount"])
        _diff(changeset, "HammaliAmount", sale.hammali_amount, amounts["HammaliAmount"])
        _diff(changeset, "TotalCharge", sale.total_charge, amounts["TotalCharge"])
        _diff(changeset, "PaidAmount", sale.paid_amount, payment.paid_amount)
        _diff(changeset, "DueAmount", sale.due_amount, payment.due_amount)
        _diff(changeset, "PaymentStatus", sale.payment_status, payment.status.value)
        _diff(
            changeset,
            "PaymentMode",
            sale.payment_mode,
            payment.mode.value if payment.mode is not None else None,
        )

        if not changeset:
            log.info("Edit of sale '%s' changed nothing", sale_id)
            return sale

        data_manager.update_sale(
            context.workbook,
            sale_id,
            field_values={change.column: change.new for change in changeset},
        )
        for change in changeset:
            data_manager.append_sale_edit(
                context.workbook,
                data_manager.SaleEditRow(
                    history_id=generate_id("E", when=timestamp),
                    sale_id=sale_id,
                    field_changed=change.column,
                    old_value=_history_text(change.old),
                    new_value=_history_text(change.new),
                    changed_at=timestamp.isoformat(),
                    changed_by=context.session.operator,
                ),
            )
        _invalidate_cache(context, "sales", "history")
        updated = data_manager.read_sale(context.workbook, sale_id)

    log.info(
        "Edited sale '%s' (%d field(s): %s)",
        sale_id,
        len(changeset),
        ", ".join(change.column for change in changeset),
    )
    return updated


def _pick(candidate: Any, current: Any) -> Any:
    return current if candidate is None else candidate


def _diff(changeset: List[FieldChange], column: str, old: Any, new: Any) -> None:
    if old != new:
        changeset.append(FieldChange(column=column, old=old, new=new))


def _history_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(getattr(value, "value", value))


def mark_sale_paid(
    context: RuntimeContext,
    sale_id: str,
    *,
    mode: Optional[PaymentMode] = None,
    timestamp: Optional[datetime] = None,
) -> data_manager.SaleRow:
    """Settle a sale's whole total."""

    return edit_sale(
        context,
        sale_id,
        SaleChanges(payment_status=PaymentStatus.PAID, payment_mode=mode, timestamp=timestamp),
    )


def mark_sale_due(
    context: RuntimeContext,
    sale_id: str,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.SaleRow:
    """Return a sale's whole total to outstanding."""

    return edit_sale(
        context,
        sale_id,
        SaleChanges(payment_status=PaymentStatus.DUE, timestamp=timestamp),
    )


def reverse_sale(
    context: RuntimeContext,
    sale_id: str,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.SaleRow:
    """Undo a sale: restore its bags to the lot and mark it reversed.

    Paid and due amounts are left untouched; a reversed sale simply stops
    counting toward outstanding balances. When the sale is the one that marked
    the lot's base charge as billed, the mark is cleared again.

    Raises:
        PermissionDenied: If the session lacks edit access.
        AlreadyReversed: If the sale was reversed before.
        LaterSaleExists: If the sale billed the lot's remaining bags and a
            later sale has since drawn on them.
        MissingReferenceError: If the sale or its lot does not exist.
        StorageFailure: If the workbook fails mid-transaction.
    """
    _require_edit_access(context, "reverse sales")
    when = _resolve_timestamp(timestamp)
    with _transaction(context, "sale reversal"):
        sale = data_manager.read_sale(context.workbook, sale_id)
        if sale.reversed:
            log.warning("Attempted to reverse sale '%s' twice", sale_id)
            raise AlreadyReversed(f"Sale '{sale_id}' is already reversed")
        lot = data_manager.read_lot(context.workbook, sale.lot_id)

        if sale.charge_basis == ChargeBasis.TOTAL_REMAINING.value:
            left_after_sale = sale.remaining_at_sale - sale.quantity
            if lot.remaining_size < left_after_sale:
                log.warning(
                    "Sale '%s' billed bags of lot '%s' that later sales drew on",
                    sale_id,
                    lot.lot_id,
                )
                raise LaterSaleExists(
                    f"Reverse the later sales of lot '{lot.lot_id}' before sale '{sale_id}'"
                )

        reversed_sale = data_manager.mark_sale_reversed(
            context.workbook, sale_id, reversed_at=when.isoformat()
        )
        restored_lot = data_manager.increment_remaining(context.workbook, lot.lot_id, sale.quantity)
        billed_after = lot.base_charge_billed
        if sale.sets_base_charge_flag and lot.base_charge_billed:
            data_manager.update_lot(context.workbook, lot.lot_id, field_values={"BaseChargeBilled": False})
            billed_after = False

        _append_sale_history_entry(
            context,
            reversed_sale,
            LotChangeType.SALE_REVERSED,
            {"RemainingSize": lot.remaining_size, "BaseChargeBilled": lot.base_charge_billed},
            {"RemainingSize": restored_lot.remaining_size, "BaseChargeBilled": billed_after},
            when,
        )
        _invalidate_cache(context, "lots", "sales", "history")

    log.info(
        "Reversed sale '%s' on lot '%s' (bags restored=%d, remaining=%d)",
        sale_id,
        lot.lot_id,
        sale.quantity,
        restored_lot.remaining_size,
    )
    return reversed_sale


# ---------------------------------------------------------------------------
# Lot edits
# ---------------------------------------------------------------------------


def edit_lot(context: RuntimeContext, lot_id: str, changes: LotChanges) -> data_manager.LotRow:
    """Change display and location fields of a lot.

    Bag counts and the billed flag belong to settlement and cannot be edited
    here. Changed fields are recorded in one ``edit`` lot history entry whose
    previous data is what :func:`reverse_lot_edit` restores.

    Raises:
        PermissionDenied: If the session lacks edit access.
        MissingReferenceError: If the lot does not exist.
        ValidationError: If an edited value is invalid.
    """
    _require_edit_access(context, "edit lots")
    if changes.farmer_name is not None:
        _require_name(changes.farmer_name, "farmer name")
    if changes.net_weight is not None and changes.net_weight <= ZERO:
        raise ValidationError("Net weight must be greater than zero")

    timestamp = _resolve_timestamp(changes.timestamp)
    with _transaction(context, "lot edit"):
        lot = data_manager.read_lot(context.workbook, lot_id)
        changeset: List[FieldChange] = []
        for attribute, column, _ in _LOT_EDITABLE_FIELDS:
            requested = getattr(changes, attribute)
            if requested is None:
                continue
            if isinstance(requested, Quality):
                requested = requested.value
            elif attribute == "farmer_name":
                requested = requested.strip()
            _diff(changeset, column, getattr(lot, attribute), requested)

        if not changeset:
            log.info("Edit of lot '%s' changed nothing", lot_id)
            return lot

        data_manager.update_lot(
            context.workbook,
            lot_id,
            field_values={change.column: change.new for change in changeset},
        )
        _append_lot_edit_entry(context, lot_id, LotChangeType.EDIT, changeset, timestamp)
        _invalidate_cache(context, "lots", "history")
        updated = data_manager.read_lot(context.workbook, lot_id)

    log.info(
        "Edited lot '%s' (%s)",
        lot_id,
        ", ".join(change.column for change in changeset),
    )
    return updated


def _append_lot_edit_entry(
    context: RuntimeContext,
    lot_id: str,
    change_type: LotChangeType,
    changeset: List[FieldChange],
    when: datetime,
) -> None:
    data_manager.append_lot_history(
        context.workbook,
        data_manager.LotHistoryRow(
            history_id=generate_id("H", when=when),
            lot_id=lot_id,
            change_type=change_type.value,
            changed_at=when.isoformat(),
            previous_data=_encode_snapshot({change.column: change.old for change in changeset}),
            new_data=_encode_snapshot({change.column: change.new for change in changeset}),
            sale_id=None,
            sold_quantity=None,
            charge_per_bag=None,
            buyer_name=None,
            sale_payment_status=None,
            sale_charge=None,
            changed_by=context.session.operator,
        ),
    )


def reverse_lot_edit(
    context: RuntimeContext,
    lot_id: str,
    *,
    timestamp: Optional[datetime] = None,
) -> data_manager.LotRow:
    """Restore the fields changed by a lot's most recent edit.

    The restoration is appended as an ``edit_reversed`` entry. Only an
    ``edit`` that has not been followed by an ``edit_reversed`` is eligible,
    so each edit can be undone once and an undo cannot itself be undone.

    Raises:
        PermissionDenied: If the session lacks edit access.
        MissingReferenceError: If the lot does not exist.
        NothingToReverse: If no eligible edit exists.
    """
    _require_edit_access(context, "reverse lot edits")
    when = _resolve_timestamp(timestamp)
    with _transaction(context, "lot edit reversal"):
        lot = data_manager.read_lot(context.workbook, lot_id)
        edit_types = (LotChangeType.EDIT.value, LotChangeType.EDIT_REVERSED.value)
        latest: Optional[data_manager.LotHistoryRow] = None
        for entry in data_manager.iter_lot_history(context.workbook):
            if entry.lot_id == lot_id and entry.change_type in edit_types:
                latest = entry
        if latest is None or latest.change_type != LotChangeType.EDIT.value:
            log.warning("No reversible edit for lot '%s'", lot_id)
            raise NothingToReverse(f"Lot '{lot_id}' has no edit to reverse")

        previous = json.loads(latest.previous_data)
        changeset: List[FieldChange] = []
        for attribute, column, coerce in _LOT_EDITABLE_FIELDS:
            if column not in previous:
                continue
            raw = previous[column]
            restored = coerce(raw) if raw is not None else None
            _diff(changeset, column, getattr(lot, attribute), restored)

        if changeset:
            data_manager.update_lot(
                context.workbook,
                lot_id,
                field_values={change.column: change.new for change in changeset},
            )
        _append_lot_edit_entry(context, lot_id, LotChangeType.EDIT_REVERSED, changeset, when)
        _invalidate_cache(context, "lots", "history")
        restored_lot = data_manager.read_lot(context.workbook, lot_id)

    log.info("Reversed edit '%s' on lot '%s'", latest.history_id, lot_id)
    return restored_lot


# ---------------------------------------------------------------------------
# Audit trail and reporting
# ---------------------------------------------------------------------------


def get_lot_history(context: RuntimeContext, lot_id: str) -> List[data_manager.LotHistoryRow]:
    """Return a lot's history entries, newest first."""

    entries = _ensure_history_cache(context)["lots"]
    return [entry for entry in reversed(entries) if entry.lot_id == lot_id]


def get_sale_history(context: RuntimeContext, sale_id: str) -> List[data_manager.SaleEditRow]:
    """Return a sale's field edits, newest first."""

    entries = _ensure_history_cache(context)["sales"]
    return [entry for entry in reversed(entries) if entry.sale_id == sale_id]


def lot_charge_totals(context: RuntimeContext, lot_id: str) -> LotChargeTotals:
    """Sum charge, paid and due amounts over a lot's non-reversed sales.

    Raises:
        MissingReferenceError: If the lot does not exist.
    """
    get_lot(context, lot_id)
    sales = list_sales(context, lot_id=lot_id)
    return LotChargeTotals(
        lot_id=lot_id,
        sale_count=len(sales),
        total_charge=sum((sale.total_charge for sale in sales), ZERO),
        paid_amount=sum((sale.paid_amount for sale in sales), ZERO),
        due_amount=sum((sale.due_amount for sale in sales), ZERO),
    )


def calculate_buyer_dues(context: RuntimeContext) -> List[BuyerDue]:
    """Aggregate outstanding balances per buyer.

    Reversed sales never contribute. Buyers are matched case-insensitively
    and reported under the spelling of their first sale, sorted by name.

    Returns:
        list[BuyerDue]: One entry per buyer with a positive due amount.
    """
    totals: Dict[str, List[Any]] = {}
    for sale in list_sales(context):
        if sale.due_amount <= ZERO:
            continue
        key = sale.buyer_name.strip().casefold()
        entry = totals.setdefault(key, [sale.buyer_name.strip(), 0, ZERO])
        entry[1] += 1
        entry[2] += sale.due_amount

    dues = [BuyerDue(buyer_name=name, sale_count=count, due_amount=amount) for name, count, amount in totals.values()]
    dues.sort(key=lambda due: due.buyer_name.casefold())
    log.info("Calculated dues for %d buyer(s)", len(dues))
    return dues


def verify_sale_charges(context: RuntimeContext) -> List[ChargeDiscrepancy]:
    """Re-derive every persisted sale's total and report divergences.

    Each sale is recalculated from its own pricing snapshot, basis quantity
    and split strategy, so later changes to storage rates never register as
    discrepancies. Payment amounts are checked against the stored total.
    Nothing is written.

    Returns:
        list[ChargeDiscrepancy]: One entry per inconsistent sale, in sheet
            order. Empty when the ledger is consistent.
    """
    findings: List[ChargeDiscrepancy] = []
    for sale in list_sales(context, include_reversed=True):
        paid_plus_due = sale.paid_amount + sale.due_amount
        pricing = PricingSnapshot(
            cold_charge_rate=sale.cold_charge_rate,
            hammali_rate=sale.hammali_rate,
            charge_unit=ChargeUnit(sale.charge_unit),
            net_weight=sale.net_weight,
            original_lot_size=sale.original_lot_size,
        )
        extras = Extras(
            weighing=sale.weighing_charge,
            extra_handling_per_bag=sale.extra_handling_per_bag,
            grading=sale.grading_charge,
        )
        try:
            breakdown = calculate_charge(
                pricing,
                quantity_sold=sale.quantity,
                basis_quantity=sale.basis_quantity,
                already_billed=sale.base_already_billed,
                extras=extras,
                split_strategy=SplitStrategy(sale.split_strategy),
            )
        except (BusinessRuleViolation, InconsistentChargeState) as exc:
            findings.append(ChargeDiscrepancy(sale.sale_id, sale.total_charge, None, paid_plus_due, str(exc)))
            continue

        if abs(breakdown.total - sale.total_charge) > MONEY_TOLERANCE:
            reason = "stored total differs from recalculated total"
        elif abs(paid_plus_due - sale.total_charge) > MONEY_TOLERANCE:
            reason = "paid plus due differs from stored total"
        else:
            continue
        findings.append(
            ChargeDiscrepancy(sale.sale_id, sale.total_charge, breakdown.total, paid_plus_due, reason)
        )

    if findings:
        log.warning("Charge verification found %d discrepant sale(s)", len(findings))
    else:
        log.info("Charge verification passed")
    return findings


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""

    with context._lock:
        data_manager.save_workbook(
            context.workbook,
            destination=context.settings.data_file,
        )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with the same settings and session, a
            newly opened workbook and an empty cache.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook, session=context.session)
