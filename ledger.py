"""
Inventory ledger: the live state of asset item status and stock counters.

Every write here is a single conditional UPDATE so that the database, not a
prior read, decides who wins when two requests target the same row. A
statement that matches zero rows is turned into a typed error.

None of these functions commit; the caller owns the transaction, except
``adjust_stock_quantity`` and ``reconcile`` which take the usual
``commit`` flag.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from crud import active_lines_stmt, persist, stock_item_to_schema, utcnow
from errors import ConflictError, NotFoundError, ValidationError
from models import MAX_QUANTITY, AssetRef, LineRef, StockItem, StockRef
from orm import AssetItemORM, LoanLineORM, StockItemORM

logger = logging.getLogger("app.ledger")


def _execute(db: Session, stmt) -> int:
    result = db.execute(stmt.execution_options(synchronize_session=False))
    return result.rowcount


def _expire_cached(db: Session, cls, pk: str) -> None:
    # the UPDATE bypassed the identity map; make a loaded copy reload on next access
    obj = db.identity_map.get(db.identity_key(cls, pk))
    if obj is not None:
        db.expire(obj)


def _load(db: Session, cls, pk: str):
    return db.get(cls, pk, populate_existing=True)


# ---------- allocate ----------
def allocate(db: Session, ref: LineRef) -> None:
    """EN_STOCK -> PRETE for an asset, ``loaned += q`` for stock (if available)."""
    if isinstance(ref, AssetRef):
        _allocate_asset(db, ref.item_id)
    elif isinstance(ref, StockRef):
        _allocate_stock(db, ref.item_id, ref.quantity)
    else:
        raise ValidationError("unknown line target")


def _allocate_asset(db: Session, item_id: str) -> None:
    count = _execute(
        db,
        update(AssetItemORM)
        .where(AssetItemORM.id == item_id, AssetItemORM.status == "EN_STOCK")
        .values(status="PRETE", updated_at=utcnow()),
    )
    if count == 0:
        row = _load(db, AssetItemORM, item_id)
        if row is None:
            raise NotFoundError("asset item not found", asset_item_id=item_id)
        raise ConflictError("asset item is not available", asset_item_id=item_id, status=row.status)
    _expire_cached(db, AssetItemORM, item_id)
    logger.info("allocate kind=asset item_id=%s", item_id)


def _allocate_stock(db: Session, item_id: str, qty: int) -> None:
    count = _execute(
        db,
        update(StockItemORM)
        .where(StockItemORM.id == item_id, StockItemORM.loaned + qty <= StockItemORM.quantity)
        .values(loaned=StockItemORM.loaned + qty, updated_at=utcnow()),
    )
    if count == 0:
        row = _load(db, StockItemORM, item_id)
        if row is None:
            raise NotFoundError("stock item not found", stock_item_id=item_id)
        raise ValidationError(
            "insufficient stock",
            stock_item_id=item_id,
            requested=qty,
            available=row.quantity - row.loaned,
        )
    _expire_cached(db, StockItemORM, item_id)
    logger.info("allocate kind=stock item_id=%s qty=%s", item_id, qty)


# ---------- release / revert ----------
def release(db: Session, ref: LineRef) -> None:
    """
    Give an allocation back after a line removal or a loan close.

    Stock: ``loaned -= q`` only. Quantity is left alone, so stock handed
    out on a closed loan counts as consumed.
    """
    if isinstance(ref, AssetRef):
        _release_asset(db, ref.item_id)
    else:
        _decrement_loaned(db, ref.item_id, ref.quantity, restore_quantity=False)


def revert(db: Session, ref: LineRef) -> None:
    """
    Undo an allocation as if it never happened (soft delete).

    Stock: ``quantity += q`` and ``loaned -= q``.
    """
    if isinstance(ref, AssetRef):
        _release_asset(db, ref.item_id)
    else:
        _decrement_loaned(db, ref.item_id, ref.quantity, restore_quantity=True)


def _release_asset(db: Session, item_id: str) -> None:
    count = _execute(
        db,
        update(AssetItemORM)
        .where(AssetItemORM.id == item_id, AssetItemORM.status == "PRETE")
        .values(status="EN_STOCK", updated_at=utcnow()),
    )
    if count == 0:
        row = _load(db, AssetItemORM, item_id)
        if row is None:
            raise NotFoundError("asset item not found", asset_item_id=item_id)
        # HS / REPARATION are manual statuses and stay as they are
        logger.warning("release skipped item_id=%s status=%s", item_id, row.status)
        return
    _expire_cached(db, AssetItemORM, item_id)
    logger.info("release kind=asset item_id=%s", item_id)


def _decrement_loaned(db: Session, item_id: str, qty: int, *, restore_quantity: bool) -> None:
    values = {"loaned": StockItemORM.loaned - qty, "updated_at": utcnow()}
    if restore_quantity:
        values["quantity"] = StockItemORM.quantity + qty

    count = _execute(
        db,
        update(StockItemORM)
        .where(StockItemORM.id == item_id, StockItemORM.loaned >= qty)
        .values(**values),
    )
    if count == 0:
        row = _load(db, StockItemORM, item_id)
        if row is None:
            raise NotFoundError("stock item not found", stock_item_id=item_id)
        logger.warning(
            "loaned counter drift item_id=%s loaned=%s releasing=%s; clamping to 0",
            item_id,
            row.loaned,
            qty,
        )
        values["loaned"] = 0
        _execute(db, update(StockItemORM).where(StockItemORM.id == item_id).values(**values))
    _expire_cached(db, StockItemORM, item_id)
    logger.info(
        "%s kind=stock item_id=%s qty=%s",
        "revert" if restore_quantity else "release",
        item_id,
        qty,
    )


# ---------- manual adjustment ----------
def adjust_stock_quantity(db: Session, item_id: str, delta: int, *, commit: bool = True) -> StockItem:
    """Change ``quantity`` by ``delta``. It may not go negative, below ``loaned`` or above ``MAX_QUANTITY``."""
    if isinstance(delta, bool) or not isinstance(delta, int) or abs(delta) > MAX_QUANTITY:
        raise ValidationError("delta is out of range", delta=delta, max_quantity=MAX_QUANTITY)

    try:
        count = _execute(
            db,
            update(StockItemORM)
            .where(
                StockItemORM.id == item_id,
                StockItemORM.quantity + delta >= 0,
                StockItemORM.quantity + delta >= StockItemORM.loaned,
                StockItemORM.quantity + delta <= MAX_QUANTITY,
            )
            .values(quantity=StockItemORM.quantity + delta, updated_at=utcnow()),
        )
        if count == 0:
            row = _load(db, StockItemORM, item_id)
            if row is None:
                raise NotFoundError("stock item not found", stock_item_id=item_id)
            if row.quantity + delta < 0:
                raise ValidationError("quantity cannot be negative", quantity=row.quantity, delta=delta)
            if row.quantity + delta > MAX_QUANTITY:
                raise ValidationError("quantity is too large", quantity=row.quantity, delta=delta, max_quantity=MAX_QUANTITY)
            raise ValidationError(
                "quantity cannot drop below the loaned count",
                quantity=row.quantity,
                loaned=row.loaned,
                delta=delta,
            )
        persist(db, commit=commit)
    except Exception:
        db.rollback()
        raise

    row = _load(db, StockItemORM, item_id)
    logger.info("adjust item_id=%s delta=%s quantity=%s", item_id, delta, row.quantity)
    return stock_item_to_schema(row)


# ---------- consistency ----------
@dataclass(frozen=True)
class Drift:
    kind: str
    item_id: str
    field: str
    current: object
    expected: object


def find_drift(db: Session) -> list[Drift]:
    """Compare ledger rows with what the active loan lines say they should be."""
    active = active_lines_stmt().subquery()

    expected_loaned = dict(
        db.execute(
            select(active.c.stock_item_id, func.sum(active.c.quantity))
            .where(active.c.stock_item_id.is_not(None))
            .group_by(active.c.stock_item_id)
        ).all()
    )
    on_loan = set(
        db.execute(select(active.c.asset_item_id).where(active.c.asset_item_id.is_not(None))).scalars().all()
    )

    drifts: list[Drift] = []
    for s in db.execute(select(StockItemORM).order_by(StockItemORM.id)).scalars().all():
        expected = int(expected_loaned.get(s.id, 0))
        if s.loaned != expected:
            drifts.append(Drift("stock", s.id, "loaned", s.loaned, expected))

    for a in db.execute(select(AssetItemORM).order_by(AssetItemORM.id)).scalars().all():
        if a.status == "PRETE" and a.id not in on_loan:
            drifts.append(Drift("asset", a.id, "status", a.status, "EN_STOCK"))
        elif a.status == "EN_STOCK" and a.id in on_loan:
            drifts.append(Drift("asset", a.id, "status", a.status, "PRETE"))
        elif a.status in ("HS", "REPARATION") and a.id in on_loan:
            # manual statuses are never rewritten; report only
            drifts.append(Drift("asset", a.id, "status", a.status, "PRETE"))

    return drifts


def reconcile(db: Session, *, commit: bool = True, drifts: Optional[list[Drift]] = None) -> list[Drift]:
    """Apply the fixes reported by ``find_drift``. Returns what was changed."""
    if drifts is None:
        drifts = find_drift(db)

    fixed: list[Drift] = []
    now = utcnow()
    try:
        for d in drifts:
            if d.kind == "stock":
                s = db.get(StockItemORM, d.item_id)
                if s.quantity < d.expected:
                    logger.warning(
                        "reconcile raising quantity item_id=%s quantity=%s loaned=%s",
                        s.id,
                        s.quantity,
                        d.expected,
                    )
                    s.quantity = d.expected
                s.loaned = d.expected
                s.updated_at = now
                fixed.append(d)
            elif d.current in ("PRETE", "EN_STOCK"):
                a = db.get(AssetItemORM, d.item_id)
                a.status = d.expected
                a.updated_at = now
                fixed.append(d)
            else:
                logger.warning("reconcile left manual status item_id=%s status=%s", d.item_id, d.current)
        persist(db, commit=commit)
    except Exception:
        db.rollback()
        raise

    for d in fixed:
        logger.info("reconciled kind=%s item_id=%s %s: %s -> %s", d.kind, d.item_id, d.field, d.current, d.expected)
    return fixed


def line_ref(line: LoanLineORM) -> LineRef:
    if line.asset_item_id:
        return AssetRef(item_id=line.asset_item_id)
    return StockRef(item_id=line.stock_item_id, quantity=line.quantity)
