from __future__ import annotations

from datetime import datetime, timezone

from typing import Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import ConflictError, NotFoundError, ValidationError
from models import (
    MAX_QUANTITY,
    AssetItem,
    AssetItemIn,
    AssetModel,
    AssetModelIn,
    Employee,
    EmployeeIn,
    StockItem,
    StockItemIn,
)
from orm import AssetItemORM, AssetModelORM, EmployeeORM, LoanLineORM, LoanORM, StockItemORM

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def persist(db: Session, *, commit: bool) -> None:
    if commit:
        db.commit()
    else:
        db.flush()

def _employee_to_schema(e: EmployeeORM) -> Employee:
    return Employee(
        id=e.id,
        first_name=e.first_name,
        last_name=e.last_name,
        email=e.email,
        dept=e.dept,
        created_at=e.created_at,
        updated_at=e.updated_at,
    )

def _asset_model_to_schema(m: AssetModelORM) -> AssetModel:
    return AssetModel(
        id=m.id,
        type=m.type,
        brand=m.brand,
        model_name=m.model_name,
        created_at=m.created_at,
        updated_at=m.updated_at,
    )

def asset_item_to_schema(a: AssetItemORM) -> AssetItem:
    return AssetItem(
        id=a.id,
        asset_model_id=a.asset_model_id,
        asset_tag=a.asset_tag,
        serial=a.serial,
        notes=a.notes,
        status=a.status,  # type: ignore[arg-type]
        created_at=a.created_at,
        updated_at=a.updated_at,
    )

def stock_item_to_schema(s: StockItemORM) -> StockItem:
    return StockItem(
        id=s.id,
        asset_model_id=s.asset_model_id,
        quantity=s.quantity,
        loaned=s.loaned,
        available=s.quantity - s.loaned,
        notes=s.notes,
        created_at=s.created_at,
        updated_at=s.updated_at,
    )


# ---------- Employee ----------
def employee_exists(db: Session, employee_id: str) -> bool:
    return db.get(EmployeeORM, employee_id) is not None


def get_employee(db: Session, employee_id: str) -> Employee:
    row = db.get(EmployeeORM, employee_id)
    if not row:
        raise NotFoundError("employee not found", employee_id=employee_id)
    return _employee_to_schema(row)


def list_employees(db: Session) -> list[Employee]:
    rows = db.execute(
        select(EmployeeORM).order_by(EmployeeORM.last_name.asc(), EmployeeORM.first_name.asc())
    ).scalars().all()
    return [_employee_to_schema(e) for e in rows]


def create_employee(db: Session, body: EmployeeIn, *, commit: bool = True) -> Employee:
    email = (body.email or "").strip() or None
    if email and db.execute(select(EmployeeORM.id).where(EmployeeORM.email == email)).first():
        raise ConflictError("employee email already exists", email=email)

    now = utcnow()
    e = EmployeeORM(
        id=str(uuid4()),
        first_name=body.first_name,
        last_name=body.last_name,
        email=email,
        dept=body.dept,
        created_at=now,
        updated_at=now,
    )
    db.add(e)
    _persist_unique(db, commit=commit, message="employee email already exists")
    return _employee_to_schema(e)


# ---------- Asset model ----------
def get_asset_model(db: Session, model_id: str) -> AssetModel:
    row = db.get(AssetModelORM, model_id)
    if not row:
        raise NotFoundError("asset model not found", asset_model_id=model_id)
    return _asset_model_to_schema(row)


def create_asset_model(db: Session, body: AssetModelIn, *, commit: bool = True) -> AssetModel:
    now = utcnow()
    m = AssetModelORM(
        id=str(uuid4()),
        type=body.type,
        brand=body.brand,
        model_name=body.model_name,
        created_at=now,
        updated_at=now,
    )
    db.add(m)
    persist(db, commit=commit)
    return _asset_model_to_schema(m)


# ---------- Asset item ----------
def asset_field_taken(db: Session, field: str, value: str, exclude_item_id: Optional[str] = None) -> bool:
    col = getattr(AssetItemORM, field)
    stmt = select(AssetItemORM.id).where(col == value)
    if exclude_item_id:
        stmt = stmt.where(AssetItemORM.id != exclude_item_id)
    return db.execute(stmt).first() is not None


def get_asset_item(db: Session, item_id: str) -> AssetItem:
    row = db.get(AssetItemORM, item_id)
    if not row:
        raise NotFoundError("asset item not found", asset_item_id=item_id)
    return asset_item_to_schema(row)


def list_asset_items(db: Session, *, status: Optional[str] = None, asset_model_id: Optional[str] = None) -> list[AssetItem]:
    stmt = select(AssetItemORM)
    if status:
        stmt = stmt.where(AssetItemORM.status == status)
    if asset_model_id:
        stmt = stmt.where(AssetItemORM.asset_model_id == asset_model_id)
    stmt = stmt.order_by(AssetItemORM.created_at.desc())
    return [asset_item_to_schema(a) for a in db.execute(stmt).scalars().all()]


def create_asset_item(db: Session, body: AssetItemIn, *, commit: bool = True) -> AssetItem:
    if not db.get(AssetModelORM, body.asset_model_id):
        raise NotFoundError("asset model not found", asset_model_id=body.asset_model_id)

    asset_tag = (body.asset_tag or "").strip() or None
    serial = (body.serial or "").strip() or None
    if asset_tag and asset_field_taken(db, "asset_tag", asset_tag):
        raise ConflictError("asset_tag already exists", asset_tag=asset_tag)
    if serial and asset_field_taken(db, "serial", serial):
        raise ConflictError("serial already exists", serial=serial)

    now = utcnow()
    a = AssetItemORM(
        id=str(uuid4()),
        asset_model_id=body.asset_model_id,
        asset_tag=asset_tag,
        serial=serial,
        notes=body.notes,
        status="EN_STOCK",
        created_at=now,
        updated_at=now,
    )
    db.add(a)
    _persist_unique(db, commit=commit, message="asset_tag or serial already exists")
    return asset_item_to_schema(a)


def update_asset_item_status(db: Session, item_id: str, status: str, *, commit: bool = True) -> AssetItem:
    """
    Manual status change (EN_STOCK / HS / REPARATION).

    PRETE is owned by the loan engine: it can't be set here, and an item
    that is currently PRETE can't be moved out of it here.
    """
    a = db.get(AssetItemORM, item_id)
    if not a:
        raise NotFoundError("asset item not found", asset_item_id=item_id)
    if status == "PRETE":
        raise ValidationError("PRETE is set by adding the item to a loan")
    if a.status == "PRETE" and status != "PRETE":
        raise ValidationError("asset item is on loan; close or edit the loan first", asset_item_id=item_id)

    a.status = status
    a.updated_at = utcnow()
    persist(db, commit=commit)
    return asset_item_to_schema(a)


# ---------- Stock item ----------
def get_stock_item(db: Session, item_id: str) -> StockItem:
    row = db.get(StockItemORM, item_id)
    if not row:
        raise NotFoundError("stock item not found", stock_item_id=item_id)
    return stock_item_to_schema(row)


def list_stock_items(db: Session) -> list[StockItem]:
    rows = db.execute(select(StockItemORM).order_by(StockItemORM.created_at.desc())).scalars().all()
    return [stock_item_to_schema(s) for s in rows]


def create_stock_item(db: Session, body: StockItemIn, *, commit: bool = True) -> StockItem:
    if body.quantity > MAX_QUANTITY:
        raise ValidationError("quantity is too large", quantity=body.quantity, max_quantity=MAX_QUANTITY)
    if not db.get(AssetModelORM, body.asset_model_id):
        raise NotFoundError("asset model not found", asset_model_id=body.asset_model_id)

    now = utcnow()
    s = StockItemORM(
        id=str(uuid4()),
        asset_model_id=body.asset_model_id,
        quantity=body.quantity,
        loaned=0,
        notes=body.notes,
        created_at=now,
        updated_at=now,
    )
    db.add(s)
    persist(db, commit=commit)
    return stock_item_to_schema(s)


# ---------- Active allocations ----------
def active_lines_stmt():
    """Lines that currently hold an allocation: OPEN loans that aren't soft-deleted."""
    return (
        select(LoanLineORM)
        .join(LoanORM, LoanLineORM.loan_id == LoanORM.id)
        .where(LoanORM.status == "OPEN", LoanORM.deleted_at.is_(None))
    )


def _persist_unique(db: Session, *, commit: bool, message: str) -> None:
    try:
        persist(db, commit=commit)
    except IntegrityError as exc:
        db.rollback()
        raise ConflictError(message) from exc
