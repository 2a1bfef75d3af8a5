from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import crud
from dependencies import get_actor_id, get_db, get_engine
from filter_helpers import blank_to_none, normalize_asset_status
from loans import LoanEngine
from models import (
    AssetItem,
    AssetItemIn,
    AssetModel,
    AssetModelIn,
    AssetStatusUpdate,
    Employee,
    EmployeeIn,
    StockAdjust,
    StockItem,
    StockItemIn,
)

router = APIRouter()


# ---------- employees ----------
@router.get("/employees", response_model=list[Employee])
def list_employees_api(db: Session = Depends(get_db)):
    return crud.list_employees(db)


@router.post("/employees", response_model=Employee, status_code=201)
def create_employee_api(body: EmployeeIn, db: Session = Depends(get_db)):
    return crud.create_employee(db, body)


# ---------- asset models ----------
@router.post("/asset-models", response_model=AssetModel, status_code=201)
def create_asset_model_api(body: AssetModelIn, db: Session = Depends(get_db)):
    return crud.create_asset_model(db, body)


@router.get("/asset-models/{model_id}", response_model=AssetModel)
def get_asset_model_api(model_id: str, db: Session = Depends(get_db)):
    return crud.get_asset_model(db, model_id)


# ---------- asset items ----------
@router.get("/asset-items", response_model=list[AssetItem])
def list_asset_items_api(
    status: Optional[str] = None,
    asset_model_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    return crud.list_asset_items(
        db,
        status=normalize_asset_status(blank_to_none(status)),
        asset_model_id=blank_to_none(asset_model_id),
    )


@router.post("/asset-items", response_model=AssetItem, status_code=201)
def create_asset_item_api(body: AssetItemIn, db: Session = Depends(get_db)):
    return crud.create_asset_item(db, body)


@router.get("/asset-items/{item_id}", response_model=AssetItem)
def get_asset_item_api(item_id: str, db: Session = Depends(get_db)):
    return crud.get_asset_item(db, item_id)


@router.patch("/asset-items/{item_id}/status", response_model=AssetItem)
def update_asset_item_status_api(
    item_id: str,
    body: AssetStatusUpdate,
    db: Session = Depends(get_db),
):
    return crud.update_asset_item_status(db, item_id, body.status)


# ---------- stock items ----------
@router.get("/stock-items", response_model=list[StockItem])
def list_stock_items_api(db: Session = Depends(get_db)):
    return crud.list_stock_items(db)


@router.post("/stock-items", response_model=StockItem, status_code=201)
def create_stock_item_api(body: StockItemIn, db: Session = Depends(get_db)):
    return crud.create_stock_item(db, body)


@router.get("/stock-items/{item_id}", response_model=StockItem)
def get_stock_item_api(item_id: str, db: Session = Depends(get_db)):
    return crud.get_stock_item(db, item_id)


@router.post("/stock-items/{item_id}/adjust", response_model=StockItem)
def adjust_stock_item_api(
    item_id: str,
    body: StockAdjust,
    db: Session = Depends(get_db),
    engine: LoanEngine = Depends(get_engine),
    actor_id: str = Depends(get_actor_id),
):
    return engine.adjust_stock_quantity(db, item_id, body.delta, actor_id)
