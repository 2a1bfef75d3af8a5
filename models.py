from __future__ import annotations

from dataclasses import dataclass
from pydantic import BaseModel, Field
from typing import Optional, Literal, Union
from datetime import datetime

from errors import ValidationError

AssetStatus = Literal["EN_STOCK", "PRETE", "HS", "REPARATION"]
ManualAssetStatus = Literal["EN_STOCK", "HS", "REPARATION"]
LoanStatus = Literal["OPEN", "CLOSED"]
SignatureKind = Literal["pickup", "return"]

MAX_BATCH_DELETE = 100
# upper bound for stock quantities and deltas; SQLite INTEGER is 64-bit
MAX_QUANTITY = 2**31 - 1


# ---------- Line target (tagged variant) ----------
@dataclass(frozen=True)
class AssetRef:
    item_id: str
    kind: Literal["asset"] = "asset"

    @property
    def quantity(self) -> int:
        return 1


@dataclass(frozen=True)
class StockRef:
    item_id: str
    quantity: int = 1
    kind: Literal["stock"] = "stock"

    def __post_init__(self):
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int) or self.quantity < 1:
            raise ValidationError("quantity must be at least 1", quantity=self.quantity)
        if self.quantity > MAX_QUANTITY:
            raise ValidationError("quantity is too large", quantity=self.quantity, max_quantity=MAX_QUANTITY)


LineRef = Union[AssetRef, StockRef]


# ---------- Reference data ----------
class EmployeeIn(BaseModel):
    first_name: str
    last_name: str
    email: Optional[str] = None
    dept: Optional[str] = None

class Employee(EmployeeIn):
    id: str
    created_at: datetime
    updated_at: datetime

class AssetModelIn(BaseModel):
    type: str
    brand: str
    model_name: str

class AssetModel(AssetModelIn):
    id: str
    created_at: datetime
    updated_at: datetime

class AssetItemIn(BaseModel):
    asset_model_id: str
    asset_tag: Optional[str] = None
    serial: Optional[str] = None
    notes: Optional[str] = None

class AssetItem(AssetItemIn):
    id: str
    status: AssetStatus = "EN_STOCK"
    created_at: datetime
    updated_at: datetime

class AssetStatusUpdate(BaseModel):
    status: ManualAssetStatus

class StockItemIn(BaseModel):
    asset_model_id: str
    quantity: int = Field(default=0, ge=0)
    notes: Optional[str] = None

class StockItem(BaseModel):
    id: str
    asset_model_id: str
    quantity: int
    loaned: int
    available: int
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime

class StockAdjust(BaseModel):
    delta: int


# ---------- Loans ----------
class LoanCreate(BaseModel):
    employee_id: str

class LoanLineIn(BaseModel):
    asset_item_id: Optional[str] = None
    stock_item_id: Optional[str] = None
    quantity: Optional[int] = None

    def to_ref(self) -> LineRef:
        """Build the line target; exactly one of the two item ids must be set."""
        if bool(self.asset_item_id) == bool(self.stock_item_id):
            raise ValidationError("exactly one of asset_item_id or stock_item_id is required")
        if self.asset_item_id:
            if self.quantity not in (None, 1):
                raise ValidationError("asset lines always have quantity 1", quantity=self.quantity)
            return AssetRef(item_id=self.asset_item_id)
        return StockRef(item_id=self.stock_item_id, quantity=1 if self.quantity is None else self.quantity)

class LoanLine(BaseModel):
    id: str
    loan_id: str
    kind: Literal["asset", "stock"]
    asset_item_id: Optional[str] = None
    stock_item_id: Optional[str] = None
    quantity: int
    created_at: datetime

class Loan(BaseModel):
    id: str
    employee_id: str
    created_by_id: str
    status: LoanStatus
    opened_at: datetime
    closed_at: Optional[datetime] = None
    pickup_signature_url: Optional[str] = None
    pickup_signed_at: Optional[datetime] = None
    return_signature_url: Optional[str] = None
    return_signed_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    deleted_by_id: Optional[str] = None
    updated_at: Optional[datetime] = None
    lines: list[LoanLine] = []

class SignatureIn(BaseModel):
    image: str

class BatchDeleteIn(BaseModel):
    loan_ids: list[str]

class BatchDeleteResult(BaseModel):
    deleted_count: int
    deleted_ids: list[str]
    skipped_ids: list[str] = []
