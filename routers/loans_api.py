from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError as SchemaError
from sqlalchemy.orm import Session

from dependencies import get_actor_id, get_db, get_engine
from errors import ValidationError
from filter_helpers import blank_to_none, normalize_loan_status
from loans import LoanEngine
from models import BatchDeleteIn, BatchDeleteResult, Loan, LoanCreate, LoanLineIn, SignatureIn

router = APIRouter(prefix="/loans", tags=["loans"])


@router.get("", response_model=list[Loan])
def list_loans_api(
    status: Optional[str] = None,
    employee_id: Optional[str] = None,
    include_deleted: bool = False,
    db: Session = Depends(get_db),
    engine: LoanEngine = Depends(get_engine),
):
    return engine.list_loans(
        db,
        status=normalize_loan_status(blank_to_none(status)),
        employee_id=blank_to_none(employee_id),
        include_deleted=include_deleted,
    )


@router.post("", response_model=Loan, status_code=201)
def create_loan_api(
    body: LoanCreate,
    db: Session = Depends(get_db),
    engine: LoanEngine = Depends(get_engine),
    actor_id: str = Depends(get_actor_id),
):
    return engine.create_loan(db, body.employee_id, actor_id)


# declared before /{loan_id} routes so "batch-delete" is never read as an id
@router.post("/batch-delete", response_model=BatchDeleteResult)
def batch_delete_loans_api(
    body: BatchDeleteIn,
    db: Session = Depends(get_db),
    engine: LoanEngine = Depends(get_engine),
    actor_id: str = Depends(get_actor_id),
):
    return engine.batch_delete_loans(db, body.loan_ids, actor_id)


@router.get("/{loan_id}", response_model=Loan)
def get_loan_api(
    loan_id: str,
    db: Session = Depends(get_db),
    engine: LoanEngine = Depends(get_engine),
):
    return engine.get_loan(db, loan_id)


@router.delete("/{loan_id}", response_model=Loan)
def delete_loan_api(
    loan_id: str,
    db: Session = Depends(get_db),
    engine: LoanEngine = Depends(get_engine),
    actor_id: str = Depends(get_actor_id),
):
    return engine.delete_loan(db, loan_id, actor_id)


@router.post("/{loan_id}/close", response_model=Loan)
def close_loan_api(
    loan_id: str,
    db: Session = Depends(get_db),
    engine: LoanEngine = Depends(get_engine),
    actor_id: str = Depends(get_actor_id),
):
    return engine.close_loan(db, loan_id, actor_id)


# ---------- lines ----------
@router.post("/{loan_id}/lines", response_model=Loan, status_code=201)
def add_line_api(
    loan_id: str,
    body: LoanLineIn,
    db: Session = Depends(get_db),
    engine: LoanEngine = Depends(get_engine),
    actor_id: str = Depends(get_actor_id),
):
    return engine.add_line(db, loan_id, body.to_ref(), actor_id)


@router.delete("/{loan_id}/lines/{line_id}", response_model=Loan)
def remove_line_api(
    loan_id: str,
    line_id: str,
    db: Session = Depends(get_db),
    engine: LoanEngine = Depends(get_engine),
    actor_id: str = Depends(get_actor_id),
):
    return engine.remove_line(db, loan_id, line_id, actor_id)


# ---------- signatures ----------
async def _read_signature(request: Request):
    """JSON ``{"image": "<base64>"}`` or a multipart upload in field ``file``."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        upload = form.get("file")
        if upload is None or isinstance(upload, str):
            raise ValidationError("multipart upload must include a 'file' field")
        return await upload.read()

    try:
        payload = await request.json()
    except ValueError as exc:
        raise ValidationError("request body must be JSON or multipart/form-data") from exc
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")
    try:
        return SignatureIn.model_validate(payload).image
    except SchemaError as exc:
        raise ValidationError("signature image is required") from exc


@router.post("/{loan_id}/signatures/{kind}", response_model=Loan)
async def upload_signature_api(
    loan_id: str,
    kind: str,
    request: Request,
    db: Session = Depends(get_db),
    engine: LoanEngine = Depends(get_engine),
    actor_id: str = Depends(get_actor_id),
):
    image = await _read_signature(request)
    return engine.upload_signature(db, loan_id, kind, image, actor_id)


@router.delete("/{loan_id}/signatures/{kind}", response_model=Loan)
def delete_signature_api(
    loan_id: str,
    kind: str,
    db: Session = Depends(get_db),
    engine: LoanEngine = Depends(get_engine),
    actor_id: str = Depends(get_actor_id),
):
    return engine.delete_signature(db, loan_id, kind, actor_id)
