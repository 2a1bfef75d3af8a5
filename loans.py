"""
Loan lifecycle engine.

Each public method runs one transaction against the session it is given:
preconditions are checked first, then the ledger and loan writes happen
together and are committed, or all rolled back on any exception. Cache
invalidation and audit logging run only after the commit; a failure there
is logged and never undoes the committed work.

    OPEN --close--> CLOSED          (terminal)
    any non-deleted --delete--> soft-deleted (deleted_at set)

Stock is released differently on the two exits: ``close`` decrements
``loaned`` and keeps ``quantity`` (stock handed out is spent), while a
soft delete also puts the quantity back (the loan never happened).
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Iterable, Optional, Union
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

import ledger
from crud import employee_exists, get_stock_item, utcnow
from errors import ConflictError, NotFoundError, ValidationError
from models import (
    MAX_BATCH_DELETE,
    AssetRef,
    BatchDeleteResult,
    LineRef,
    Loan,
    LoanLine,
    SignatureKind,
    StockItem,
)
from orm import LoanLineORM, LoanORM
from ports import AuditRecorder, CacheInvalidator, SignatureStore

logger = logging.getLogger("app.loans")

NS_LOANS = "loans"
NS_ASSET_ITEMS = "asset_items"
NS_STOCK_ITEMS = "stock_items"
NS_DASHBOARD = "dashboard"


def _line_to_schema(line: LoanLineORM) -> LoanLine:
    return LoanLine(
        id=line.id,
        loan_id=line.loan_id,
        kind="asset" if line.asset_item_id else "stock",
        asset_item_id=line.asset_item_id,
        stock_item_id=line.stock_item_id,
        quantity=line.quantity,
        created_at=line.created_at,
    )


def loan_to_schema(l: LoanORM) -> Loan:
    return Loan(
        id=l.id,
        employee_id=l.employee_id,
        created_by_id=l.created_by_id,
        status=l.status,  # type: ignore[arg-type]
        opened_at=l.opened_at,
        closed_at=l.closed_at,
        pickup_signature_url=l.pickup_signature_url,
        pickup_signed_at=l.pickup_signed_at,
        return_signature_url=l.return_signature_url,
        return_signed_at=l.return_signed_at,
        deleted_at=l.deleted_at,
        deleted_by_id=l.deleted_by_id,
        updated_at=l.updated_at,
        lines=[_line_to_schema(line) for line in l.lines],
    )


def _snapshot(l: LoanORM) -> dict:
    return loan_to_schema(l).model_dump(mode="json", exclude={"lines"}) | {"line_count": len(l.lines)}


def _namespaces_for(refs: Iterable[LineRef]) -> list[str]:
    namespaces = [NS_LOANS]
    refs = list(refs)
    if any(isinstance(r, AssetRef) for r in refs):
        namespaces.append(NS_ASSET_ITEMS)
    if any(not isinstance(r, AssetRef) for r in refs):
        namespaces.append(NS_STOCK_ITEMS)
    namespaces.append(NS_DASHBOARD)
    return namespaces


class LoanEngine:
    def __init__(
        self,
        *,
        cache: CacheInvalidator,
        audit: AuditRecorder,
        signatures: SignatureStore,
        now: Callable = utcnow,
    ):
        self.cache = cache
        self.audit = audit
        self.signatures = signatures
        self.now = now

    # ---------- read ----------
    def get_loan(self, db: Session, loan_id: str) -> Loan:
        return loan_to_schema(self._load(db, loan_id))

    def list_loans(
        self,
        db: Session,
        *,
        status: Optional[str] = None,
        employee_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> list[Loan]:
        stmt = select(LoanORM).options(selectinload(LoanORM.lines))
        if not include_deleted:
            stmt = stmt.where(LoanORM.deleted_at.is_(None))
        if status:
            stmt = stmt.where(LoanORM.status == status)
        if employee_id:
            stmt = stmt.where(LoanORM.employee_id == employee_id)
        stmt = stmt.order_by(LoanORM.opened_at.desc())
        return [loan_to_schema(l) for l in db.execute(stmt).scalars().all()]

    # ---------- transitions ----------
    def create_loan(self, db: Session, employee_id: str, actor_id: str) -> Loan:
        if not employee_exists(db, employee_id):
            raise NotFoundError("employee not found", employee_id=employee_id)

        now = self.now()
        loan = LoanORM(
            id=str(uuid4()),
            employee_id=employee_id,
            created_by_id=actor_id,
            status="OPEN",
            opened_at=now,
            updated_at=now,
        )
        with self._transaction(db):
            db.add(loan)

        logger.info("loan created loan_id=%s employee_id=%s actor=%s", loan.id, employee_id, actor_id)
        result = loan_to_schema(loan)
        self._after_commit(
            [NS_LOANS, NS_DASHBOARD],
            [("log_create", loan.id, actor_id, None, _snapshot(loan))],
        )
        return result

    def add_line(self, db: Session, loan_id: str, ref: LineRef, actor_id: str) -> Loan:
        loan = self._load(db, loan_id)
        self._require_editable(loan, "add lines to")
        before = _snapshot(loan)

        with self._transaction(db):
            self._claim(db, loan)
            ledger.allocate(db, ref)
            loan.lines.append(
                LoanLineORM(
                    id=str(uuid4()),
                    asset_item_id=ref.item_id if isinstance(ref, AssetRef) else None,
                    stock_item_id=None if isinstance(ref, AssetRef) else ref.item_id,
                    quantity=ref.quantity,
                    created_at=self.now(),
                )
            )
            db.flush()

        logger.info("line added loan_id=%s kind=%s item_id=%s qty=%s", loan_id, ref.kind, ref.item_id, ref.quantity)
        return self._finish(db, loan, actor_id, before, [ref])

    def remove_line(self, db: Session, loan_id: str, line_id: str, actor_id: str) -> Loan:
        loan = self._load(db, loan_id)
        self._require_editable(loan, "edit")
        self._get_line(db, loan_id, line_id)
        before = _snapshot(loan)

        with self._transaction(db):
            self._claim(db, loan)
            line = self._get_line(db, loan_id, line_id, fresh=True)
            ref = ledger.line_ref(line)
            ledger.release(db, ref)
            loan.lines.remove(line)
            db.flush()

        logger.info("line removed loan_id=%s line_id=%s", loan_id, line_id)
        return self._finish(db, loan, actor_id, before, [ref])

    def upload_signature(
        self,
        db: Session,
        loan_id: str,
        kind: SignatureKind,
        image: Union[str, bytes, None],
        actor_id: str,
    ) -> Loan:
        prefix = _signature_prefix(kind)
        loan = self._load(db, loan_id)
        self._require_not_deleted(loan)
        if not image:
            raise ValidationError("signature image is required")
        before = _snapshot(loan)

        url = self.signatures.store(image)
        try:
            with self._transaction(db):
                self._claim(
                    db,
                    loan,
                    open_only=False,
                    **{f"{prefix}_signature_url": url, f"{prefix}_signed_at": self.now()},
                )
        except Exception:
            self._discard_signature(url)
            raise

        logger.info("signature recorded loan_id=%s kind=%s url=%s", loan_id, kind, url)
        return self._finish(db, loan, actor_id, before, [])

    def delete_signature(self, db: Session, loan_id: str, kind: SignatureKind, actor_id: str) -> Loan:
        prefix = _signature_prefix(kind)
        loan = self._load(db, loan_id)
        self._require_not_deleted(loan)
        before = _snapshot(loan)

        with self._transaction(db):
            self._claim(
                db,
                loan,
                open_only=False,
                **{f"{prefix}_signature_url": None, f"{prefix}_signed_at": None},
            )

        logger.info("signature cleared loan_id=%s kind=%s", loan_id, kind)
        return self._finish(db, loan, actor_id, before, [])

    def close_loan(self, db: Session, loan_id: str, actor_id: str) -> Loan:
        loan = self._load(db, loan_id)
        self._require_not_deleted(loan)
        if loan.status == "CLOSED":
            raise ValidationError("loan is already closed", loan_id=loan_id)
        before = _snapshot(loan)

        with self._transaction(db):
            self._claim(db, loan, status="CLOSED", closed_at=self.now())
            refs = [ledger.line_ref(line) for line in loan.lines]
            for ref in refs:
                ledger.release(db, ref)

        logger.info("loan closed loan_id=%s lines=%s", loan_id, len(refs))
        return self._finish(db, loan, actor_id, before, refs)

    def delete_loan(self, db: Session, loan_id: str, actor_id: str) -> Loan:
        loan = self._load(db, loan_id)
        if loan.deleted_at is not None:
            raise ValidationError("loan is already deleted", loan_id=loan_id)
        if loan.status == "CLOSED":
            raise ValidationError("closed loans cannot be deleted", loan_id=loan_id)
        before = _snapshot(loan)

        with self._transaction(db):
            refs = self._soft_delete(db, loan, actor_id)

        logger.info("loan deleted loan_id=%s lines=%s actor=%s", loan_id, len(refs), actor_id)
        return self._finish(db, loan, actor_id, before, refs, action="log_delete")

    def batch_delete_loans(self, db: Session, loan_ids: list[str], actor_id: str) -> BatchDeleteResult:
        """
        Soft delete several loans in one transaction.

        Ids that don't exist or are already deleted are skipped. CLOSED loans
        are refused the same way ``delete_loan`` refuses them: if any
        selected loan is CLOSED nothing is deleted.
        """
        ids = list(dict.fromkeys(loan_ids or []))
        if not ids:
            raise ValidationError("at least one loan must be selected")
        if len(ids) > MAX_BATCH_DELETE:
            raise ValidationError(
                f"cannot delete more than {MAX_BATCH_DELETE} loans at once",
                requested=len(ids),
            )

        loans = db.execute(
            select(LoanORM)
            .options(selectinload(LoanORM.lines))
            .where(LoanORM.id.in_(ids), LoanORM.deleted_at.is_(None))
            .order_by(LoanORM.opened_at)
        ).scalars().all()
        if not loans:
            raise NotFoundError("no deletable loans found", loan_ids=ids)
        closed = [l.id for l in loans if l.status == "CLOSED"]
        if closed:
            raise ValidationError("closed loans cannot be deleted", loan_ids=closed)

        befores = {l.id: _snapshot(l) for l in loans}
        refs: list[LineRef] = []
        with self._transaction(db):
            for loan in loans:
                refs.extend(self._soft_delete(db, loan, actor_id))

        deleted_ids = list(befores)
        skipped_ids = [i for i in ids if i not in befores]
        logger.info("loans batch deleted count=%s skipped=%s actor=%s", len(deleted_ids), len(skipped_ids), actor_id)
        self._notify(_namespaces_for(refs))
        for loan in loans:
            self._audit("log_delete", "loans", loan.id, actor_id, befores[loan.id], _snapshot(loan))
        return BatchDeleteResult(deleted_count=len(deleted_ids), deleted_ids=deleted_ids, skipped_ids=skipped_ids)

    def adjust_stock_quantity(self, db: Session, item_id: str, delta: int, actor_id: str) -> StockItem:
        before = get_stock_item(db, item_id)
        stock = ledger.adjust_stock_quantity(db, item_id, delta)
        logger.info("stock adjusted item_id=%s delta=%s actor=%s", item_id, delta, actor_id)
        self._notify([NS_STOCK_ITEMS, NS_DASHBOARD])
        self._audit(
            "log_update",
            "stock_items",
            item_id,
            actor_id,
            before.model_dump(mode="json"),
            stock.model_dump(mode="json"),
        )
        return stock

    # ---------- internals ----------
    @contextmanager
    def _transaction(self, db: Session):
        try:
            yield
            db.commit()
        except Exception:
            db.rollback()
            raise

    def _load(self, db: Session, loan_id: str) -> LoanORM:
        loan = db.get(LoanORM, loan_id, options=[selectinload(LoanORM.lines)])
        if loan is None:
            raise NotFoundError("loan not found", loan_id=loan_id)
        return loan

    def _get_line(self, db: Session, loan_id: str, line_id: str, *, fresh: bool = False) -> LoanLineORM:
        line = db.get(LoanLineORM, line_id, populate_existing=fresh)
        if line is None or line.loan_id != loan_id:
            raise NotFoundError("loan line not found", loan_id=loan_id, line_id=line_id)
        return line

    def _require_not_deleted(self, loan: LoanORM) -> None:
        if loan.deleted_at is not None:
            raise ValidationError("loan has been deleted", loan_id=loan.id)

    def _require_editable(self, loan: LoanORM, action: str) -> None:
        self._require_not_deleted(loan)
        if loan.status != "OPEN":
            raise ValidationError(f"cannot {action} a closed loan", loan_id=loan.id)

    def _claim(self, db: Session, loan: LoanORM, *, open_only: bool = True, **values) -> None:
        """
        Conditional write on the loan row, matching only while it is not
        deleted (and, with ``open_only``, still OPEN). Runs before any ledger
        write so that of two requests racing on the same loan only one goes
        on to touch the ledger.
        """
        stmt = update(LoanORM).where(LoanORM.id == loan.id, LoanORM.deleted_at.is_(None))
        if open_only:
            stmt = stmt.where(LoanORM.status == "OPEN")
        result = db.execute(
            stmt.values(updated_at=self.now(), **values).execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConflictError("loan was changed by another request", loan_id=loan.id)
        # reload the row and its lines as they are now, under the claim
        db.expire(loan)

    def _soft_delete(self, db: Session, loan: LoanORM, actor_id: str) -> list[LineRef]:
        self._claim(db, loan, deleted_at=self.now(), deleted_by_id=actor_id)
        # the loan was OPEN, so every line still holds its allocation
        refs = [ledger.line_ref(line) for line in loan.lines]
        for ref in refs:
            ledger.revert(db, ref)
        return refs

    def _finish(
        self,
        db: Session,
        loan: LoanORM,
        actor_id: str,
        before: dict,
        refs: list[LineRef],
        *,
        action: str = "log_update",
    ) -> Loan:
        db.refresh(loan)
        result = loan_to_schema(loan)
        self._notify(_namespaces_for(refs))
        self._audit(action, "loans", loan.id, actor_id, before, _snapshot(loan))
        return result

    def _after_commit(self, namespaces: list[str], audits: list[tuple]) -> None:
        self._notify(namespaces)
        for method, record_id, actor_id, before, after in audits:
            self._audit(method, "loans", record_id, actor_id, before, after)

    def _discard_signature(self, url: str) -> None:
        try:
            self.signatures.discard(url)
        except Exception:
            logger.exception("signature cleanup failed url=%s", url)

    def _notify(self, namespaces: list[str]) -> None:
        for namespace in namespaces:
            try:
                self.cache.invalidate(namespace)
            except Exception:
                logger.exception("cache invalidation failed namespace=%s", namespace)

    def _audit(self, method: str, table: str, record_id: str, actor_id: str, before, after) -> None:
        try:
            getattr(self.audit, method)(table, record_id, actor_id, before, after)
        except Exception:
            logger.exception("audit %s failed table=%s record_id=%s", method, table, record_id)


def _signature_prefix(kind: str) -> str:
    if kind not in ("pickup", "return"):
        raise ValidationError("signature kind must be 'pickup' or 'return'", kind=kind)
    return kind
