from sqlalchemy import update

import ledger
from models import AssetRef, StockRef
from orm import AssetItemORM, StockItemORM
from scripts.reconcile_ledger import main as reconcile_main


def _corrupt(db, cls, item_id, **values):
    db.execute(update(cls).where(cls.id == item_id).values(**values))
    db.commit()
    db.expire_all()


def test_no_drift_after_normal_operations(db_session, engine, employee, make_asset, make_stock):
    a1 = make_asset()
    s1 = make_stock(quantity=10)
    loan = engine.create_loan(db_session, employee.id, "u1")
    engine.add_line(db_session, loan.id, AssetRef(a1.id), "u1")
    engine.add_line(db_session, loan.id, StockRef(s1.id, 4), "u1")
    closed = engine.create_loan(db_session, employee.id, "u1")
    engine.add_line(db_session, closed.id, StockRef(s1.id, 2), "u1")
    engine.close_loan(db_session, closed.id, "u1")

    assert ledger.find_drift(db_session) == []


def test_reconcile_fixes_counters_and_statuses(db_session, engine, employee, make_asset, make_stock):
    stray = make_asset()
    on_loan = make_asset()
    s1 = make_stock(quantity=10)
    loan = engine.create_loan(db_session, employee.id, "u1")
    engine.add_line(db_session, loan.id, AssetRef(on_loan.id), "u1")
    engine.add_line(db_session, loan.id, StockRef(s1.id, 3), "u1")

    _corrupt(db_session, AssetItemORM, stray.id, status="PRETE")
    _corrupt(db_session, AssetItemORM, on_loan.id, status="EN_STOCK")
    _corrupt(db_session, StockItemORM, s1.id, loaned=7)

    drifts = ledger.find_drift(db_session)
    assert {(d.item_id, d.expected) for d in drifts} == {
        (stray.id, "EN_STOCK"),
        (on_loan.id, "PRETE"),
        (s1.id, 3),
    }

    fixed = ledger.reconcile(db_session)
    assert len(fixed) == 3
    assert ledger.find_drift(db_session) == []

    db_session.expire_all()
    assert db_session.get(AssetItemORM, stray.id).status == "EN_STOCK"
    assert db_session.get(AssetItemORM, on_loan.id).status == "PRETE"
    assert db_session.get(StockItemORM, s1.id).loaned == 3


def test_reconcile_leaves_manual_status_for_review(db_session, engine, employee, make_asset):
    a1 = make_asset()
    loan = engine.create_loan(db_session, employee.id, "u1")
    engine.add_line(db_session, loan.id, AssetRef(a1.id), "u1")
    _corrupt(db_session, AssetItemORM, a1.id, status="HS")

    drifts = ledger.find_drift(db_session)
    assert [(d.item_id, d.current) for d in drifts] == [(a1.id, "HS")]

    assert ledger.reconcile(db_session) == []
    db_session.expire_all()
    assert db_session.get(AssetItemORM, a1.id).status == "HS"


def test_reconcile_script_dry_run_then_apply(db_session, make_stock, capsys):
    s1 = make_stock(quantity=5)
    _corrupt(db_session, StockItemORM, s1.id, loaned=2)

    assert reconcile_main([]) == 1
    out = capsys.readouterr().out
    assert f"stock {s1.id}: loaned is 2, expected 0" in out
    db_session.expire_all()
    assert db_session.get(StockItemORM, s1.id).loaned == 2

    assert reconcile_main(["--apply"]) == 0
    db_session.expire_all()
    assert db_session.get(StockItemORM, s1.id).loaned == 0
    assert reconcile_main([]) == 0
