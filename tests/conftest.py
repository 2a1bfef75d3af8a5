import os
import tempfile
from pathlib import Path

import pytest

# ---- テスト用DB / 署名ディレクトリ（アプリのimport前に設定する）----
_TMP_DIR = Path(tempfile.mkdtemp(prefix="loans_app_"))
os.environ["APP_DB_PATH"] = str(_TMP_DIR / "test_loans.db")
os.environ["APP_SIGNATURES_DIR"] = str(_TMP_DIR / "signatures")

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import delete  # noqa: E402

import crud  # noqa: E402
import main  # noqa: E402
from dependencies import get_db  # noqa: E402
from loans import LoanEngine  # noqa: E402
from models import AssetItemIn, AssetModelIn, EmployeeIn, StockItemIn  # noqa: E402
from orm import (  # noqa: E402
    AssetItemORM,
    AssetModelORM,
    AuditLogORM,
    EmployeeORM,
    LoanLineORM,
    LoanORM,
    StockItemORM,
)
from ports import FileSignatureStore  # noqa: E402


class RecordingCache:
    def __init__(self):
        self.namespaces = []

    def invalidate(self, namespace):
        self.namespaces.append(namespace)


class RecordingAudit:
    def __init__(self):
        self.calls = []

    def log_create(self, table, record_id, actor, before, after):
        self.calls.append(("create", table, record_id, actor, before, after))

    def log_update(self, table, record_id, actor, before, after):
        self.calls.append(("update", table, record_id, actor, before, after))

    def log_delete(self, table, record_id, actor, before, after):
        self.calls.append(("delete", table, record_id, actor, before, after))


@pytest.fixture(scope="session")
def app_module():
    return main


@pytest.fixture()
def client(app_module):
    def _get_db_override():
        db = app_module.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app_module.app.dependency_overrides[get_db] = _get_db_override
    with TestClient(app_module.app) as c:
        yield c
    app_module.app.dependency_overrides.clear()


@pytest.fixture()
def db_session(app_module):
    db = app_module.SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def cache():
    return RecordingCache()


@pytest.fixture()
def audit():
    return RecordingAudit()


@pytest.fixture()
def engine(cache, audit, tmp_path):
    return LoanEngine(
        cache=cache,
        audit=audit,
        signatures=FileSignatureStore(tmp_path / "signatures"),
    )


@pytest.fixture()
def employee(db_session):
    return crud.create_employee(db_session, EmployeeIn(first_name="Ada", last_name="Martin", email="ada@example.com"))


@pytest.fixture()
def asset_model(db_session):
    return crud.create_asset_model(db_session, AssetModelIn(type="Laptop", brand="Lenovo", model_name="T14"))


@pytest.fixture()
def make_asset(db_session, asset_model):
    counter = {"n": 0}

    def _make(tag=None):
        counter["n"] += 1
        return crud.create_asset_item(
            db_session,
            AssetItemIn(asset_model_id=asset_model.id, asset_tag=tag or f"A-{counter['n']:03d}"),
        )

    return _make


@pytest.fixture()
def make_stock(db_session, asset_model):
    def _make(quantity=10):
        return crud.create_stock_item(db_session, StockItemIn(asset_model_id=asset_model.id, quantity=quantity))

    return _make


@pytest.fixture(autouse=True)
def clean_db(app_module, db_session):
    # 各テスト前にテーブルを全消し（順序注意：lines -> loans -> items -> masters）
    db_session.execute(delete(LoanLineORM))
    db_session.execute(delete(LoanORM))
    db_session.execute(delete(AuditLogORM))
    db_session.execute(delete(AssetItemORM))
    db_session.execute(delete(StockItemORM))
    db_session.execute(delete(AssetModelORM))
    db_session.execute(delete(EmployeeORM))
    db_session.commit()
    yield
