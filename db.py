from pathlib import Path
import os
import sys
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, DeclarativeBase

def app_root_dir() -> Path:
    if getattr(sys, "frozen", False):
        exe_dir = Path(sys.executable).resolve().parent
        return exe_dir.parent
    return Path(__file__).resolve().parent

def resolve_path(root_dir: Path, env_name: str, default: Path) -> Path:
    custom_path = os.getenv(env_name)
    if not custom_path:
        return root_dir / default

    path = Path(custom_path).expanduser()
    if not path.is_absolute():
        path = (root_dir / path).resolve()
    return path

def resolve_db_path(root_dir: Path) -> Path:
    db_path = resolve_path(root_dir, "APP_DB_PATH", Path("data") / "loans.db")
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return db_path

def resolve_signatures_dir(root_dir: Path) -> Path:
    return resolve_path(root_dir, "APP_SIGNATURES_DIR", Path("data") / "uploads" / "signatures")

ROOT_DIR = app_root_dir()
DB_PATH = resolve_db_path(ROOT_DIR)
SIGNATURES_DIR = resolve_signatures_dir(ROOT_DIR)
DATABASE_URL = f"sqlite:///{DB_PATH.as_posix()}"

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False},
)

@event.listens_for(engine, "connect")
def _enable_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

class Base(DeclarativeBase):
    pass
