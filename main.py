from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

import logging
import time

from db import Base, SessionLocal, SIGNATURES_DIR, engine
from errors import LedgerError
from loans import LoanEngine
from ports import FileSignatureStore, LoggingCacheInvalidator, SqlAuditRecorder
from routers import ALL_ROUTERS

import orm  # noqa: F401  (registers tables on Base.metadata)

app = FastAPI(title="Equipment Loans API")

Base.metadata.create_all(bind=engine)

# -----------------------
# Logging
# -----------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("app")

app.state.loan_engine = LoanEngine(
    cache=LoggingCacheInvalidator(),
    audit=SqlAuditRecorder(SessionLocal),
    signatures=FileSignatureStore(SIGNATURES_DIR),
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    elapsed_ms = int((time.time() - start) * 1000)
    logger.info(
        "method=%s path=%s status=%s elapsed_ms=%s",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    logger.info(
        "request rejected path=%s code=%s detail=%s",
        request.url.path,
        exc.code,
        exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/")
def root():
    return {"message": "Equipment Loans API", "docs": "/docs"}


for router in ALL_ROUTERS:
    app.include_router(router)
