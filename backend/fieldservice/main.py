import logging
import sqlite3
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fieldservice.config import settings
from fieldservice.database import init_db
from fieldservice.routers import calendar, occurrences, series

logger = logging.getLogger("fieldservice")
logger.setLevel(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: create or migrate the schema, then integrity-check it
    try:
        init_db()
        conn = sqlite3.connect(str(settings.db_path))
        result = conn.execute("PRAGMA integrity_check").fetchone()
        conn.close()
        if result and result[0] == "ok":
            logger.info("Database integrity check passed.")
        else:
            logger.error("DATABASE INTEGRITY CHECK FAILED: %s", result)
    except sqlite3.Error as exc:
        logger.error("Could not run startup migration/integrity check: %s", exc)
    yield


app = FastAPI(
    title="FieldService Scheduler",
    description="Recurring job materialization and unified calendar for field-service teams",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://127.0.0.1:5173",
        "http://localhost:5173",
    ],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(series.router, prefix=settings.api_prefix)
app.include_router(occurrences.router, prefix=settings.api_prefix)
app.include_router(calendar.router, prefix=settings.api_prefix)


@app.get("/health")
async def health():
    return {"status": "ok", "version": "0.1.0"}
