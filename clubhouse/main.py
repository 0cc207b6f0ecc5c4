# clubhouse/main.py
from fastapi import FastAPI, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exception_handlers import http_exception_handler
from sqlalchemy import text
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.exc import SQLAlchemyError
from starlette.requests import Request
import os

from clubhouse.database import Base, engine, get_db, DB_SOURCE, DB_INFO
from clubhouse.errors import ClubhouseError
from clubhouse.club_settings import env_flag
from clubhouse.routers import identity_types, rates, bookings, folios, resources
from clubhouse import models  # noqa: F401  registers tables on Base.metadata

# -----------------------------------------
# Create app instance
# -----------------------------------------
app = FastAPI(title="Clubhouse")

# -----------------------------------------
# Global Error Handling (Keep JSON Responses)
# -----------------------------------------
@app.exception_handler(ClubhouseError)
async def clubhouse_error_handler(request: Request, exc: ClubhouseError):
    print(f"[API] {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})

@app.exception_handler(StaleDataError)
async def stale_data_handler(request: Request, exc: StaleDataError):
    print(f"[DB] Stale write rejected: {str(exc)[:240]}")
    return JSONResponse(
        status_code=409,
        content={"detail": {"code": "version_conflict", "message": "Record was modified by another request; reload and retry"}},
    )

@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": {"code": "invalid_value", "message": str(exc)}})

@app.exception_handler(SQLAlchemyError)
async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError):
    print(f"[DB] SQLAlchemy error: {str(exc)[:240]}")
    return JSONResponse(status_code=503, content={"detail": "Database connection unavailable"})

@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    if isinstance(exc, HTTPException):
        return await http_exception_handler(request, exc)

    print(f"[UNHANDLED] {type(exc).__name__}: {str(exc)[:240]}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})

# -----------------------------------------
# CORS Settings
# -----------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in (os.getenv("CORS_ORIGINS") or "*").split(",") if o.strip()],
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=False,
)

@app.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("select 1"))
        return {
            "ok": True,
            "db": "ok",
            "db_source": DB_SOURCE,
            "db_driver": (DB_INFO or {}).get("driver"),
            "has_database_url": bool(os.getenv("DATABASE_URL")),
        }
    except SQLAlchemyError as e:
        print(f"[HEALTH] Database error: {str(e)[:200]}")
        return {
            "ok": False,
            "db": "error",
            "db_source": DB_SOURCE,
            "db_driver": (DB_INFO or {}).get("driver"),
            "has_database_url": bool(os.getenv("DATABASE_URL")),
        }


def _seed_identities_if_enabled() -> None:
    """Opt-in via SEED_DEFAULT_IDENTITIES so fresh hosts can price bookings immediately."""
    if not env_flag("SEED_DEFAULT_IDENTITIES"):
        return

    from clubhouse.database import SessionLocal
    from clubhouse.rate_store import seed_default_identity_types

    db = SessionLocal()
    try:
        created = seed_default_identity_types(db)
        print(f"[SEED] Default identity types created: {created}")
    except Exception as e:
        print(f"[SEED] Identity seed failed: {type(e).__name__}: {str(e)[:160]}")
    finally:
        db.close()

# -----------------------------------------
# Database initialization
# -----------------------------------------
AUTO_CREATE_TABLES = str(os.getenv("AUTO_CREATE_TABLES", "1")).strip().lower() in {"1", "true", "yes"}

try:
    if AUTO_CREATE_TABLES:
        Base.metadata.create_all(bind=engine)
    print("[DB] Database connected successfully")
    _seed_identities_if_enabled()
except Exception as e:
    print(f"[DB] Warning: Could not connect to database: {str(e)[:100]}")
    print("[DB] System will run in offline mode (no data persistence)")

# -----------------------------------------
# Routers
# -----------------------------------------
app.include_router(identity_types.router)
app.include_router(rates.router)
app.include_router(bookings.router)
app.include_router(folios.router)
app.include_router(resources.router)
