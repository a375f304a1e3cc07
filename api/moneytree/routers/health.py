from fastapi import APIRouter, Depends
from sqlalchemy import func, select, text
from sqlalchemy.orm import Session

from moneytree.core.database import get_db
from moneytree.models.connection import InstitutionConnection

router = APIRouter(tags=["health"])


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/health/db")
def health_db(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok", "database": "connected"}


@router.get("/health/sync")
def health_sync(db: Session = Depends(get_db)):
    """Count connections whose latest sync attempt failed."""
    failing = db.execute(
        select(func.count())
        .select_from(InstitutionConnection)
        .where(
            InstitutionConnection.last_sync_error_at.is_not(None),
            (InstitutionConnection.last_synced_at.is_(None))
            | (InstitutionConnection.last_sync_error_at > InstitutionConnection.last_synced_at),
        )
    ).scalar_one()
    total = db.execute(select(func.count()).select_from(InstitutionConnection)).scalar_one()
    return {
        "status": "degraded" if failing else "ok",
        "connections": total,
        "failing_connections": failing,
    }
