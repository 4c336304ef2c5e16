# hotelpos/routes_tables.py
from __future__ import annotations

from datetime import date
from typing import Annotated, Optional

from fastapi import APIRouter, Depends
from sqlmodel import Session

from .db import get_session_dep
from .errors import ok
from .security import IdentityDep
from . import tables

router = APIRouter(prefix="/api/v1/restaurant", tags=["tables"])

# Dipendenza tipizzata
SessionDep = Annotated[Session, Depends(get_session_dep)]


@router.get("/tables/{table_id}/status")
def table_status(table_id: int, session: SessionDep, identity: IdentityDep, on: Optional[date] = None):
    t = tables.get_table(session, table_id)
    return ok(tables.table_payload(session, t, tables.table_status(session, t.id, today=on)))
