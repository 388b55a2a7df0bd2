import os
import logging
from typing import List, Optional

from fastapi import FastAPI, Depends, HTTPException, Query
from fastapi.responses import FileResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from . import db, crud, events, schemas, security
from .activity_logger import log_activity
from .exports import export_ledger_csv

app = FastAPI(title="brewledger Backend")

bearer_scheme = HTTPBearer(auto_error=False)


class Actor:
    """Authenticated caller: a user acting for one brewery."""

    def __init__(self, username: str, brewery_id: str):
        self.username = username
        self.brewery_id = brewery_id


def get_current_actor(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> Actor:
    if credentials is None:
        raise HTTPException(status_code=401, detail='Not authenticated')
    try:
        payload = security.decode_token(credentials.credentials)
    except Exception:
        raise HTTPException(status_code=401, detail='Invalid token')
    username = payload.get('sub')
    brewery_id = payload.get('brewery_id')
    if not username or not brewery_id:
        raise HTTPException(status_code=401, detail='Invalid authentication')
    return Actor(username, brewery_id)


def _append(session: Session, actor: Actor, payload: schemas.ActionData) -> schemas.Block:
    try:
        return crud.record_action(session, actor.brewery_id, payload)
    except crud.BreweryNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except crud.ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc))


@app.on_event("startup")
def on_startup():
    # Ensure DB tables exist for simple dev setup. Alembic is primary migration tool.
    db.Base.metadata.create_all(bind=db.engine)


@app.get("/api/health")
def health():
    return {"status": "ok"}


@app.post('/api/breweries', response_model=schemas.BreweryCreated, status_code=201)
def create_brewery(payload: schemas.BreweryCreate, session: Session = Depends(db.get_db)):
    try:
        brewery, genesis = crud.create_brewery(session, payload.id, name=payload.name)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    token = security.create_access_token(payload.username, brewery.id)
    return schemas.BreweryCreated(brewery=schemas.BreweryOut.model_validate(brewery), genesis=genesis, access_token=token)


# ==================== Ledger ====================

@app.get('/api/ledger', response_model=List[schemas.Block])
def list_ledger(limit: Optional[int] = Query(None, ge=1), session: Session = Depends(db.get_db), actor: Actor = Depends(get_current_actor)):
    """Ledger timeline, most recent block first."""
    if crud.get_brewery(session, actor.brewery_id) is None:
        raise HTTPException(status_code=404, detail='Brewery not found')
    return crud.get_timeline(session, actor.brewery_id, limit=limit)


@app.post('/api/ledger', response_model=schemas.Block, status_code=201)
def append_action(payload: schemas.ActionCreate, session: Session = Depends(db.get_db), actor: Actor = Depends(get_current_actor)):
    if payload.action == schemas.ActionKind.GENESIS:
        raise HTTPException(status_code=400, detail='GENESIS is written once, when the brewery is created')
    data = schemas.ActionData(action=payload.action, details=payload.details, user=actor.username)
    return _append(session, actor, data)


@app.post('/api/ledger/inventory', response_model=schemas.Block, status_code=201)
def record_inventory_movement(payload: schemas.InventoryMovement, session: Session = Depends(db.get_db), actor: Actor = Depends(get_current_actor)):
    data = events.inventory_change(payload.item_name, payload.change, payload.reason, actor.username)
    return _append(session, actor, data)


@app.post('/api/ledger/import', response_model=schemas.LedgerImportResult)
def import_ledger(payload: schemas.LedgerImport, session: Session = Depends(db.get_db), actor: Actor = Depends(get_current_actor)):
    """Store blocks computed by a client; resending already stored blocks is a no-op."""
    try:
        inserted, skipped = crud.import_blocks(session, actor.brewery_id, payload.blocks)
    except crud.BreweryNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except crud.ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except crud.LedgerIntegrityError as exc:
        log_activity(actor.brewery_id, actor.username, 'rejected import', detail={'error': str(exc)}, level=logging.WARNING)
        raise HTTPException(status_code=400, detail=str(exc))
    return schemas.LedgerImportResult(inserted=inserted, skipped=skipped)


@app.get('/api/ledger/verify', response_model=schemas.ValidationResult)
def verify_ledger(session: Session = Depends(db.get_db), actor: Actor = Depends(get_current_actor)):
    if crud.get_brewery(session, actor.brewery_id) is None:
        raise HTTPException(status_code=404, detail='Brewery not found')
    return crud.verify_brewery_chain(session, actor.brewery_id)


@app.get('/api/ledger/export')
def export_ledger(session: Session = Depends(db.get_db), actor: Actor = Depends(get_current_actor)):
    try:
        path = export_ledger_csv(session, actor.brewery_id)
    except crud.BreweryNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return FileResponse(path, filename=os.path.basename(path), media_type='text/csv')
