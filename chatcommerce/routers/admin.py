from fastapi import APIRouter, Depends, HTTPException, Query, Request

from chatcommerce.config.db import require_db
from chatcommerce.config.settings import Settings, get_settings
from chatcommerce.services.sessions import SessionStore
from chatcommerce.utils.phone import normalize_phone

router = APIRouter(prefix="/admin", tags=["admin"])


def get_session_store(request: Request) -> SessionStore:
    store = getattr(request.app.state, "sessions", None)
    if store is None:
        raise RuntimeError("Session store not initialized")
    return store


def require_admin(settings: Settings, phone: str):
    admins = {normalize_phone(n) for n in settings.admin_numbers}
    if not phone or normalize_phone(phone) not in admins:
        raise HTTPException(status_code=403, detail="Admin access required")


@router.get("/sessions")
async def list_sessions(
    phone: str = Query(..., description="Admin phone (must be whitelisted)"),
    limit: int = Query(50, ge=1, le=500),
    settings: Settings = Depends(get_settings),
    store: SessionStore = Depends(get_session_store),
):
    require_admin(settings, phone)
    sessions = await store.list(limit=limit)
    return {"sessions": [s.dict() for s in sessions]}


@router.delete("/sessions/{user_address}")
async def delete_session(
    user_address: str,
    phone: str = Query(..., description="Admin phone (must be whitelisted)"),
    settings: Settings = Depends(get_settings),
    store: SessionStore = Depends(get_session_store),
):
    require_admin(settings, phone)
    address = normalize_phone(user_address)
    async with store.lock(address):
        deleted = await store.delete(address)
    if not deleted:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"deleted": deleted}


@router.delete("/sessions")
async def delete_all_sessions(
    phone: str = Query(..., description="Admin phone (must be whitelisted)"),
    settings: Settings = Depends(get_settings),
    store: SessionStore = Depends(get_session_store),
):
    require_admin(settings, phone)
    deleted = await store.delete_all()
    return {"deleted": deleted}


@router.get("/messages")
async def list_messages(
    phone: str = Query(..., description="Admin phone (must be whitelisted)"),
    limit: int = Query(20, ge=1, le=200),
    settings: Settings = Depends(get_settings),
    db=Depends(require_db),
):
    require_admin(settings, phone)
    cursor = db.messages.find().sort("ts", -1).limit(limit)
    docs = await cursor.to_list(length=limit)
    # Mask ObjectId for JSON friendliness
    for d in docs:
        d["_id"] = str(d["_id"])
    return {"messages": docs}
