from __future__ import annotations
import asyncio
import json
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sse_starlette.sse import EventSourceResponse

# =====================================
# Config
# =====================================
# SQLite database lives in the container's /data directory unless DB_URL
# points somewhere else (tests use a temporary file).
DB_URL = os.getenv("DB_URL", "sqlite:////data/db.sqlite")

# Authentication token shared with the bot for every route.
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "change-me")

DEFAULT_PLAYLIST_NAME = "Requests"

API_VERSION = "0.1.0"

logger = logging.getLogger(__name__)

_connect_args = {"check_same_thread": False} if DB_URL.startswith("sqlite") else {}
engine = create_engine(DB_URL, connect_args=_connect_args)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
Base = declarative_base()


# =====================================
# Models
# =====================================
class Tenant(Base):
    __tablename__ = "tenants"
    id = Column(Integer, primary_key=True)
    chat_user_id = Column(String, unique=True, nullable=False)  # Twitch broadcaster ID
    chat_login = Column(String, nullable=False)
    chat_access_token = Column(Text, nullable=False)
    chat_refresh_token = Column(Text, nullable=False)
    music_refresh_token = Column(Text, nullable=True)
    playlist_id = Column(String, nullable=True)
    playlist_name = Column(String, nullable=False, default=DEFAULT_PLAYLIST_NAME)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


Base.metadata.create_all(bind=engine)


# =====================================
# Schemas
# =====================================
class TenantIn(BaseModel):
    chat_user_id: str = Field(min_length=1)
    chat_login: str = Field(min_length=1)
    chat_access_token: str
    chat_refresh_token: str
    music_refresh_token: Optional[str] = None
    playlist_name: Optional[str] = None
    active: bool = True


class TenantOut(BaseModel):
    id: int
    chat_user_id: str
    chat_login: str
    chat_access_token: Optional[str] = None
    chat_refresh_token: Optional[str] = None
    music_refresh_token: Optional[str] = None
    music_connected: bool
    playlist_id: Optional[str] = None
    playlist_name: str
    active: bool


class PlaylistIdIn(BaseModel):
    playlist_id: str = Field(min_length=1)


class CredentialIn(BaseModel):
    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)


class ActiveOut(BaseModel):
    active: bool


class BotLogEventIn(BaseModel):
    message: str
    level: str = Field(default="info")
    source: Optional[str] = None
    timestamp: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None


class BotLogAckOut(BaseModel):
    success: bool


app = FastAPI(title="Song Request Tenant Store", version=API_VERSION)


# =====================================
# Helpers
# =====================================
def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def require_token(x_admin_token: str = Header(None)):
    if x_admin_token != ADMIN_TOKEN:
        raise HTTPException(status_code=401, detail="invalid admin token")


class LogBroadcaster:
    """Fans bot console events out to every open SSE stream."""

    def __init__(self, backlog: int = 1000):
        self.backlog = backlog
        self.listeners: set[asyncio.Queue[str]] = set()

    def subscribe(self) -> asyncio.Queue[str]:
        queue: asyncio.Queue[str] = asyncio.Queue(maxsize=self.backlog)
        self.listeners.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[str]) -> None:
        self.listeners.discard(queue)

    def publish(self, event: Dict[str, Any]) -> None:
        data = json.dumps(event, default=str)
        for queue in list(self.listeners):
            try:
                queue.put_nowait(data)
            except asyncio.QueueFull:
                # A stream that stopped reading is dropped.
                self.unsubscribe(queue)


bot_logs = LogBroadcaster()


def _serialize_tenant(tenant: Tenant) -> Dict[str, Any]:
    return {
        "id": tenant.id,
        "chat_user_id": tenant.chat_user_id,
        "chat_login": tenant.chat_login,
        "chat_access_token": tenant.chat_access_token,
        "chat_refresh_token": tenant.chat_refresh_token,
        "music_refresh_token": tenant.music_refresh_token,
        "music_connected": bool(tenant.music_refresh_token),
        "playlist_id": tenant.playlist_id,
        "playlist_name": tenant.playlist_name or DEFAULT_PLAYLIST_NAME,
        "active": bool(tenant.active),
    }


def get_tenant_or_404(tenant_id: int, db: Session) -> Tenant:
    tenant = db.get(Tenant, tenant_id)
    if not tenant:
        raise HTTPException(status_code=404, detail="tenant not found")
    return tenant


# =====================================
# Tenants
# =====================================
@app.get("/tenants", response_model=List[TenantOut], dependencies=[Depends(require_token)])
def list_tenants(active: Optional[bool] = Query(None), db: Session = Depends(get_db)):
    query = db.query(Tenant)
    if active is not None:
        query = query.filter(Tenant.active == active)
    return [_serialize_tenant(t) for t in query.order_by(Tenant.id.asc()).all()]


@app.post("/tenants", response_model=TenantOut, dependencies=[Depends(require_token)])
def upsert_tenant(payload: TenantIn, db: Session = Depends(get_db)):
    """Create or refresh a tenant after the owner completed the OAuth flow."""
    tenant = db.query(Tenant).filter(Tenant.chat_user_id == payload.chat_user_id).one_or_none()
    if not tenant:
        tenant = Tenant(chat_user_id=payload.chat_user_id)
        db.add(tenant)
    tenant.chat_login = payload.chat_login
    tenant.chat_access_token = payload.chat_access_token
    tenant.chat_refresh_token = payload.chat_refresh_token
    if payload.music_refresh_token is not None:
        tenant.music_refresh_token = payload.music_refresh_token or None
    if payload.playlist_name:
        if tenant.playlist_name and tenant.playlist_name != payload.playlist_name:
            # A renamed playlist is looked up again on the next request.
            tenant.playlist_id = None
        tenant.playlist_name = payload.playlist_name
    tenant.active = payload.active
    db.commit()
    db.refresh(tenant)
    logger.info("Upserted tenant %s (%s)", tenant.chat_login, tenant.id)
    return _serialize_tenant(tenant)


@app.get("/tenants/{tenant_id}", response_model=TenantOut, dependencies=[Depends(require_token)])
def get_tenant(tenant_id: int, db: Session = Depends(get_db)):
    return _serialize_tenant(get_tenant_or_404(tenant_id, db))


@app.put("/tenants/{tenant_id}/playlist", response_model=TenantOut, dependencies=[Depends(require_token)])
def update_tenant_playlist(tenant_id: int, payload: PlaylistIdIn, db: Session = Depends(get_db)):
    tenant = get_tenant_or_404(tenant_id, db)
    tenant.playlist_id = payload.playlist_id
    db.commit()
    db.refresh(tenant)
    return _serialize_tenant(tenant)


@app.put("/tenants/{tenant_id}/credentials", response_model=TenantOut, dependencies=[Depends(require_token)])
def update_tenant_credentials(tenant_id: int, payload: CredentialIn, db: Session = Depends(get_db)):
    tenant = get_tenant_or_404(tenant_id, db)
    tenant.chat_access_token = payload.access_token
    tenant.chat_refresh_token = payload.refresh_token
    db.commit()
    db.refresh(tenant)
    return _serialize_tenant(tenant)


@app.post("/tenants/{tenant_id}/toggle", response_model=ActiveOut, dependencies=[Depends(require_token)])
def toggle_tenant(tenant_id: int, db: Session = Depends(get_db)):
    tenant = get_tenant_or_404(tenant_id, db)
    tenant.active = not tenant.active
    db.commit()
    return {"active": bool(tenant.active)}


@app.delete("/tenants/{tenant_id}", dependencies=[Depends(require_token)])
def delete_tenant(tenant_id: int, db: Session = Depends(get_db)):
    tenant = get_tenant_or_404(tenant_id, db)
    db.delete(tenant)
    db.commit()
    return {"success": True}


# =====================================
# Bot console
# =====================================
@app.post("/bot/logs", response_model=BotLogAckOut, dependencies=[Depends(require_token)])
def push_bot_log(event: BotLogEventIn):
    bot_logs.publish({
        "type": "log",
        "source": event.source,
        "level": event.level,
        "message": event.message,
        "metadata": event.metadata or {},
        "timestamp": (event.timestamp or datetime.utcnow()).isoformat(),
    })
    return {"success": True}


@app.get("/bot/logs/stream", dependencies=[Depends(require_token)])
async def stream_bot_logs():
    queue = bot_logs.subscribe()

    async def events():
        try:
            yield {"event": "log", "data": json.dumps({"type": "ready"})}
            while True:
                yield {"event": "log", "data": await queue.get()}
        finally:
            bot_logs.unsubscribe(queue)

    return EventSourceResponse(events())
