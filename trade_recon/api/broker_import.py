"""
Broker import HTTP endpoints

Every response uses one envelope:
    {"ok": true, "data": ...}
    {"ok": false, "error": "<message>", "code": "<error kind>"}
"""

import logging
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ..bridge.errors import BridgeError, ErrorKind
from ..bridge.lifecycle import LifecycleError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/broker-import", tags=["broker-import"])

IdentityResolver = Callable[[str], Optional[str]]


class ConnectBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    platform: Optional[str] = None
    environment: Optional[str] = None
    server: Optional[str] = None
    login: Optional[str] = None
    password: Optional[str] = None
    cloud_type: Optional[str] = Field(None, alias="type")


class ImportBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    connection_id: Optional[str] = None
    start: Optional[str] = Field(None, alias="from")
    end: Optional[str] = Field(None, alias="to")


class QuickImportBody(BaseModel):
    connection_id: Optional[str] = None
    days: Optional[Any] = None


def ok(data: Any) -> JSONResponse:
    return JSONResponse(status_code=200, content={"ok": True, "data": data})


def fail(kind: ErrorKind, message: str, extra: Optional[Dict[str, Any]] = None) -> JSONResponse:
    content = {"ok": False, "error": message, "code": kind.value}
    if extra:
        content.update(extra)
    return JSONResponse(status_code=kind.http_status, content=content)


def get_bearer_token(auth_header: Optional[str]) -> Optional[str]:
    if not auth_header:
        return None
    scheme, _, token = auth_header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def current_user_id(request: Request) -> Optional[str]:
    """Resolve the caller from the bearer token; None when unauthenticated"""
    token = get_bearer_token(request.headers.get("authorization"))
    if not token:
        return None
    resolver: IdentityResolver = request.app.state.resolve_identity
    return resolver(token)


def get_bridge(request: Request):
    return request.app.state.bridge


def _run(operation: str, action: Callable[[], Any]) -> JSONResponse:
    try:
        return ok(action())
    except BridgeError as e:
        if e.kind == ErrorKind.SERVER_ERROR:
            logger.error(f"{operation} failed: {e.message}")
        else:
            logger.info(f"{operation} rejected ({e.kind.value}): {e.message}")
        payload = e.to_dict()
        extra = {k: v for k, v in payload.items() if k not in ("ok", "error", "code")}
        return fail(e.kind, e.message, extra)
    except LifecycleError as e:
        logger.error(f"{operation} lifecycle error: {e}")
        return fail(ErrorKind.SERVER_ERROR, str(e))
    except Exception as e:
        logger.exception(f"{operation} failed: {e}")
        return fail(ErrorKind.SERVER_ERROR, "Server error.")


@router.post("/connect")
def connect(body: ConnectBody, user_id: Optional[str] = Depends(current_user_id),
            bridge=Depends(get_bridge)) -> JSONResponse:
    """Connect a MetaTrader account; returns {connection}"""
    return _run("connect", lambda: {
        "connection": bridge.connect(
            user_id,
            platform=body.platform,
            environment=body.environment,
            server=body.server,
            login=body.login,
            credential=body.password,
            cloud_type=body.cloud_type,
        ).to_dict()
    })


@router.post("/import")
def import_history(body: ImportBody, user_id: Optional[str] = Depends(current_user_id),
                   bridge=Depends(get_bridge)) -> JSONResponse:
    """Import history for a range; returns {imported, upserted, total_fetched}"""
    return _run("import", lambda: bridge.import_history(
        user_id, body.connection_id, start=body.start, end=body.end
    ).to_dict())


@router.post("/quick-import")
def quick_import(body: QuickImportBody, user_id: Optional[str] = Depends(current_user_id),
                 bridge=Depends(get_bridge)) -> JSONResponse:
    return _run("quick-import", lambda: bridge.quick_import(
        user_id, body.connection_id, days=body.days
    ).to_dict())


@router.get("/status")
def status(connection_id: Optional[str] = None, user_id: Optional[str] = Depends(current_user_id),
           bridge=Depends(get_bridge)) -> JSONResponse:
    """All connections with trade counts, or one connection's status"""
    return _run("status", lambda: bridge.status(user_id, connection_id))


@router.delete("/connections/{connection_id}")
def disconnect(connection_id: str, user_id: Optional[str] = Depends(current_user_id),
               bridge=Depends(get_bridge)) -> JSONResponse:
    return _run("disconnect", lambda: bridge.disconnect(user_id, connection_id))


def create_app(bridge, resolve_identity: IdentityResolver) -> FastAPI:
    """
    Build an app serving the broker import router

    Args:
        bridge: BrokerBridge instance
        resolve_identity: Maps a bearer token to a user id, or None when invalid
    """
    app = FastAPI(title="trade-recon broker import")
    app.state.bridge = bridge
    app.state.resolve_identity = resolve_identity
    app.include_router(router)
    return app
