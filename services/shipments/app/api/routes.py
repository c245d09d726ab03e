import asyncio
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.application.rate_limiter import RateLimiter, get_rate_limiter
from app.application.realtime import get_broker
from app.application.schemas import (
    AdminActionRequest,
    AlertRead,
    BookingRequest,
    ConfirmRequest,
    DispatchRequest,
    ShipmentEnvelope,
    ShipmentRead,
    TimelineEntryRead,
    TimelineEnvelope,
)
from app.application.service import ShipmentService
from app.domain.errors import Forbidden, LifecycleError
from app.domain.lifecycle import ADMIN_ACTIONS
from app.infrastructure import db as database
from app.infrastructure.auth import Actor, actor_from_token, can_administer, get_current_actor, require_admin, require_cron
from app.infrastructure.db import get_db
from app.workers.carrier_sync import run_carrier_sync
from app.workers.simulation import run_simulation
from app.workers.stuck_detector import detect_stuck_shipments
from shared.core import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/shipments", tags=["shipments"])
cron_router = APIRouter(prefix="/cron", tags=["cron"])


def rate_limiter() -> RateLimiter:
    return get_rate_limiter()


# Dependencies run before FastAPI validates the request body, so each
# mutation is charged against its window even when the payload is rejected.

def rate_limited(action_kind: str):
    def dependency(actor: Actor = Depends(get_current_actor), limiter: RateLimiter = Depends(rate_limiter)) -> Actor:
        limiter.enforce(actor.id, action_kind)
        return actor

    return dependency


def booking_actor(actor: Actor = Depends(get_current_actor), limiter: RateLimiter = Depends(rate_limiter)) -> Actor:
    if can_administer(actor):
        raise Forbidden("Admin users cannot create bookings via this endpoint")
    limiter.enforce(actor.id, "booking")
    return actor


async def admin_action_kind(request: Request) -> str:
    """Rate class of an admin action, read from the raw body."""
    try:
        body = await request.json()
    except ValueError:
        body = None
    action = body.get("action") if isinstance(body, dict) else None
    return action if action in ADMIN_ACTIONS else "admin_action"


def admin_actor(
    actor: Actor = Depends(require_admin),
    action_kind: str = Depends(admin_action_kind),
    limiter: RateLimiter = Depends(rate_limiter),
) -> Actor:
    limiter.enforce(actor.id, action_kind)
    return actor


def dispatch_actor(actor: Actor = Depends(require_admin), limiter: RateLimiter = Depends(rate_limiter)) -> Actor:
    limiter.enforce(actor.id, "dispatch")
    return actor



@router.get("/", response_model=list[ShipmentRead])
def list_shipments(actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return ShipmentService(db).list(actor)


@router.post("/book", response_model=ShipmentEnvelope, status_code=201)
def book_shipment(
    payload: BookingRequest,
    response: Response,
    actor: Actor = Depends(booking_actor),
    db: Session = Depends(get_db),
):
    shipment, created = ShipmentService(db).book(actor, payload)
    if not created:
        response.status_code = 200
    return {"success": True, "shipment": shipment}


@router.post("/admin-action", response_model=ShipmentEnvelope)
def admin_action(
    payload: AdminActionRequest,
    actor: Actor = Depends(admin_actor),
    db: Session = Depends(get_db),
):
    result = ShipmentService(db).apply_admin_action(
        actor, str(payload.shipment_id), payload.action, payload.expected_version
    )
    return {"success": True, "shipment": result.shipment}


@router.post("/dispatch", response_model=ShipmentEnvelope)
def dispatch_shipment(
    payload: DispatchRequest,
    actor: Actor = Depends(dispatch_actor),
    db: Session = Depends(get_db),
):
    result = ShipmentService(db).dispatch_international(actor, str(payload.shipment_id), payload.expected_version)
    return {"success": True, "shipment": result.shipment}


@router.get("/{shipment_id}", response_model=ShipmentEnvelope)
def get_shipment(shipment_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return {"success": True, "shipment": ShipmentService(db).get(actor, shipment_id)}


@router.post("/{shipment_id}/confirm", response_model=ShipmentEnvelope)
def confirm_shipment(
    shipment_id: str,
    payload: ConfirmRequest,
    actor: Actor = Depends(rate_limited("confirm")),
    db: Session = Depends(get_db),
):
    result = ShipmentService(db).confirm_draft(actor, shipment_id, payload.expected_version)
    return {"success": True, "shipment": result.shipment}


@router.get("/{shipment_id}/timeline", response_model=TimelineEnvelope)
def get_timeline(shipment_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    entries = ShipmentService(db).timeline(actor, shipment_id)
    return {"success": True, "shipment_id": shipment_id, "entries": entries}


@router.get("/{shipment_id}/alerts", response_model=list[AlertRead])
def get_alerts(shipment_id: str, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return ShipmentService(db).alerts(actor, shipment_id)


def _load_snapshot(actor: Actor, shipment_id: str) -> Dict[str, Any]:
    with database.SessionLocal() as db:
        service = ShipmentService(db)
        shipment = service.get(actor, shipment_id)
        entries = service.timeline(actor, shipment_id)
        return {
            "type": "snapshot",
            "shipment": ShipmentRead.model_validate(shipment).model_dump(mode="json"),
            "timeline": [TimelineEntryRead.model_validate(e).model_dump(mode="json") for e in entries],
        }


def _ws_close_code(error: LifecycleError) -> int:
    return 4000 + error.http_status


@router.websocket("/{shipment_id}/timeline/stream")
async def stream_timeline(websocket: WebSocket, shipment_id: str, token: Optional[str] = None):
    """Snapshot on connect, then every committed entry and shipment update."""
    if token is None:
        scheme, _, value = (websocket.headers.get("authorization") or "").partition(" ")
        token = value.strip() if scheme.lower() == "bearer" else None

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    # subscribe before the snapshot so nothing committed in between is missed
    subscription = get_broker().subscribe(shipment_id, lambda m: loop.call_soon_threadsafe(queue.put_nowait, m))
    try:
        actor = actor_from_token(token)
        snapshot = await run_in_threadpool(_load_snapshot, actor, shipment_id)
    except LifecycleError as e:
        subscription.close()
        await websocket.close(code=_ws_close_code(e), reason=e.message)
        return

    await websocket.accept()
    await websocket.send_json(snapshot)

    async def forward():
        while True:
            await websocket.send_json(await queue.get())

    async def drain():
        while True:
            await websocket.receive_text()

    tasks: List[asyncio.Task] = [asyncio.create_task(forward()), asyncio.create_task(drain())]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.warning(f"Timeline stream for {shipment_id} ended: {error}")
    finally:
        for task in tasks:
            task.cancel()
        subscription.close()


@cron_router.post("/domestic-sync", dependencies=[Depends(require_cron)])
def domestic_sync():
    sync = run_carrier_sync()
    stuck = detect_stuck_shipments()
    return {"success": True, **sync.to_dict(), "stuckShipments": stuck.to_dict()}


@cron_router.post("/simulation-worker", dependencies=[Depends(require_cron)])
def simulation_worker():
    return {"success": True, **run_simulation().to_dict()}
