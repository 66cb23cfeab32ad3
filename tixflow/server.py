from __future__ import annotations
import asyncio
from pathlib import Path
from typing import AsyncIterator, Literal, Optional

import httpx
from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, ORJSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .config import (
    ADMIN_PASSWORD, ADMIN_USERNAME, DATABASE_URL, MOCK_WEBHOOK_URL,
    MOCKPAY_ENABLED, NOTIFIER_BACKEND, SESSION_SECRET, SIGNATURE_HEADER,
)
from .errors import DomainError, NotFound, PaymentStateError
from .errors import domain_error_handler
from .gateway import WebhookGateway
from .helpers import ct_equal, local_path, to_iso
from .infra.log import logger
from .infra.sql import Database, make_database
from .infra.timings import aggregates, timeit
from .initiator import PaymentInitiator
from .model.orm import Base
from .model.payments import PaymentStatus
from .model.stores import Stores
from .notifier import new_notifier
from .paystack import Paystack, charge_event
from .schemas import InitiateRequest

app = FastAPI(
    title="tixflow",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)
app.add_exception_handler(DomainError, domain_error_handler)
templates = Jinja2Templates(directory=Path(__file__).parent / "templates")


async def get_stores(request: Request) -> AsyncIterator[Stores]:
    db: Database = request.app.state.db
    async with db.sessions() as session:
        yield Stores(session, db.gated)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _db_init():
    # tests point app.state.database_url at their own file
    db = make_database(getattr(app.state, "database_url", None)
                       or DATABASE_URL)
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    app.state.db = db


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=512, max_keepalive_connections=512
        ),
    )


@app.on_event("startup")
async def _notifier_start():
    if getattr(app.state, "notifier", None) is None:
        app.state.notifier = new_notifier(NOTIFIER_BACKEND, app.state.http)
    logger.info(
        f"tixflow is starting up (notifier: "
        f"{type(app.state.notifier).__name__}, "
        f"mockpay: {'on' if MOCKPAY_ENABLED else 'off'})"
    )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None
    app.state.notifier = None


@app.on_event("shutdown")
async def _db_stop():
    db = getattr(app.state, "db", None)
    if db is not None:
        await db.dispose()
        app.state.db = None


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        # preserve where we wanted to go
        dest = request.url.path
        raise HTTPException(status_code=307, detail="redirect to login",
                            headers={"Location": f"/admin/login?next={dest}"})


def caller_id(request: Request) -> str:
    # identity is established upstream; we only read the result
    return (request.headers.get("x-user-id") or "").strip()


# ----------------------------
# API: Initiation
# ----------------------------
@app.post("/payments/initiate")
async def initiate_payment(
    body: InitiateRequest,
    request: Request,
    stores: Stores = Depends(get_stores),
):
    async with timeit("api.initiate"):
        return await PaymentInitiator(stores).initiate(
            caller_id(request), body
        )


# ----------------------------
# Webhook endpoint
# ----------------------------
async def _process_webhook(payload: bytes, signature: Optional[str]):
    db: Database = app.state.db
    async with db.sessions() as session:
        gateway = WebhookGateway(
            Stores(session, db.gated), app.state.notifier
        )
        return await gateway.handle(payload, signature)


def _log_detached_outcome(task: asyncio.Task) -> None:
    if task.cancelled():
        logger.warning("detached webhook processing was cancelled")
        return
    exc = task.exception()
    if exc is None:
        logger.info(f"detached webhook processing finished: {task.result()}")
    elif isinstance(exc, DomainError):
        logger.warning(
            f"detached webhook processing rejected "
            f"({exc.status_code}): {exc.message}"
        )
    else:
        logger.opt(exception=exc).error("detached webhook processing failed")


async def run_to_completion(coro):
    """
    Await `coro` so that cancelling the caller does not cancel it. When the
    caller goes away first, the outcome is logged once the work finishes.
    """
    task = asyncio.ensure_future(coro)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        task.add_done_callback(_log_detached_outcome)
        raise


@app.post("/payments/webhook")
async def payments_webhook(request: Request):
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    # the processor may hang up early; fulfillment must still finish
    return await run_to_completion(_process_webhook(payload, signature))


# ----------------------------
# API: Payment status (polled after the checkout redirect)
# ----------------------------
@app.get("/api/payments/{reference}")
async def get_payment(reference: str, stores: Stores = Depends(get_stores)):
    async with timeit("db.get_payment"):
        async with stores.transaction() as s:
            rec = await s.payments.get_by_reference(reference)
            tickets = await s.tickets.list_by_payment(reference)
    if rec is None:
        raise NotFound(f"payment {reference} not found")
    return {
        "reference": rec.reference,
        "status": rec.status.value,
        "event_id": rec.event_id,
        "amount": str(rec.amount),
        "amount_minor": rec.amount_minor,
        "currency": rec.currency,
        "failure_reason": rec.failure_reason,
        "created_at": to_iso(rec.created_at),
        "processed_at": to_iso(rec.processed_at),
        "refunded_at": to_iso(rec.refunded_at),
        "line_items": [
            {
                "line_no": li.line_no,
                "ticket_type_id": li.ticket_type_id,
                "ticket_type_name": li.ticket_type_name,
                "quantity": li.quantity,
                "unit_price": str(li.unit_price),
            }
            for li in rec.line_items
        ],
        "tickets": [
            {
                "id": t.id,
                "ticket_type_id": t.ticket_type_id,
                "attendee_name": t.attendee_name,
                "qr_payload": t.qr_payload or "",
            }
            for t in tickets
        ],
    }


@app.get("/api/ticket-types/{ticket_type_id}/inventory")
async def get_inventory(
    ticket_type_id: str, stores: Stores = Depends(get_stores),
):
    async with stores.transaction() as s:
        return await s.events.availability(ticket_type_id)


# ----------------------------
# MockPay: plays the processor in development
# ----------------------------
@app.post("/mockpay/{reference}/emit")
async def mockpay_emit(
    reference: str,
    kind: Literal["success", "failed"] = "success",
    stores: Stores = Depends(get_stores),
):
    if not MOCKPAY_ENABLED:
        raise NotFound("mockpay is disabled")
    async with stores.transaction() as s:
        rec = await s.payments.get_by_reference(reference)
    if rec is None:
        raise NotFound(f"payment {reference} not found")

    payload = charge_event(
        rec, kind, message=None if kind == "success" else "Declined"
    )
    client_http: httpx.AsyncClient = app.state.http
    try:
        resp = await client_http.post(
            MOCK_WEBHOOK_URL,
            content=payload,
            headers={
                SIGNATURE_HEADER: Paystack().sign(payload),
                "content-type": "application/json",
            },
        )
    except httpx.HTTPError as e:
        # the caller can simply emit again
        logger.bind(reference=reference).warning(
            f"mock webhook delivery failed: {e}"
        )
        return {"ok": False, "delivered": False, "error": str(e)}
    return {"ok": True, "delivered": True, "status_code": resp.status_code}


# ----------------------------
# Admin
# ----------------------------
@app.get("/admin/login", response_class=HTMLResponse)
async def admin_login_get(request: Request, next: str | None = "/admin"):
    return templates.TemplateResponse(
        request, "login.html",
        {"next": local_path(next), "error": None},
    )


@app.post("/admin/login", response_class=HTMLResponse)
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form("/admin"),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        return RedirectResponse(
            url=local_path(next),
            status_code=HTTP_303_SEE_OTHER
        )
    # auth failed
    return templates.TemplateResponse(
        request, "login.html",
        {"next": local_path(next), "error": "Invalid credentials."},
        status_code=401,
    )


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/admin/login", status_code=HTTP_303_SEE_OTHER)


@app.get("/api/admin/anomalies", dependencies=[Depends(require_admin)])
async def api_admin_anomalies(
    limit: int = 200, stores: Stores = Depends(get_stores),
):
    async with stores.transaction() as s:
        rows = await s.tickets.list_anomalies(limit)
    items = [{**r, "created_at": to_iso(r["created_at"])} for r in rows]
    return {"items": items, "limit": limit}


@app.post(
    "/api/admin/payments/{reference}/refund",
    dependencies=[Depends(require_admin)],
)
async def api_admin_refund(
    reference: str, stores: Stores = Depends(get_stores),
):
    # status only; settling the money happens at the processor
    async with stores.transaction() as s:
        rec = await s.payments.transition(
            reference, PaymentStatus.COMPLETED, PaymentStatus.REFUNDED
        )
        current = rec or await s.payments.get_by_reference(
            reference, with_lines=False
        )
    if current is None:
        raise NotFound(f"payment {reference} not found")
    if rec is None:
        raise PaymentStateError(
            f"payment {reference} is {current.status.value}, "
            f"only completed payments can be refunded"
        )
    logger.bind(reference=reference).info("payment marked refunded")
    return {
        "reference": reference,
        "status": rec.status.value,
        "refunded_at": to_iso(rec.refunded_at),
    }


@app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
async def api_admin_timings():
    return {"items": aggregates()}
