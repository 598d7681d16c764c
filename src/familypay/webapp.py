"""FastAPI frontend exposing payment attestation actions as JSON.

``create_app`` wires a service and sweeper into a fresh application.  The
module level ``app`` used by ``uvicorn familypay.webapp:app`` is built on
first access against the SQLite ledger named by ``FAMILYPAY_SQLITE``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .exceptions import (
    DuplicatePaymentError,
    FamilyPayError,
    InvalidStateTransitionError,
    PaymentNotFoundError,
    PaymentValidationError,
    StoreUnavailableError,
    TransactionConflictError,
)
from .service import ActionOutcome, PaymentAttestationService
from .sweeper import SweepReport, TimeoutSweeper
from .validation import parse_amount_to_cents


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------
class CreatePaymentBody(BaseModel):
    parent_id: str
    student_id: str
    provider: str
    amount_cents: Optional[int] = None
    amount: Optional[str] = None
    note: str = ""


class ActorBody(BaseModel):
    actor: str


class ConfirmReceivedBody(ActorBody):
    received_cents: Optional[int] = None


class ReasonBody(ActorBody):
    reason: Optional[str] = None


class ResolveBody(ActorBody):
    outcome: str


class FailBody(ActorBody):
    reason: str = "System failure"


def _error(status_code: int, exc: Exception, **extra: Any) -> JSONResponse:
    payload: Dict[str, Any] = {"error": type(exc).__name__, "detail": str(exc)}
    payload.update(extra)
    return JSONResponse(payload, status_code=status_code)


def _sweep_payload(report: SweepReport) -> Dict[str, Any]:
    return {
        "started_at": report.started_at.isoformat(),
        "cleaned": report.cleaned,
        "errors": report.errors,
        "details": [
            {"payment_id": item.payment_id, "provider": item.provider, "age": item.age, "error": item.error}
            for item in report.details
        ],
    }


def create_app(
    service: Optional[PaymentAttestationService] = None,
    sweeper: Optional[TimeoutSweeper] = None,
) -> FastAPI:
    if service is None:
        from .persistence import SqlLedgerStore

        service = PaymentAttestationService(SqlLedgerStore())
    if sweeper is None:
        sweeper = TimeoutSweeper(
            service.store,
            manager=service.manager,
            logger=service.logger,
            notifications=service.notifications,
        )

    app = FastAPI(title="Family Pay")
    app.state.service = service
    app.state.sweeper = sweeper

    @app.exception_handler(FamilyPayError)
    async def _familypay_error(_request: Request, exc: FamilyPayError) -> JSONResponse:
        if isinstance(exc, PaymentNotFoundError):
            return _error(404, exc)
        if isinstance(exc, InvalidStateTransitionError):
            status = getattr(exc.status, "value", exc.status)
            return _error(409, exc, status=status, action=exc.action)
        if isinstance(exc, PaymentValidationError):
            return _error(422, exc, errors=list(exc.errors))
        if isinstance(exc, DuplicatePaymentError):
            return _error(409, exc)
        if isinstance(exc, TransactionConflictError):
            return _error(409, exc, retryable=True)
        if isinstance(exc, StoreUnavailableError):
            return _error(503, exc, retryable=True)
        return _error(400, exc)

    @app.exception_handler(ValueError)
    async def _value_error(_request: Request, exc: ValueError) -> JSONResponse:
        return _error(422, exc)

    def outcome_payload(outcome: ActionOutcome) -> Dict[str, Any]:
        return {
            "applied": outcome.applied,
            "previous_status": outcome.previous_status.value,
            "payment": service.describe_record(outcome.record),
        }

    @app.post("/payments", status_code=201)
    def create_payment(body: CreatePaymentBody) -> Dict[str, Any]:
        amount_cents = body.amount_cents
        if amount_cents is None:
            if body.amount is None:
                raise PaymentValidationError(["Payment amount is required"])
            amount_cents = parse_amount_to_cents(body.amount)
        record = service.initiate_payment(
            parent_id=body.parent_id,
            student_id=body.student_id,
            amount_cents=amount_cents,
            provider=body.provider,
            note=body.note,
        )
        return service.describe_record(record)

    @app.get("/payments/{payment_id}")
    def get_payment(payment_id: str) -> Dict[str, Any]:
        return service.describe(payment_id)

    @app.post("/payments/{payment_id}/confirm-sent")
    def confirm_sent(payment_id: str, body: ActorBody) -> Dict[str, Any]:
        return outcome_payload(service.confirm_sent(payment_id, actor=body.actor))

    @app.post("/payments/{payment_id}/confirm-received")
    def confirm_received(payment_id: str, body: ConfirmReceivedBody) -> Dict[str, Any]:
        outcome = service.confirm_received(payment_id, actor=body.actor, received_cents=body.received_cents)
        return outcome_payload(outcome)

    @app.post("/payments/{payment_id}/dispute")
    def dispute(payment_id: str, body: ReasonBody) -> Dict[str, Any]:
        outcome = service.dispute(payment_id, actor=body.actor, reason=body.reason or "never_received")
        return outcome_payload(outcome)

    @app.post("/payments/{payment_id}/cancel")
    def cancel(payment_id: str, body: ReasonBody) -> Dict[str, Any]:
        outcome = service.cancel(
            payment_id,
            actor=body.actor,
            reason=body.reason or "Parent cancelled before sending",
        )
        return outcome_payload(outcome)

    @app.post("/payments/{payment_id}/resolve")
    def resolve(payment_id: str, body: ResolveBody) -> Dict[str, Any]:
        return outcome_payload(service.resolve_dispute(payment_id, actor=body.actor, outcome=body.outcome))

    @app.post("/payments/{payment_id}/fail")
    def fail(payment_id: str, body: FailBody) -> Dict[str, Any]:
        return outcome_payload(service.mark_failed(payment_id, actor=body.actor, reason=body.reason))

    @app.post("/payments/{payment_id}/retry")
    def retry(payment_id: str, body: ActorBody) -> Dict[str, Any]:
        return outcome_payload(service.retry(payment_id, actor=body.actor))

    @app.post("/admin/sweep")
    def run_sweep() -> Dict[str, Any]:
        return _sweep_payload(sweeper.sweep())

    @app.get("/admin/sweep")
    def sweep_stats() -> Dict[str, Any]:
        status = sweeper.status()
        return {
            "last_run": status["last_run"].isoformat() if status["last_run"] else None,
            "next_run": status["next_run"].isoformat() if status["next_run"] else None,
            "stats": sweeper.stats(),
        }

    return app


_APP: Optional[FastAPI] = None


def __getattr__(name: str) -> Any:
    global _APP
    if name == "app":
        if _APP is None:
            _APP = create_app()
        return _APP
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = ["create_app"]
