import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..config import Settings, get_settings
from ..db import get_session_factory
from ..errors import (
    ConfigurationError,
    InvalidRequest,
    MissingReference,
    NotFound,
    OrderSyncError,
    PaymentError,
    SignatureMismatch,
    UpstreamUnavailable,
)
from ..models import PaymentVariant
from ..schemas import (
    CallbackOut,
    CreatePaymentIn,
    CreatePaymentOut,
    IpnOut,
    PaymentRecordOut,
    PaymentStatusOut,
    SweepOut,
)
from ..services.payments import (
    create_payment_request,
    describe,
    handle_provider_callback,
    pending_asset_move,
    schedule_asset_move,
    sweep_transaction,
)
from ..services.store import PaymentStore
from ..utils import client_ip, require_service_api_key

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments/vnpay", tags=["payments"])


def _dump(model) -> Dict[str, Any]:
    return model.model_dump(by_alias=True, exclude_none=True, mode="json")


async def _callback_params(request: Request) -> Dict[str, Any]:
    """VNPay sends the result in the query string; some clients relay it as a JSON body."""
    params: Dict[str, Any] = dict(request.query_params)
    if request.method == "POST":
        body = await request.body()
        if body:
            try:
                payload = json.loads(body)
            except ValueError:
                payload = None
            if isinstance(payload, dict):
                params.update(payload)
    return params


@router.post("/create")
async def create_payment(
    request: Request,
    settings: Settings = Depends(get_settings),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """Create a signed VNPay URL. Always answers 200; failures carry an `error` field."""
    try:
        payload = CreatePaymentIn.model_validate(json.loads(await request.body() or b"{}"))
    except ValueError as exc:
        # ValidationError is a ValueError too
        detail = exc.errors(include_url=False, include_context=False, include_input=False) if isinstance(exc, ValidationError) else str(exc)
        return _dump(CreatePaymentOut(error="Invalid payment request", details={"validation": detail}))

    try:
        built = await create_payment_request(
            settings,
            session_factory,
            payload.order_id,
            amount=payload.amount,
            variant=PaymentVariant.QR if payload.use_qr else PaymentVariant.STANDARD,
            client_ip=client_ip(request),
            order_info=payload.order_info,
            locale=payload.locale,
            bank_code=payload.bank_code,
        )
    except ConfigurationError as exc:
        logger.error(f"VNPay is misconfigured: {exc.message} {exc.details}")
        return _dump(CreatePaymentOut(error=exc.message, details=exc.details))
    except InvalidRequest as exc:
        logger.info(f"Rejected payment request for order {payload.order_id}: {exc.message}")
        return _dump(CreatePaymentOut(error=exc.message, details=exc.details or None))
    except SQLAlchemyError:
        logger.exception(f"Payment store error while creating payment for order {payload.order_id}")
        return _dump(CreatePaymentOut(error="Payment store unavailable"))

    return _dump(CreatePaymentOut(payment_url=built.payment_url, txn_ref=built.txn_ref, qr_token=built.qr_token))


@router.api_route("/verify", methods=["GET", "POST"])
async def verify_payment(
    request: Request,
    background_tasks: BackgroundTasks,
    settings: Settings = Depends(get_settings),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """Return-page verification called by the storefront with VNPay's parameters."""
    params = await _callback_params(request)
    try:
        result = await handle_provider_callback(settings, session_factory, params)
    except MissingReference as exc:
        return JSONResponse(_dump(CallbackOut(is_success=False, message=exc.message)), status_code=400)
    except NotFound:
        return JSONResponse(_dump(CallbackOut(is_success=False, message="Transaction not found")), status_code=404)
    except SignatureMismatch as exc:
        return _dump(CallbackOut(
            is_success=False,
            message=exc.message,
            order_id=exc.details.get("order_id"),
            response_code=exc.details.get("response_code"),
        ))
    except UpstreamUnavailable as exc:
        return JSONResponse(_dump(CallbackOut(is_success=False, message=exc.message)), status_code=503)
    except PaymentError as exc:
        logger.error(f"Failed to verify payment: {exc.message} {exc.details}")
        return JSONResponse(
            _dump(CallbackOut(is_success=False, message=f"Failed to verify payment: {exc.message}")),
            status_code=500,
        )

    schedule_asset_move(background_tasks, settings, session_factory, result)
    return _dump(CallbackOut(
        is_success=result.is_success,
        message=describe(result),
        order_id=result.order_id,
        response_code=result.response_code,
        transaction_id=result.transaction_no,
    ))


@router.api_route("/ipn", methods=["GET", "POST"])
async def payment_ipn(
    request: Request,
    background_tasks: BackgroundTasks,
    settings: Settings = Depends(get_settings),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """
    Instant Payment Notification from VNPay (server to server).

    Always HTTP 200 in VNPay's {RspCode, Message} format; anything but 00/02
    makes VNPay retry later.
    """
    params = await _callback_params(request)
    logger.info(f"VNPay IPN received for {params.get('vnp_TxnRef')}")
    try:
        result = await handle_provider_callback(settings, session_factory, params)
    except MissingReference:
        return _dump(IpnOut(rsp_code="99", message="Input data required"))
    except SignatureMismatch:
        return _dump(IpnOut(rsp_code="97", message="Invalid signature"))
    except NotFound:
        return _dump(IpnOut(rsp_code="01", message="Order not found"))
    except Exception as exc:
        logger.exception(f"Error handling VNPay IPN callback: {exc}")
        return _dump(IpnOut(rsp_code="99", message="Unknown error"))

    if not result.applied:
        return _dump(IpnOut(rsp_code="02", message="Order already confirmed"))
    schedule_asset_move(background_tasks, settings, session_factory, result)
    if result.amount_mismatch:
        return _dump(IpnOut(rsp_code="04", message="Invalid amount"))
    return _dump(IpnOut(rsp_code="00", message="Confirmed"))


@router.get("/return")
async def payment_return(
    request: Request,
    background_tasks: BackgroundTasks,
    settings: Settings = Depends(get_settings),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """Browser redirect from VNPay; sends the customer to the order confirmation page."""
    base = settings.frontend_base_url.rstrip("/")
    params = await _callback_params(request)
    try:
        result = await handle_provider_callback(settings, session_factory, params)
    except SignatureMismatch as exc:
        order_id = exc.details.get("order_id")
        if not order_id:
            return RedirectResponse(f"{base}/payment/error", status_code=302)
        return RedirectResponse(f"{base}/order-confirmation/{order_id}?status=failed", status_code=302)
    except PaymentError as exc:
        logger.error(f"Error handling VNPay payment return: {exc.message}")
        return RedirectResponse(f"{base}/payment/error", status_code=302)

    schedule_asset_move(background_tasks, settings, session_factory, result)
    status = "success" if result.is_success else "failed"
    return RedirectResponse(f"{base}/order-confirmation/{result.order_id}?status={status}", status_code=302)


@router.get(
    "/status/{order_id}",
    response_model=PaymentStatusOut,
    dependencies=[Depends(require_service_api_key)],
)
async def payment_status(order_id: str, session_factory: sessionmaker = Depends(get_session_factory)):
    """Local payment records for an order, newest first."""
    async with session_factory() as session:
        records = await PaymentStore(session).list_payment_records_for_order(order_id)
    return PaymentStatusOut(
        order_id=order_id,
        payments=[PaymentRecordOut.model_validate(r.model_dump()) for r in records],
    )


@router.post("/reconcile/{txn_ref}", dependencies=[Depends(require_service_api_key)])
async def reconcile_transaction(
    txn_ref: str,
    request: Request,
    background_tasks: BackgroundTasks,
    settings: Settings = Depends(get_settings),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """Operator sweep: settle a PENDING record from VNPay's querydr, or redo a missed asset move."""
    try:
        result = await sweep_transaction(settings, session_factory, txn_ref, client_ip=client_ip(request))
    except NotFound:
        return JSONResponse({"detail": "Transaction not found"}, status_code=404)
    except (SignatureMismatch, UpstreamUnavailable, OrderSyncError) as exc:
        return JSONResponse({"detail": exc.message}, status_code=502)
    except ConfigurationError as exc:
        logger.error(f"VNPay is misconfigured: {exc.message} {exc.details}")
        return JSONResponse({"detail": exc.message}, status_code=500)

    scheduled = schedule_asset_move(background_tasks, settings, session_factory, result)
    if not scheduled and not result.applied:
        retry = await pending_asset_move(session_factory, txn_ref)
        if retry is not None:
            scheduled = schedule_asset_move(background_tasks, settings, session_factory, retry)

    return _dump(SweepOut(
        txn_ref=result.txn_ref,
        order_id=result.order_id,
        status=result.status.value,
        applied=result.applied,
        assets_scheduled=scheduled,
    ))
