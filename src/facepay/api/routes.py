"""API route definitions."""

from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Form, HTTPException, Request, Response, UploadFile, status
from fastapi.responses import StreamingResponse

from facepay.api.middleware import (
    get_app_settings,
    get_inference_pool,
    get_payment_service,
    get_store,
    get_transfer_executor,
    verify_api_key,
)
from facepay.api.schemas import (
    AccountResponse,
    AccountsResponse,
    BalanceResponse,
    ErrorResponse,
    HealthResponse,
    MatchResponse,
    ModelInfo,
    ModelsResponse,
)
from facepay.ml.model_manager import MODEL_REGISTRY
from facepay.payments import normalize_account_id

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from facepay.chain.transfer import TransferEvent
    from facepay.config import Settings
    from facepay.domain import Registration

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_EXTRACTION_ERRORS = {
    status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
    status.HTTP_422_UNPROCESSABLE_CONTENT: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


async def _read_upload(file: UploadFile, settings: Settings) -> bytes:
    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )
    return data


def _parse_amount(raw: str) -> Decimal:
    try:
        amount = Decimal(raw.strip())
    except InvalidOperation:
        amount = Decimal(0)
    if not amount.is_finite() or amount <= 0:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail="Amount must be a positive number")
    return amount


def _parse_address(raw: str) -> str:
    try:
        return normalize_account_id(raw)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from None


def _account(registration: Registration) -> AccountResponse:
    return AccountResponse(
        account_id=registration.account_id,
        display_name=registration.display_name,
        provenance=registration.provenance.value,
        registered_at=registration.registered_at,
    )


async def _sse(events: AsyncIterator[TransferEvent]) -> AsyncIterator[str]:
    async for event in events:
        name = "result" if event.terminal else "log"
        yield f"event: {name}\ndata: {json.dumps(event.to_dict())}\n\n"


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@router.post(
    "/accounts",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
    responses=_EXTRACTION_ERRORS,
    summary="Register a face for a wallet address",
)
async def register_account(
    request: Request,
    account_id: Annotated[str, Form()],
    files: list[UploadFile],
    display_name: Annotated[str, Form()] = "",
) -> AccountResponse:
    """Register (or replace) the face of ``account_id`` from one or more images."""
    settings = get_app_settings(request)
    address = _parse_address(account_id)
    if len(files) > settings.registration_samples:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail=f"At most {settings.registration_samples} images are accepted",
        )
    images = [await _read_upload(f, settings) for f in files]
    registration = await get_payment_service(request).register(address, display_name, images)
    return _account(registration)


@router.get("/accounts", response_model=AccountsResponse, summary="List registered accounts")
async def list_accounts(request: Request) -> AccountsResponse:
    store = get_store(request)
    stats = store.stats()
    return AccountsResponse(
        accounts=[_account(r) for r in store.list()],
        count=stats.count,
        storage_bytes=stats.size_bytes,
    )


@router.get(
    "/accounts/{account_id}",
    response_model=AccountResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Get a registered account",
)
async def get_account(account_id: str, request: Request) -> AccountResponse:
    registration = get_store(request).get(_parse_address(account_id))
    if registration is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not registered")
    return _account(registration)


@router.delete(
    "/accounts/{account_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Remove a registered account",
)
def delete_account(account_id: str, request: Request) -> Response:
    if not get_store(request).remove(_parse_address(account_id)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not registered")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/accounts", status_code=status.HTTP_204_NO_CONTENT, summary="Remove every registered account")
def clear_accounts(request: Request) -> Response:
    get_store(request).clear()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Matching and payments
# ---------------------------------------------------------------------------


@router.post("/match", response_model=MatchResponse, responses=_EXTRACTION_ERRORS, summary="Identify a face")
async def match_face(file: UploadFile, request: Request) -> MatchResponse:
    image = await _read_upload(file, get_app_settings(request))
    result = await get_payment_service(request).match(image)
    if result is None:
        return MatchResponse(matched=False)
    return MatchResponse(matched=True, account_id=result.account_id, display_name=result.display_name)


@router.post(
    "/payments",
    response_class=StreamingResponse,
    responses={status.HTTP_200_OK: {"content": {"text/event-stream": {}}}},
    summary="Pay by face",
)
async def pay_by_face(
    file: UploadFile,
    request: Request,
    amount: Annotated[str, Form()],
) -> StreamingResponse:
    """Stream the payment as server-sent events: ``log`` per stage, then one ``result``."""
    value = _parse_amount(amount)
    image = await _read_upload(file, get_app_settings(request))
    return StreamingResponse(
        _sse(get_payment_service(request).charge(image, value)),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@router.post(
    "/accounts/{account_id}/payments",
    response_class=StreamingResponse,
    responses={
        status.HTTP_200_OK: {"content": {"text/event-stream": {}}},
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
    },
    summary="Pay from a registered account",
)
async def pay_from_account(
    account_id: str,
    request: Request,
    amount: Annotated[str, Form()],
) -> StreamingResponse:
    """Stream a payment from ``account_id`` to the merchant, framed like ``/payments``."""
    value = _parse_amount(amount)
    address = _parse_address(account_id)
    if get_store(request).get(address) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not registered")
    return StreamingResponse(
        _sse(get_payment_service(request).pay(address, value)),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@router.get(
    "/balance/{address}",
    response_model=BalanceResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
    summary="Token balance of a wallet",
)
async def token_balance(address: str, request: Request) -> BalanceResponse:
    settings = get_app_settings(request)
    executor = get_transfer_executor(request)
    owner = _parse_address(address)
    return BalanceResponse(
        address=owner,
        token=settings.token_address,
        symbol=settings.token_symbol,
        balance=await executor.balance(owner),
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = get_app_settings(request)
    pool = get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        embedding_backend=request.app.state.extractor.description,
        models_loaded=request.app.state.model_manager.loaded_models(),
        registered_accounts=len(get_store(request)),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get("/models", response_model=ModelsResponse, summary="List available models")
async def list_models(request: Request) -> ModelsResponse:
    """Return available models and their status based on current configuration."""
    settings = get_app_settings(request)
    active_models = {settings.face_detection_model, settings.face_recognition_model}

    models: list[ModelInfo] = []
    for spec in MODEL_REGISTRY.values():
        if spec.name in active_models:
            model_status = "active"
        elif spec.insightface and not settings.accept_insightface_license:
            model_status = "requires_license"
        else:
            model_status = "available"
        models.append(ModelInfo(name=spec.name, task=spec.task.value, status=model_status, license=spec.license))

    return ModelsResponse(models=models)
