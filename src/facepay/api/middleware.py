"""Request guards and app-state accessors shared by the routes."""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from facepay.chain.transfer import TransferExecutor
    from facepay.config import Settings
    from facepay.ml.inference import InferencePool
    from facepay.payments import PaymentService
    from facepay.storage import EmbeddingStore

_bearer_scheme = HTTPBearer(auto_error=False)


def get_app_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def get_store(request: Request) -> EmbeddingStore:
    store: EmbeddingStore = request.app.state.store
    return store


def get_payment_service(request: Request) -> PaymentService:
    service: PaymentService = request.app.state.payments
    return service


def get_transfer_executor(request: Request) -> TransferExecutor:
    executor: TransferExecutor = request.app.state.transfer_executor
    return executor


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Require ``Authorization: Bearer <FACEPAY_API_KEY>`` when a key is configured."""
    expected = get_app_settings(request).api_key
    if expected is None:
        return

    supplied = credentials.credentials if credentials is not None else ""
    if not secrets.compare_digest(supplied.encode(), expected.get_secret_value().encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
