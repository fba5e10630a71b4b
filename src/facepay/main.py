"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from facepay.api.routes import router
from facepay.chain.rpc import JsonRpcClient
from facepay.chain.transfer import TransferExecutor
from facepay.config import Settings, get_settings
from facepay.errors import (
    ExtractionError,
    ImageDecodeFailed,
    LowConfidenceDetection,
    MultipleFacesDetected,
    NoFaceDetected,
    RpcUnavailable,
    StorageIOError,
    TransactionError,
)
from facepay.ml.backends import create_backend
from facepay.ml.extractor import EmbeddingExtractor
from facepay.ml.inference import InferencePool
from facepay.ml.model_manager import OnnxModelManager, evict_idle_periodically
from facepay.ml.preprocessing import PillowPreprocessor
from facepay.payments import PaymentService, SettingsKeyRing
from facepay.storage import EmbeddingStore, JsonFileBackend

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_EXTRACTION_MESSAGES: dict[type[ExtractionError], str] = {
    ImageDecodeFailed: "Image could not be decoded",
    NoFaceDetected: "No face detected",
    LowConfidenceDetection: "Face not clear enough, please retake the photo",
    MultipleFacesDetected: "Multiple faces detected, only one person may be in frame",
}


def configure_logging(settings: Settings) -> None:
    """Root logging plus an optional file sink for the ``facepay.audit`` trail."""
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)

    if settings.audit_log_path is None:
        return
    audit_path = Path(settings.audit_log_path).resolve()
    audit = logging.getLogger("facepay.audit")
    if any(getattr(h, "baseFilename", None) == str(audit_path) for h in audit.handlers):
        return
    audit_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(audit_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    audit.addHandler(handler)
    audit.setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings
    configure_logging(settings)

    logger.info(
        "Starting FacePay (device=%s, backend=%s, metric=%s, threshold=%.2f, chain_id=%d)",
        settings.device,
        settings.embedding_backend,
        settings.similarity_metric,
        settings.match_threshold,
        settings.chain_id,
    )

    model_manager = OnnxModelManager(settings)
    preprocessor = PillowPreprocessor(settings.max_image_pixels, settings.detection_input_size)
    extractor = EmbeddingExtractor(create_backend(settings, model_manager, preprocessor), preprocessor)
    store = EmbeddingStore(JsonFileBackend(settings.store_path))
    inference_pool = InferencePool(settings)
    rpc = JsonRpcClient.from_settings(settings)
    executor = TransferExecutor(settings, rpc)

    app.state.model_manager = model_manager
    app.state.extractor = extractor
    app.state.store = store
    app.state.inference_pool = inference_pool
    app.state.transfer_executor = executor
    app.state.payments = PaymentService(
        settings,
        extractor,
        store,
        executor,
        SettingsKeyRing(settings.wallet_keys),
        inference_pool,
    )

    if settings.merchant_address is None:
        logger.warning("FACEPAY_MERCHANT_ADDRESS not set; payments will fail")

    eviction: asyncio.Task[None] | None = None
    if settings.model_ttl > 0:
        eviction = asyncio.create_task(evict_idle_periodically(model_manager, max(settings.model_ttl / 2, 1.0)))

    logger.info("FacePay ready (%s, %d registered accounts)", extractor.description, len(store))
    yield

    logger.info("Shutting down FacePay")
    if eviction is not None:
        eviction.cancel()
        with suppress(asyncio.CancelledError):
            await eviction
    await app.state.payments.aclose()
    inference_pool.shutdown()
    await executor.aclose()
    await rpc.aclose()
    model_manager.shutdown()
    logger.info("FacePay shutdown complete")


async def _extraction_error(request: Request, exc: Exception) -> JSONResponse:
    message = _EXTRACTION_MESSAGES.get(type(exc), "No usable face found")
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, content={"detail": message})


async def _storage_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Storage failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": "Storage unavailable"})


async def _busy(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": "Server busy, retry later"})


async def _transaction_error(request: Request, exc: Exception) -> JSONResponse:
    code = status.HTTP_503_SERVICE_UNAVAILABLE if isinstance(exc, RpcUnavailable) else status.HTTP_502_BAD_GATEWAY
    return JSONResponse(status_code=code, content={"detail": str(exc)})


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="FacePay",
        description="Face-authorised ERC20 payments",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(ExtractionError, _extraction_error)
    application.add_exception_handler(StorageIOError, _storage_error)
    application.add_exception_handler(TimeoutError, _busy)
    application.add_exception_handler(TransactionError, _transaction_error)

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    settings = get_settings()
    uvicorn.run("facepay.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
