"""Tests for the FacePay HTTP API."""

from __future__ import annotations

import io
import json
import os
from decimal import Decimal
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, MagicMock, patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

import httpx
import pytest
from fastapi import FastAPI, status
from PIL import Image

from facepay.chain.transfer import Stage, TransferEvent
from facepay.config import get_settings
from facepay.errors import StorageIOError
from facepay.main import create_app
from facepay.ml.backends import HashFallbackBackend
from facepay.ml.extractor import EmbeddingExtractor
from facepay.ml.inference import InferencePool
from facepay.ml.model_manager import OnnxModelManager
from facepay.ml.preprocessing import PillowPreprocessor
from facepay.payments import PaymentService, SettingsKeyRing
from facepay.storage import EmbeddingStore, JsonFileBackend

ALICE = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
ALICE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
TX_HASH = "0x" + "12" * 32


def _png(color: tuple[int, int, int]) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (96, 96), color).save(buffer, format="PNG")
    return buffer.getvalue()


async def _transfer(sender: str, amount: Decimal, private_key: str) -> AsyncIterator[TransferEvent]:
    yield TransferEvent(Stage.IDLE, f"Preparing transfer of {amount}")
    yield TransferEvent(Stage.SUBMITTED, "sent", tx_hash=TX_HASH)
    yield TransferEvent(Stage.CONFIRMED, "done", tx_hash=TX_HASH, success=True)


def _init_app_state(app: FastAPI, tmp_path: Path, **env_overrides: str) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    env = {
        "FACEPAY_STORE_PATH": str(tmp_path / "embeddings.json"),
        "FACEPAY_MODELS_DIR": str(tmp_path / "models"),
        "FACEPAY_MATCH_THRESHOLD": "0.99",
        **env_overrides,
    }
    with patch.dict(os.environ, env):
        settings = get_settings()

    preprocessor = PillowPreprocessor(settings.max_image_pixels)
    extractor = EmbeddingExtractor(HashFallbackBackend(), preprocessor)
    store = EmbeddingStore(JsonFileBackend(settings.store_path))
    pool = InferencePool(settings)
    executor = MagicMock()
    executor.execute = MagicMock(side_effect=_transfer)
    executor.balance = AsyncMock(return_value=Decimal("25.5"))

    app.state.settings = settings
    app.state.inference_pool = pool
    app.state.model_manager = OnnxModelManager(settings)
    app.state.extractor = extractor
    app.state.store = store
    app.state.transfer_executor = executor
    app.state.payments = PaymentService(
        settings, extractor, store, executor, SettingsKeyRing(settings.wallet_keys), pool
    )


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


@pytest.fixture()
def app(tmp_path: Path) -> FastAPI:
    """Create a fresh app instance with a wallet key for ALICE."""
    application = create_app()
    _init_app_state(application, tmp_path, FACEPAY_WALLET_KEYS=json.dumps({ALICE: ALICE_KEY}))
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


async def _register(client: httpx.AsyncClient, color: tuple[int, int, int] = (5, 5, 5)) -> httpx.Response:
    return await client.post(
        "/api/v1/accounts",
        data={"account_id": ALICE.lower(), "display_name": "Alice"},
        files=[("files", ("a.png", _png(color), "image/png")), ("files", ("b.png", _png(color), "image/png"))],
    )


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["gpu"] is False
        assert data["embedding_backend"].startswith("hash fallback")
        assert data["registered_accounts"] == 0
        assert isinstance(data["queue_depth"], int)

    async def test_health_gpu_true_when_cuda(self, tmp_path: Path) -> None:
        cuda_app = create_app()
        _init_app_state(cuda_app, tmp_path, FACEPAY_DEVICE="cuda")
        async for ac in _make_client(cuda_app):
            response = await ac.get("/api/v1/health")
            assert response.json()["gpu"] is True


class TestModelsEndpoint:
    async def test_default_models_are_active(self, client: httpx.AsyncClient) -> None:
        models = (await client.get("/api/v1/models")).json()["models"]
        active = {m["name"] for m in models if m["status"] == "active"}
        assert active == {"retinaface_resnet34", "auraface_v1"}

    async def test_arcface_requires_license(self, client: httpx.AsyncClient) -> None:
        models = (await client.get("/api/v1/models")).json()["models"]
        w600k = next(m for m in models if m["name"] == "w600k_r50")
        assert w600k["status"] == "requires_license"

    async def test_arcface_available_when_accepted(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, FACEPAY_ACCEPT_INSIGHTFACE_LICENSE="true")
        async for ac in _make_client(app):
            models = (await ac.get("/api/v1/models")).json()["models"]
            assert next(m for m in models if m["name"] == "w600k_r50")["status"] == "available"


class TestAccounts:
    async def test_register_returns_summary(self, client: httpx.AsyncClient) -> None:
        response = await _register(client)

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["account_id"] == ALICE
        assert data["display_name"] == "Alice"
        assert data["provenance"] == "hash_fallback"
        assert "embedding" not in data

    async def test_list_and_get(self, client: httpx.AsyncClient) -> None:
        await _register(client)

        listing = (await client.get("/api/v1/accounts")).json()
        assert listing["count"] == 1
        assert listing["storage_bytes"] > 0
        assert listing["accounts"][0]["account_id"] == ALICE

        response = await client.get(f"/api/v1/accounts/{ALICE.lower()}")
        assert response.status_code == status.HTTP_200_OK

    async def test_get_unknown_is_404(self, client: httpx.AsyncClient) -> None:
        response = await client.get(f"/api/v1/accounts/{ALICE}")
        assert response.status_code == status.HTTP_404_NOT_FOUND

    async def test_invalid_address_is_422(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/accounts",
            data={"account_id": "bob", "display_name": "Bob"},
            files=[("files", ("a.png", _png((5, 5, 5)), "image/png"))],
        )
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT

    async def test_too_many_images(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/accounts",
            data={"account_id": ALICE},
            files=[("files", (f"{i}.png", _png((i, i, i)), "image/png")) for i in range(4)],
        )
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT

    async def test_undecodable_images(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/accounts",
            data={"account_id": ALICE},
            files=[("files", ("a.jpg", b"not an image", "image/jpeg"))],
        )
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT
        assert response.json()["detail"] == "No usable face found"

    async def test_delete(self, client: httpx.AsyncClient) -> None:
        await _register(client)

        assert (await client.delete(f"/api/v1/accounts/{ALICE}")).status_code == status.HTTP_204_NO_CONTENT
        assert (await client.delete(f"/api/v1/accounts/{ALICE}")).status_code == status.HTTP_404_NOT_FOUND

    async def test_clear(self, client: httpx.AsyncClient) -> None:
        await _register(client)

        assert (await client.delete("/api/v1/accounts")).status_code == status.HTTP_204_NO_CONTENT
        assert (await client.get("/api/v1/accounts")).json()["count"] == 0

    async def test_storage_failure_is_503(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        backend = MagicMock()
        backend.load.return_value = None
        backend.save.side_effect = StorageIOError("read-only filesystem")
        failing = EmbeddingStore(backend)
        app.state.store = failing
        app.state.payments._store = failing

        response = await _register(client)

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE


class TestMatch:
    async def test_match_hides_score(self, client: httpx.AsyncClient) -> None:
        await _register(client)

        response = await client.post("/api/v1/match", files={"file": ("q.png", _png((5, 5, 5)), "image/png")})

        assert response.json() == {"matched": True, "account_id": ALICE, "display_name": "Alice"}

    async def test_no_match(self, client: httpx.AsyncClient) -> None:
        await _register(client)

        response = await client.post("/api/v1/match", files={"file": ("q.png", _png((90, 5, 5)), "image/png")})

        assert response.json() == {"matched": False, "account_id": None, "display_name": None}

    async def test_bad_image(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/match", files={"file": ("q.png", b"junk", "image/png")})
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT
        assert response.json()["detail"] == "Image could not be decoded"

    async def test_oversized_upload(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, FACEPAY_MAX_FILE_SIZE="10")
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/match", files={"file": ("q.png", _png((5, 5, 5)), "image/png")})
            assert response.status_code == status.HTTP_413_CONTENT_TOO_LARGE


def _sse_events(body: str) -> list[tuple[str, dict[str, object]]]:
    events = []
    for block in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


class TestPayments:
    async def test_streams_log_then_result(self, client: httpx.AsyncClient) -> None:
        await _register(client)

        response = await client.post(
            "/api/v1/payments",
            data={"amount": "10.5"},
            files={"file": ("q.png", _png((5, 5, 5)), "image/png")},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"].startswith("text/event-stream")
        events = _sse_events(response.text)
        assert [name for name, _ in events] == ["log", "log", "result"]
        assert events[-1][1]["success"] is True
        assert events[-1][1]["tx_hash"] == TX_HASH

    async def test_unrecognised_face_single_result(self, client: httpx.AsyncClient) -> None:
        await _register(client)

        response = await client.post(
            "/api/v1/payments",
            data={"amount": "1"},
            files={"file": ("q.png", _png((90, 90, 5)), "image/png")},
        )

        events = _sse_events(response.text)
        assert len(events) == 1
        name, payload = events[0]
        assert name == "result"
        assert payload["message"] == "Face not recognized"
        assert "score" not in json.dumps(payload)

    @pytest.mark.parametrize("amount", ["0", "-3", "ten"])
    async def test_invalid_amount(self, client: httpx.AsyncClient, amount: str) -> None:
        response = await client.post(
            "/api/v1/payments",
            data={"amount": amount},
            files={"file": ("q.png", _png((5, 5, 5)), "image/png")},
        )
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT


class TestAccountPayments:
    async def test_streams_payment_from_account(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        await _register(client)

        response = await client.post(f"/api/v1/accounts/{ALICE.lower()}/payments", data={"amount": "2.5"})

        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"].startswith("text/event-stream")
        events = _sse_events(response.text)
        assert [name for name, _ in events] == ["log", "log", "result"]
        assert events[-1][1]["success"] is True
        app.state.transfer_executor.execute.assert_called_once_with(ALICE, Decimal("2.5"), ALICE_KEY)

    async def test_unregistered_account_is_404(self, client: httpx.AsyncClient) -> None:
        response = await client.post(f"/api/v1/accounts/{ALICE}/payments", data={"amount": "1"})
        assert response.status_code == status.HTTP_404_NOT_FOUND

    async def test_invalid_address_is_422(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/accounts/0x123/payments", data={"amount": "1"})
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT


class TestBalance:
    async def test_balance(self, client: httpx.AsyncClient) -> None:
        response = await client.get(f"/api/v1/balance/{ALICE.lower()}")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["address"] == ALICE
        assert data["symbol"] == "PYUSD"
        assert Decimal(str(data["balance"])) == Decimal("25.5")

    async def test_invalid_address(self, client: httpx.AsyncClient) -> None:
        assert (await client.get("/api/v1/balance/0x123")).status_code == status.HTTP_422_UNPROCESSABLE_CONTENT


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, FACEPAY_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_401_UNAUTHORIZED

            response = await ac.get("/api/v1/health", headers={"Authorization": "Bearer wrong-key"})
            assert response.status_code == status.HTTP_401_UNAUTHORIZED

            response = await ac.get("/api/v1/health", headers={"Authorization": "Bearer test-secret-key"})
            assert response.status_code == status.HTTP_200_OK
