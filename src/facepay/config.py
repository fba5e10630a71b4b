"""Environment-based configuration for FacePay."""

from __future__ import annotations

from decimal import Decimal
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

PYUSD_SEPOLIA = "0xCaC524BcA292aaade2DF8A05cC58F0a65B1B3bB9"
SEPOLIA_CHAIN_ID = 11_155_111


class Settings(BaseSettings):
    """Application settings loaded from FACEPAY_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FACEPAY_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # Authentication (None = disabled)
    api_key: SecretStr | None = None

    # Logging
    log_level: str = "INFO"
    audit_log_path: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Embedding backend selection
    embedding_backend: Literal["auto", "neural", "geometric", "hash"] = "auto"
    allow_hash_fallback: bool = False

    # Model selection
    face_detection_model: str = "retinaface_resnet34"
    face_recognition_model: str = "auraface_v1"
    accept_insightface_license: bool = False
    models_dir: str = "models"

    # Detection
    detection_confidence: float = Field(default=0.8, gt=0.0, le=1.0)
    detection_input_size: int = Field(default=640, ge=64)

    # Matching
    similarity_metric: Literal["cosine", "euclidean"] = "cosine"
    match_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    degraded_match_threshold: float | None = Field(default=None, ge=0.0, le=1.0)

    # Registration
    registration_samples: int = Field(default=3, ge=1)
    store_path: str = "data/face_embeddings.json"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=10_485_760, ge=1)

    # Model management
    model_ttl: int = Field(default=300, ge=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Chain
    rpc_url: str = "https://ethereum-sepolia-rpc.publicnode.com"
    chain_id: int = SEPOLIA_CHAIN_ID
    token_address: str = PYUSD_SEPOLIA
    token_symbol: str = "PYUSD"
    token_decimals: int | None = Field(default=None, ge=0, le=36)
    merchant_address: str | None = None
    wallet_keys: dict[str, SecretStr] = Field(default_factory=dict)
    explorer_url: str | None = "https://sepolia.etherscan.io/tx/"

    # Transaction parameters
    gas_limit: int = Field(default=90_000, ge=21_000)
    gas_price_multiplier: Decimal = Field(default=Decimal("1.2"), gt=0)
    gas_price_cap_gwei: Decimal = Field(default=Decimal(20), gt=0)

    # RPC pacing
    rpc_timeout: float = Field(default=10.0, gt=0)
    rpc_min_interval: float = Field(default=1.0, ge=0)
    rpc_retry_backoff: float = Field(default=2.0, ge=0)
    receipt_poll_interval: float = Field(default=2.0, gt=0)
    receipt_timeout: float = Field(default=300.0, gt=0)
    receipt_tracking_timeout: float = Field(default=3600.0, gt=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
