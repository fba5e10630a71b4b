"""Pydantic request/response schemas for the FacePay API."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class AccountResponse(BaseModel):
    """A registered account. Embeddings are never returned."""

    account_id: str = Field(description="Checksummed wallet address")
    display_name: str
    provenance: str = Field(description="Embedding source: 'neural', 'engineered', or 'hash_fallback'")
    registered_at: datetime


class AccountsResponse(BaseModel):
    accounts: list[AccountResponse]
    count: int
    storage_bytes: int


class MatchResponse(BaseModel):
    """Result of a face lookup. Similarity scores are intentionally absent."""

    matched: bool
    account_id: str | None = None
    display_name: str | None = None


class BalanceResponse(BaseModel):
    address: str
    token: str
    symbol: str
    balance: Decimal


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    embedding_backend: str
    models_loaded: list[str]
    registered_accounts: int
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    task: str = Field(description="Model task: 'face_detection' or 'face_recognition'")
    status: str = Field(description="Model status: 'active', 'available', or 'requires_license'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
