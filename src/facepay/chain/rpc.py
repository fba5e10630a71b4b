"""Throttled Ethereum JSON-RPC client over httpx."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import TYPE_CHECKING, Any

import httpx

from facepay.chain.abi import DECIMALS_CALL, decode_uint256, encode_allowance, encode_balance_of
from facepay.errors import NonceMismatch, RpcError, RpcUnavailable

if TYPE_CHECKING:
    from facepay.config import Settings

logger = logging.getLogger(__name__)

_NONCE_ERROR_MARKERS = (
    "nonce too low",
    "nonce too high",
    "already known",
    "replacement transaction underpriced",
    "invalid nonce",
)


class JsonRpcClient:
    """Serialises calls to one endpoint, at most one per ``min_interval`` seconds.

    HTTP 429 is retried exactly once after ``retry_backoff`` seconds.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        min_interval: float = 1.0,
        retry_backoff: float = 2.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._min_interval = min_interval
        self._retry_backoff = retry_backoff
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._ids = itertools.count(1)
        self._throttle = asyncio.Lock()
        self._last_request: float | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> JsonRpcClient:
        return cls(
            settings.rpc_url,
            timeout=settings.rpc_timeout,
            min_interval=settings.rpc_min_interval,
            retry_backoff=settings.rpc_retry_backoff,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -- Transport ----------------------------------------------------------

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        async with self._throttle:
            if self._last_request is not None:
                wait = self._min_interval - (time.monotonic() - self._last_request)
                if wait > 0:
                    await asyncio.sleep(wait)
            try:
                return await self._client.post(self._url, json=payload)
            finally:
                self._last_request = time.monotonic()

    async def request(self, method: str, params: list[Any]) -> Any:
        """Perform one JSON-RPC call and return its ``result``.

        Raises:
            RpcUnavailable: On transport failures, 5xx, or a repeated 429.
            RpcError: When the node returns an error object.
        """
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await self._post(payload)
            if response.status_code == 429:
                logger.warning("RPC rate limited on %s, retrying in %.1fs", method, self._retry_backoff)
                await asyncio.sleep(self._retry_backoff)
                response = await self._post(payload)
        except httpx.HTTPError as exc:
            raise RpcUnavailable(f"RPC {method} failed: {exc}") from exc

        if response.status_code == 429:
            raise RpcUnavailable(f"RPC {method} still rate limited after retry")
        if response.status_code >= 400:
            raise RpcUnavailable(f"RPC {method} returned HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise RpcUnavailable(f"RPC {method} returned invalid JSON") from exc

        if not isinstance(body, dict):
            raise RpcUnavailable(f"RPC {method} returned a malformed response")
        error = body.get("error")
        if error:
            if not isinstance(error, dict):
                raise RpcError(None, str(error))
            raise RpcError(error.get("code"), str(error.get("message", "unknown error")))
        return body.get("result")

    async def _quantity(self, method: str, params: list[Any]) -> int:
        result = await self.request(method, params)
        try:
            return int(result, 16)
        except (TypeError, ValueError) as exc:
            raise RpcUnavailable(f"RPC {method} returned a non-quantity result: {result!r}") from exc

    # -- Node methods -------------------------------------------------------

    async def chain_id(self) -> int:
        return await self._quantity("eth_chainId", [])

    async def gas_price(self) -> int:
        return await self._quantity("eth_gasPrice", [])

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return await self._quantity("eth_getTransactionCount", [address, block])

    async def call(self, to: str, data: str, block: str = "latest") -> str:
        result = await self.request("eth_call", [{"to": to, "data": data}, block])
        if not isinstance(result, str):
            raise RpcUnavailable(f"RPC eth_call returned a non-data result: {result!r}")
        return result

    async def send_raw_transaction(self, raw_hex: str) -> str:
        """Broadcast a signed transaction and return its hash.

        Raises:
            NonceMismatch: If the node rejects the transaction's nonce.
        """
        try:
            return await self.request("eth_sendRawTransaction", [raw_hex])
        except RpcError as exc:
            message = str(exc).lower()
            if any(marker in message for marker in _NONCE_ERROR_MARKERS):
                raise NonceMismatch(exc.code, exc.message) from exc
            raise

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        receipt = await self.request("eth_getTransactionReceipt", [tx_hash])
        if receipt is not None and not isinstance(receipt, dict):
            raise RpcUnavailable(f"RPC eth_getTransactionReceipt returned a malformed receipt: {receipt!r}")
        return receipt

    # -- ERC20 helpers ------------------------------------------------------

    async def balance_of(self, token: str, owner: str) -> int:
        return decode_uint256(await self.call(token, encode_balance_of(owner)))

    async def decimals(self, token: str) -> int:
        return decode_uint256(await self.call(token, DECIMALS_CALL))

    async def allowance(self, token: str, owner: str, spender: str) -> int:
        return decode_uint256(await self.call(token, encode_allowance(owner, spender)))
