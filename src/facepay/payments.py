"""Payment orchestration: register faces, match them, and pay by face."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from contextlib import aclosing
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol

from eth_utils import is_address, to_checksum_address

from facepay.chain.transfer import failed_event
from facepay.domain import Registration
from facepay.errors import AccountNotRegistered, ExtractionError, SigningKeyUnavailable
from facepay.matcher import MatchPolicy, SimilarityMetric, find_best_match

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    from pydantic import SecretStr

    from facepay.chain.transfer import TransferEvent, TransferExecutor
    from facepay.config import Settings
    from facepay.domain import MatchResult
    from facepay.ml.extractor import EmbeddingExtractor
    from facepay.ml.inference import InferencePool
    from facepay.storage import EmbeddingStore

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("facepay.audit")

EventSink = Callable[["TransferEvent"], None]

FACE_NOT_RECOGNIZED = "Face not recognized"


class KeyRing(Protocol):
    """Source of signing keys for registered wallets."""

    def private_key_for(self, address: str) -> str:
        """Return the hex private key for ``address``.

        Raises:
            SigningKeyUnavailable: If no key is held for the address.
        """
        ...


class SettingsKeyRing:
    """Keys configured through ``FACEPAY_WALLET_KEYS`` (address -> key JSON object)."""

    def __init__(self, keys: Mapping[str, SecretStr]) -> None:
        self._keys = {address.lower(): key for address, key in keys.items()}

    def private_key_for(self, address: str) -> str:
        key = self._keys.get(address.lower())
        if key is None:
            raise SigningKeyUnavailable(f"No signing key configured for {address}")
        return key.get_secret_value()


def normalize_account_id(account_id: str) -> str:
    """Return the checksummed form of a wallet address.

    Raises:
        ValueError: If ``account_id`` is not a 20-byte hex address.
    """
    if not is_address(account_id):
        raise ValueError(f"Invalid wallet address: {account_id}")
    return to_checksum_address(account_id)


class PaymentService:
    def __init__(
        self,
        settings: Settings,
        extractor: EmbeddingExtractor,
        store: EmbeddingStore,
        executor: TransferExecutor,
        keyring: KeyRing,
        pool: InferencePool,
    ) -> None:
        self._extractor = extractor
        self._store = store
        self._executor = executor
        self._keyring = keyring
        self._pool = pool
        self._relays: set[asyncio.Task[None]] = set()
        self._policy = MatchPolicy(
            metric=SimilarityMetric(settings.similarity_metric),
            threshold=settings.match_threshold,
            degraded_threshold=settings.degraded_match_threshold,
        )

    @property
    def policy(self) -> MatchPolicy:
        return self._policy

    async def register(self, account_id: str, display_name: str, images: Sequence[bytes]) -> Registration:
        """Average-extract ``images`` and store the result under ``account_id``.

        Raises:
            ValueError: On an invalid address or an empty image list.
            NoUsableSamples: If no image yielded a face.
            StorageIOError: If persisting fails; the store is left unchanged.
        """
        account_id = normalize_account_id(account_id)
        if not images:
            raise ValueError("At least one face image is required")

        embedding = await self._pool.run(self._extractor.extract_average, list(images))
        registration = Registration(
            account_id=account_id,
            display_name=display_name.strip() or account_id,
            embedding=embedding,
            provenance=self._extractor.provenance,
        )
        await asyncio.to_thread(self._store.put, registration)
        audit_logger.info(
            "Registered %s (%s) from %d image(s), provenance=%s",
            account_id,
            registration.display_name,
            len(images),
            registration.provenance,
        )
        return registration

    async def match(self, image: bytes) -> MatchResult | None:
        """Identify the face in ``image`` among registered accounts.

        Raises:
            ExtractionError: If the image has no single usable face.
        """
        embedding = await self._pool.run(self._extractor.extract, image)
        return find_best_match(
            embedding,
            self._store.list(),
            self._policy,
            provenance=self._extractor.provenance,
        )

    async def pay(
        self,
        account_id: str,
        amount: Decimal,
        sink: EventSink | None = None,
    ) -> AsyncIterator[TransferEvent]:
        """Stream a transfer of ``amount`` from a registered account's wallet to the merchant."""
        relay = self._open_relay(sink)
        try:
            async with aclosing(self._pay_events(account_id, amount)) as events:
                async for event in events:
                    yield relay.publish(event)
        finally:
            relay.close()

    async def charge(
        self,
        image: bytes,
        amount: Decimal,
        sink: EventSink | None = None,
    ) -> AsyncIterator[TransferEvent]:
        """Match the face in ``image`` and, if recognised, pay ``amount`` from that account."""
        relay = self._open_relay(sink)
        try:
            async with aclosing(self._charge_events(image, amount)) as events:
                async for event in events:
                    yield relay.publish(event)
        finally:
            relay.close()

    async def aclose(self) -> None:
        """Wait until every sink has received the events already published to it."""
        await asyncio.gather(*self._relays, return_exceptions=True)

    # -- Internal -----------------------------------------------------------

    async def _pay_events(self, account_id: str, amount: Decimal) -> AsyncIterator[TransferEvent]:
        try:
            account_id = normalize_account_id(account_id)
        except ValueError as exc:
            yield failed_event(str(exc), error=type(exc).__name__)
            return

        registration = self._store.get(account_id)
        if registration is None:
            error = AccountNotRegistered(f"Account {account_id} is not registered")
            yield failed_event(str(error), error=type(error).__name__)
            return

        try:
            private_key = self._keyring.private_key_for(registration.account_id)
        except SigningKeyUnavailable as exc:
            logger.warning("Cannot pay from %s: %s", registration.account_id, exc)
            yield failed_event(str(exc), error=type(exc).__name__)
            return

        audit_logger.info("Payment of %s authorised for %s", amount, registration.account_id)
        async with aclosing(self._executor.execute(registration.account_id, amount, private_key)) as events:
            async for event in events:
                yield event

    async def _charge_events(self, image: bytes, amount: Decimal) -> AsyncIterator[TransferEvent]:
        try:
            result = await self.match(image)
        except ExtractionError as exc:
            logger.info("Charge rejected before matching: %s", exc)
            yield failed_event(FACE_NOT_RECOGNIZED, error=type(exc).__name__)
            return

        if result is None:
            yield failed_event(FACE_NOT_RECOGNIZED, error="NoMatch")
            return

        async with aclosing(self._pay_events(result.account_id, amount)) as events:
            async for event in events:
                yield event

    def _open_relay(self, sink: EventSink | None) -> EventRelay:
        relay = EventRelay(sink)
        if relay.task is not None:
            self._relays.add(relay.task)
            relay.task.add_done_callback(self._relays.discard)
        return relay


class EventRelay:
    """Hands events to a sink in order, on a worker thread, so a slow sink never stalls a payment."""

    def __init__(self, sink: EventSink | None) -> None:
        self._sink = sink
        self._queue: asyncio.Queue[TransferEvent | None] = asyncio.Queue()
        self.task: asyncio.Task[None] | None = None
        if sink is not None:
            self.task = asyncio.create_task(self._drain(sink))

    def publish(self, event: TransferEvent) -> TransferEvent:
        if self.task is not None:
            self._queue.put_nowait(event)
        return event

    def close(self) -> None:
        if self.task is not None:
            self._queue.put_nowait(None)

    async def _drain(self, sink: EventSink) -> None:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            try:
                await asyncio.to_thread(sink, event)
            except Exception:
                logger.exception("Transfer event sink raised on %s", event.stage)
