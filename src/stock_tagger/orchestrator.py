"""
Batch orchestration of AI metadata generation.

Eligible items are split into consecutive groups of ``batch_size``. Groups run one after
another with a fixed pacing delay between them; the items of a group run concurrently as
asyncio tasks on the current event loop. Each item's outcome is recorded on the item itself,
so one failing item never affects its siblings.

Everything runs on a single event loop, so neither the registry nor the credential store is
locked. Driving an orchestrator from several OS threads would need a lock around both.
Image bytes are read on a worker thread; usage is persisted on the loop itself, one small
synchronous write to the credential backend per successful item.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from uuid import UUID

from loguru import logger

from stock_tagger.adapters import ModelAdapter
from stock_tagger.config import BATCH_SIZE, DEFAULT_PROMPT, PACING_DELAY_SECONDS
from stock_tagger.credentials import CredentialStore
from stock_tagger.errors import (
    CredentialRequiredError,
    InvalidTransitionError,
    ItemProcessingError,
    NoWorkItemsError,
    StockTaggerError,
    UnsupportedModelError,
)
from stock_tagger.images import encode_image
from stock_tagger.items import ELIGIBLE_STATES, Item, ItemState
from stock_tagger.models import Credential, ModelId
from stock_tagger.parser import parse_metadata
from stock_tagger.registry import ItemRegistry


ItemCallback = Callable[[Item], None]


@dataclass
class BatchReport:
    """Outcome of one orchestrator call."""

    model: ModelId
    groups: int = 0
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0


def partition(items: list[Item], size: int) -> list[list[Item]]:
    """
    Split ``items`` into consecutive groups of ``size``, preserving order.

    Examples:
        >>> [len(g) for g in partition(list(range(12)), 5)]
        [5, 5, 2]

    """
    return [items[start : start + size] for start in range(0, len(items), size)]


class BatchOrchestrator:
    """Drives model adapters over the items of a registry."""

    def __init__(
        self,
        registry: ItemRegistry,
        credentials: CredentialStore,
        adapters: Mapping[ModelId, ModelAdapter],
        *,
        batch_size: int = BATCH_SIZE,
        pacing_delay: float = PACING_DELAY_SECONDS,
        prompt: str = DEFAULT_PROMPT,
        on_update: ItemCallback | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Wire the orchestrator to its stores and adapters.

        Args:
            registry: Items to process; the orchestrator is their only writer during a run
            credentials: Store providing the active credential and recording usage
            adapters: One adapter per supported model
            batch_size: Maximum number of concurrent requests (items per group)
            pacing_delay: Seconds to wait between two groups
            prompt: Instruction sent with every image
            on_update: Called after every item state change
            sleep: Awaitable used for the pacing delay

        """
        if batch_size < 1:
            msg = "batch_size must be at least 1"
            raise ValueError(msg)
        if pacing_delay < 0:
            msg = "pacing_delay must not be negative"
            raise ValueError(msg)
        self.registry = registry
        self.credentials = credentials
        self.adapters = adapters
        self.batch_size = batch_size
        self.pacing_delay = pacing_delay
        self.prompt = prompt
        self.on_update = on_update
        self._sleep = sleep

    async def process_all(
        self,
        model: ModelId,
        items: Iterable[Item] | None = None,
    ) -> BatchReport:
        """
        Process every PENDING or ERROR item (of ``items``, default: the whole registry).

        Raises:
            CredentialRequiredError: no active credential for ``model``; nothing is touched.
            NoWorkItemsError: nothing is eligible; nothing is touched.
            UnsupportedModelError: no adapter for ``model``; nothing is touched.

        """
        return await self._run(model, items, ELIGIBLE_STATES, operation="process_all")

    async def retry_failed(
        self,
        model: ModelId,
        items: Iterable[Item] | None = None,
    ) -> BatchReport:
        """Same as :meth:`process_all`, restricted to items in the ERROR state."""
        return await self._run(
            model,
            items,
            frozenset({ItemState.ERROR}),
            operation="retry_failed",
        )

    async def retry_one(
        self,
        item_id: UUID,
        model: ModelId,
        *,
        reprocess: bool = False,
    ) -> Item:
        """
        Re-run a single item outside any batch.

        DONE items are re-processed only when ``reprocess`` is set.

        Raises:
            ItemNotFoundError: unknown ``item_id``.
            InvalidTransitionError: the item is processing, or DONE without ``reprocess``.
            CredentialRequiredError: no active credential for ``model``.
            UnsupportedModelError: no adapter for ``model``.

        """
        item = self.registry.get(item_id)
        credential = self._require_credential(model)
        if item.state is ItemState.PROCESSING or (
            item.state is ItemState.DONE and not reprocess
        ):
            msg = f"Cannot retry {item.filename}: item is {item.state}"
            raise InvalidTransitionError(msg)
        adapter = self._require_adapter(model)

        logger.info("retrying_item", item_id=str(item.id), file=item.filename, model=str(model))
        self._transition(item.begin_processing, item, allow_done=reprocess)
        await self._process_item(item, adapter, credential)
        return item

    async def _run(
        self,
        model: ModelId,
        items: Iterable[Item] | None,
        states: frozenset[ItemState],
        *,
        operation: str,
    ) -> BatchReport:
        credential = self._require_credential(model)
        candidates = self.registry.items() if items is None else list(items)
        eligible = [item for item in candidates if item.state in states]
        if not eligible:
            msg = "No images to process: upload images first or wait for failures to retry"
            raise NoWorkItemsError(msg)
        adapter = self._require_adapter(model)

        groups = partition(eligible, self.batch_size)
        report = BatchReport(model=model, groups=len(groups))
        logger.info(
            "batch_started",
            operation=operation,
            model=str(model),
            credential=credential.label,
            items=len(eligible),
            groups=len(groups),
            batch_size=self.batch_size,
        )

        for number, group in enumerate(groups, start=1):
            # A single-item retry may have claimed an item while earlier groups were running.
            ready = [item for item in group if item.state in states]
            if len(ready) < len(group):
                logger.warning("items_claimed_elsewhere", skipped=len(group) - len(ready))
            # Mark the whole group before the first await so no item can be dispatched twice.
            for item in ready:
                self._transition(item.begin_processing, item)
            logger.debug("batch_group_dispatched", group=f"{number}/{len(groups)}", size=len(ready))

            outcomes = await asyncio.gather(
                *(self._process_item(item, adapter, credential) for item in ready),
                return_exceptions=True,
            )
            for item, outcome in zip(ready, outcomes, strict=True):
                if isinstance(outcome, BaseException):
                    self._settle_crashed(item, outcome)
            succeeded = sum(outcome is True for outcome in outcomes)
            report.attempted += len(outcomes)
            report.succeeded += succeeded
            report.failed += len(outcomes) - succeeded

            if number < len(groups) and self.pacing_delay:
                await self._sleep(self.pacing_delay)

        logger.info(
            "batch_finished",
            operation=operation,
            model=str(model),
            succeeded=report.succeeded,
            failed=report.failed,
        )
        return report

    async def _process_item(
        self,
        item: Item,
        adapter: ModelAdapter,
        credential: Credential,
    ) -> bool:
        """Run one PROCESSING item to DONE or ERROR. Never raises for item-level failures."""
        with logger.contextualize(item_id=str(item.id), file=item.filename):
            try:
                payload = await asyncio.to_thread(encode_image, item.source)
                raw_text = await adapter.invoke(payload, self.prompt, credential)
                metadata = parse_metadata(raw_text)
            except ItemProcessingError as exc:
                logger.warning("item_failed", error=str(exc), error_type=type(exc).__name__)
                self._transition(item.fail, item, str(exc))
                return False
            except Exception as exc:  # noqa: BLE001
                logger.exception("item_failed_unexpectedly", error=str(exc))
                self._transition(item.fail, item, str(exc) or type(exc).__name__)
                return False

            self._transition(item.complete, item, metadata)
            # Usage bookkeeping failures leave the item DONE.
            try:
                self.credentials.record_usage(credential.id)
            except (StockTaggerError, OSError, ValueError):
                logger.exception("usage_not_recorded", credential=credential.label)
            logger.info("item_done", title=metadata.title, keywords=len(metadata.keywords))
            return True

    def _settle_crashed(self, item: Item, exc: BaseException) -> None:
        """Leave no item PROCESSING after its task raised past the item boundary."""
        if not isinstance(exc, Exception):
            raise exc
        logger.opt(exception=exc).error(
            "item_task_crashed",
            item_id=str(item.id),
            file=item.filename,
        )
        if item.state is ItemState.PROCESSING:
            item.fail(str(exc) or type(exc).__name__)

    def _transition(
        self,
        change: Callable[..., None],
        item: Item,
        *args,  # noqa: ANN002
        **kwargs,  # noqa: ANN003
    ) -> None:
        change(*args, **kwargs)
        if self.on_update is not None:
            self.on_update(item)

    def _require_credential(self, model: ModelId) -> Credential:
        credential = self.credentials.select(model)
        if credential is None:
            logger.error("credential_required", model=str(model))
            raise CredentialRequiredError(str(model))
        return credential

    def _require_adapter(self, model: ModelId) -> ModelAdapter:
        try:
            return self.adapters[model]
        except KeyError:
            msg = f"Unsupported model: {model}"
            raise UnsupportedModelError(msg) from None
