"""Tests for batch grouping, pacing, fault isolation, usage accounting and retries."""

import asyncio
import math
import threading

import pytest

from conftest import ScriptedAdapter, add_images, assert_item_invariants
from stock_tagger.credentials import CredentialStore, MemoryBackend
from stock_tagger.errors import (
    CredentialRequiredError,
    InvalidTransitionError,
    MalformedResponseError,
    NoWorkItemsError,
    TransportFailureError,
    UnsupportedModelError,
)
from stock_tagger.images import ImagePayload, MemoryImageSource
from stock_tagger.items import Item, ItemState
from stock_tagger.models import Credential, ModelId
from stock_tagger.orchestrator import BatchOrchestrator, partition
from stock_tagger.registry import ItemRegistry


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_orchestrator(
    registry: ItemRegistry,
    store: CredentialStore,
    adapter: ScriptedAdapter,
    **kwargs: object,
) -> BatchOrchestrator:
    kwargs.setdefault("sleep", SleepRecorder())
    adapters = {ModelId.GPT_4O: adapter}
    return BatchOrchestrator(registry, store, adapters, **kwargs)  # type: ignore[arg-type]


def test_partition_preserves_order_and_sizes() -> None:
    """Groups are consecutive slices; only the last may be short."""
    groups = partition(list("abcdefghijkl"), 5)  # type: ignore[arg-type]
    assert groups == [list("abcde"), list("fghij"), list("kl")]


@pytest.mark.asyncio
async def test_process_all_invokes_every_item_in_sequential_groups(
    registry: ItemRegistry,
    store: CredentialStore,
    credential: Credential,
    adapter: ScriptedAdapter,
) -> None:
    """Twelve items run as 5+5+2 with each group finishing before the next starts."""
    names = [f"img{i:02d}" for i in range(12)]
    items = add_images(registry, *names)
    orchestrator = make_orchestrator(registry, store, adapter, batch_size=5)

    report = await orchestrator.process_all(ModelId.GPT_4O)

    assert sorted(adapter.calls) == names
    assert report.groups == math.ceil(12 / 5)
    assert report.attempted == 12
    assert report.succeeded == 12
    assert report.failed == 0
    assert adapter.max_in_flight <= 5
    assert {c.id for c in adapter.credentials_used} == {credential.id}

    # Group k+1 never starts before every task of group k has ended.
    for earlier, later in zip(partition(names, 5), partition(names, 5)[1:], strict=False):
        last_end = max(adapter.events.index(("end", name)) for name in earlier)
        first_start = min(adapter.events.index(("start", name)) for name in later)
        assert last_end < first_start

    assert all(item.state is ItemState.DONE for item in items)
    assert items[3].metadata is not None
    assert items[3].metadata.title == "Photo img03"
    assert_item_invariants(items)


@pytest.mark.asyncio
async def test_items_of_one_group_run_concurrently(
    registry: ItemRegistry,
    store: CredentialStore,
    credential: Credential,
) -> None:
    """Requests within a group are in flight at the same time."""
    adapter = ScriptedAdapter(rendezvous=3)
    add_images(registry, "a", "b", "c")
    orchestrator = make_orchestrator(registry, store, adapter, batch_size=5)

    report = await orchestrator.process_all(ModelId.GPT_4O)

    assert report.groups == 1
    assert adapter.max_in_flight == 3


@pytest.mark.asyncio
async def test_failing_item_does_not_affect_siblings(
    registry: ItemRegistry,
    store: CredentialStore,
    credential: Credential,
) -> None:
    """One provider failure only marks its own item as ERROR."""
    adapter = ScriptedAdapter({"x": TransportFailureError("OpenAI API Error: overloaded")})
    x, y, z = add_images(registry, "x", "y", "z")
    orchestrator = make_orchestrator(registry, store, adapter)

    report = await orchestrator.process_all(ModelId.GPT_4O)

    assert x.state is ItemState.ERROR
    assert x.error_message == "OpenAI API Error: overloaded"
    assert y.state is ItemState.DONE
    assert z.state is ItemState.DONE
    assert y.metadata is not None
    assert z.metadata is not None
    assert report.succeeded == 2
    assert report.failed == 1
    assert_item_invariants([x, y, z])


@pytest.mark.asyncio
async def test_usage_recorded_only_for_successes(
    registry: ItemRegistry,
    store: CredentialStore,
    credential: Credential,
) -> None:
    """The request counter grows once per DONE item and never for failures."""
    adapter = ScriptedAdapter(
        {
            "bad-transport": TransportFailureError("down"),
            "bad-reply": "I cannot help with that.",
        },
    )
    add_images(registry, "ok1", "bad-transport", "ok2", "bad-reply", "ok3", "ok4")
    orchestrator = make_orchestrator(registry, store, adapter, batch_size=2)

    await orchestrator.process_all(ModelId.GPT_4O)

    done = registry.with_state(ItemState.DONE)
    assert len(done) == 4
    assert store.get(credential.id).requests_made == len(done)
    assert store.get(credential.id).last_used_at is not None


@pytest.mark.asyncio
async def test_missing_credential_fails_before_touching_items(
    registry: ItemRegistry,
    store: CredentialStore,
    adapter: ScriptedAdapter,
) -> None:
    """Without an active credential nothing is dispatched and every item stays PENDING."""
    items = add_images(registry, "a", "b")
    store.add(ModelId.GPT_4O, "sk-inactive-secret", activate=False)
    orchestrator = make_orchestrator(registry, store, adapter)

    assert store.select(ModelId.GPT_4O) is None
    with pytest.raises(CredentialRequiredError):
        await orchestrator.process_all(ModelId.GPT_4O)

    assert adapter.calls == []
    assert all(item.state is ItemState.PENDING for item in items)


@pytest.mark.asyncio
async def test_no_eligible_items_raises(
    registry: ItemRegistry,
    store: CredentialStore,
    credential: Credential,
    adapter: ScriptedAdapter,
) -> None:
    """An empty registry or one with only DONE items has nothing to process."""
    orchestrator = make_orchestrator(registry, store, adapter)

    with pytest.raises(NoWorkItemsError):
        await orchestrator.process_all(ModelId.GPT_4O)

    add_images(registry, "a")
    await orchestrator.process_all(ModelId.GPT_4O)
    with pytest.raises(NoWorkItemsError):
        await orchestrator.process_all(ModelId.GPT_4O)
    assert adapter.calls == ["a"]


@pytest.mark.asyncio
async def test_unsupported_model_raises_before_work(
    registry: ItemRegistry,
    store: CredentialStore,
    adapter: ScriptedAdapter,
) -> None:
    store.add(ModelId.CLAUDE_3_5_SONNET, "sk-ant-secret-001")
    items = add_images(registry, "a")
    orchestrator = make_orchestrator(registry, store, adapter)

    with pytest.raises(UnsupportedModelError):
        await orchestrator.process_all(ModelId.CLAUDE_3_5_SONNET)
    assert items[0].state is ItemState.PENDING


@pytest.mark.asyncio
async def test_pacing_delay_between_groups_only(
    registry: ItemRegistry,
    store: CredentialStore,
    credential: Credential,
    adapter: ScriptedAdapter,
) -> None:
    """Three groups wait twice; there is no wait after the last group."""
    sleep = SleepRecorder()
    add_images(registry, *[f"img{i}" for i in range(11)])
    orchestrator = make_orchestrator(
        registry,
        store,
        adapter,
        batch_size=5,
        pacing_delay=1.0,
        sleep=sleep,
    )

    await orchestrator.process_all(ModelId.GPT_4O)

    assert sleep.delays == [1.0, 1.0]


@pytest.mark.asyncio
async def test_single_undersized_group_has_no_pacing(
    registry: ItemRegistry,
    store: CredentialStore,
    credential: Credential,
    adapter: ScriptedAdapter,
) -> None:
    sleep = SleepRecorder()
    add_images(registry, "a", "b")
    orchestrator = make_orchestrator(registry, store, adapter, batch_size=5, sleep=sleep)

    report = await orchestrator.process_all(ModelId.GPT_4O)

    assert report.groups == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_unreadable_source_becomes_item_error(
    registry: ItemRegistry,
    store: CredentialStore,
    credential: Credential,
    adapter: ScriptedAdapter,
) -> None:
    """A released image fails its item without reaching the provider."""
    broken, fine = add_images(registry, "broken", "fine")
    broken.source.release()
    orchestrator = make_orchestrator(registry, store, adapter)

    await orchestrator.process_all(ModelId.GPT_4O)

    assert broken.state is ItemState.ERROR
    assert broken.error_message is not None
    assert "Could not read broken" in broken.error_message
    assert fine.state is ItemState.DONE
    assert adapter.calls == ["fine"]


@pytest.mark.asyncio
async def test_empty_reply_is_malformed_not_empty_metadata(
    registry: ItemRegistry,
    store: CredentialStore,
    credential: Credential,
) -> None:
    """An empty provider reply is an error, never DONE with empty metadata."""
    adapter = ScriptedAdapter({"blank": ""})
    (blank,) = add_images(registry, "blank")
    orchestrator = make_orchestrator(registry, store, adapter)

    await orchestrator.process_all(ModelId.GPT_4O)

    assert blank.state is ItemState.ERROR
    assert blank.metadata is None
    assert blank.error_message is not None
    assert "empty response" in blank.error_message


@pytest.mark.asyncio
async def test_unexpected_exception_is_isolated(
    registry: ItemRegistry,
    store: CredentialStore,
    credential: Credential,
) -> None:
    """Bugs inside an adapter are recorded on the item like any other failure."""
    adapter = ScriptedAdapter({"boom": RuntimeError("adapter bug")})
    boom, calm = add_images(registry, "boom", "calm")
    orchestrator = make_orchestrator(registry, store, adapter)

    await orchestrator.process_all(ModelId.GPT_4O)

    assert boom.state is ItemState.ERROR
    assert boom.error_message == "adapter bug"
    assert calm.state is ItemState.DONE


@pytest.mark.asyncio
async def test_items_marked_processing_before_any_request(
    registry: ItemRegistry,
    store: CredentialStore,
    credential: Credential,
) -> None:
    """The whole group is PROCESSING before the first request goes out."""
    observed: list[list[ItemState]] = []
    items: list[Item] = []

    class ObservingAdapter(ScriptedAdapter):
        async def invoke(self, image, prompt, credential):  # noqa: ANN001, ANN202
            observed.append([item.state for item in items])
            return await super().invoke(image, prompt, credential)

    items.extend(add_images(registry, "a", "b", "c"))
    orchestrator = make_orchestrator(registry, store, ObservingAdapter(), batch_size=3)

    await orchestrator.process_all(ModelId.GPT_4O)

    assert observed[0] == [ItemState.PROCESSING] * 3


@pytest.mark.asyncio
async def test_on_update_sees_every_transition(
    registry: ItemRegistry,
    store: CredentialStore,
    credential: Credential,
) -> None:
    seen: list[tuple[str, ItemState]] = []
    adapter = ScriptedAdapter({"bad": MalformedResponseError("no JSON")})
    add_images(registry, "good", "bad")
    orchestrator = make_orchestrator(
        registry,
        store,
        adapter,
        on_update=lambda item: seen.append((item.filename, item.state)),
    )

    await orchestrator.process_all(ModelId.GPT_4O)

    assert seen[:2] == [("good", ItemState.PROCESSING), ("bad", ItemState.PROCESSING)]
    assert sorted(seen[2:]) == [("bad", ItemState.ERROR), ("good", ItemState.DONE)]


@pytest.mark.asyncio
async def test_retry_failed_only_touches_error_items(
    registry: ItemRegistry,
    store: CredentialStore,
    credential: Credential,
) -> None:
    """PENDING and DONE items are left alone by retry_failed."""
    adapter = ScriptedAdapter({"flaky": TransportFailureError("timeout")})
    flaky, steady = add_images(registry, "flaky", "steady")
    orchestrator = make_orchestrator(registry, store, adapter)
    await orchestrator.process_all(ModelId.GPT_4O)
    assert flaky.state is ItemState.ERROR

    del adapter.script["flaky"]
    pending = add_images(registry, "late")[0]
    report = await orchestrator.retry_failed(ModelId.GPT_4O)

    assert report.attempted == 1
    assert flaky.state is ItemState.DONE
    assert flaky.error_message is None
    assert pending.state is ItemState.PENDING
    assert sorted(adapter.calls[:2]) == ["flaky", "steady"]
    assert adapter.calls[2:] == ["flaky"]


@pytest.mark.asyncio
async def test_retry_failed_without_errors_raises(
    registry: ItemRegistry,
    store: CredentialStore,
    credential: Credential,
    adapter: ScriptedAdapter,
) -> None:
    add_images(registry, "a")
    orchestrator = make_orchestrator(registry, store, adapter)

    with pytest.raises(NoWorkItemsError):
        await orchestrator.retry_failed(ModelId.GPT_4O)


@pytest.mark.asyncio
async def test_retry_one_recovers_error_item(
    registry: ItemRegistry,
    store: CredentialStore,
    credential: Credential,
) -> None:
    """A single retry clears the error and stores the new metadata."""
    adapter = ScriptedAdapter({"photo": TransportFailureError("bad gateway")})
    (item,) = add_images(registry, "photo")
    orchestrator = make_orchestrator(registry, store, adapter)
    await orchestrator.process_all(ModelId.GPT_4O)
    assert item.state is ItemState.ERROR

    adapter.script.clear()
    result = await orchestrator.retry_one(item.id, ModelId.GPT_4O)

    assert result is item
    assert item.state is ItemState.DONE
    assert item.error_message is None
    assert item.metadata is not None
    assert item.metadata.title == "Photo photo"
    assert store.get(credential.id).requests_made == 1


@pytest.mark.asyncio
async def test_retry_one_guards_done_and_processing_items(
    registry: ItemRegistry,
    store: CredentialStore,
    credential: Credential,
    adapter: ScriptedAdapter,
) -> None:
    """Busy items are refused; DONE items need reprocess=True."""
    done, busy = add_images(registry, "done", "busy")
    orchestrator = make_orchestrator(registry, store, adapter)
    await orchestrator.retry_one(done.id, ModelId.GPT_4O)
    busy.begin_processing()

    with pytest.raises(InvalidTransitionError):
        await orchestrator.retry_one(done.id, ModelId.GPT_4O)
    with pytest.raises(InvalidTransitionError):
        await orchestrator.retry_one(busy.id, ModelId.GPT_4O)

    adapter.script["done"] = '{"title": "Fresh", "keywords": ["new"], "category": "Travel"}'
    await orchestrator.retry_one(done.id, ModelId.GPT_4O, reprocess=True)
    assert done.metadata is not None
    assert done.metadata.title == "Fresh"


@pytest.mark.asyncio
async def test_retry_one_requires_credential(
    registry: ItemRegistry,
    store: CredentialStore,
    adapter: ScriptedAdapter,
) -> None:
    """retry_one checks the credential before changing the item."""
    (item,) = add_images(registry, "a")
    orchestrator = make_orchestrator(registry, store, adapter)

    with pytest.raises(CredentialRequiredError):
        await orchestrator.retry_one(item.id, ModelId.GPT_4O)
    assert item.state is ItemState.PENDING


def test_invalid_settings_rejected(
    registry: ItemRegistry,
    store: CredentialStore,
    adapter: ScriptedAdapter,
) -> None:
    with pytest.raises(ValueError, match="batch_size"):
        make_orchestrator(registry, store, adapter, batch_size=0)
    with pytest.raises(ValueError, match="pacing_delay"):
        make_orchestrator(registry, store, adapter, pacing_delay=-1)


class FailingSaveBackend(MemoryBackend):
    """Memory backend whose saves fail once ``broken`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.broken = False

    def save(self, key: str, value: object) -> None:
        if self.broken:
            msg = "disk full"
            raise OSError(msg)
        super().save(key, value)


class GatedAdapter(ScriptedAdapter):
    """Holds the call for one image until ``gate`` is set."""

    def __init__(self, gated: str) -> None:
        super().__init__()
        self.gated = gated
        self.gate = asyncio.Event()
        self.waiting = asyncio.Event()

    async def invoke(self, image: ImagePayload, prompt: str, credential: Credential) -> str:
        if image.data.decode() == self.gated:
            self.waiting.set()
            await self.gate.wait()
        return await super().invoke(image, prompt, credential)


class ThreadRecordingSource(MemoryImageSource):
    def __init__(self, name: str) -> None:
        super().__init__(name, name.encode(), "image/png")
        self.read_threads: list[int] = []

    def read(self) -> bytes:
        self.read_threads.append(threading.get_ident())
        return super().read()


@pytest.mark.asyncio
async def test_usage_persistence_failure_keeps_batch_running(
    registry: ItemRegistry,
    adapter: ScriptedAdapter,
) -> None:
    """A credential backend that cannot save neither aborts the batch nor undoes DONE."""
    backend = FailingSaveBackend()
    store = CredentialStore(backend)
    store.add(ModelId.GPT_4O, "sk-test-secret-0001")
    backend.broken = True
    items = add_images(registry, *[f"img{i}" for i in range(7)])
    orchestrator = make_orchestrator(registry, store, adapter, batch_size=5)

    report = await orchestrator.process_all(ModelId.GPT_4O)

    assert report.groups == 2
    assert report.attempted == 7
    assert report.succeeded == 7
    assert all(item.state is ItemState.DONE for item in items)
    assert_item_invariants(items)


@pytest.mark.asyncio
async def test_credential_removed_mid_run_does_not_abort_batch(
    registry: ItemRegistry,
    store: CredentialStore,
    credential: Credential,
    adapter: ScriptedAdapter,
) -> None:
    """Usage for a deleted key is skipped; every item still settles."""

    def remove_key_once(item: Item) -> None:
        if credential in store.list():
            store.remove(credential.id)

    items = add_images(registry, "a", "b", "c")
    orchestrator = make_orchestrator(
        registry,
        store,
        adapter,
        batch_size=2,
        on_update=remove_key_once,
    )

    report = await orchestrator.process_all(ModelId.GPT_4O)

    assert report.succeeded == 3
    assert all(item.state is ItemState.DONE for item in items)
    assert store.list() == []


@pytest.mark.asyncio
async def test_crashing_update_callback_does_not_orphan_siblings(
    registry: ItemRegistry,
    store: CredentialStore,
    credential: Credential,
    adapter: ScriptedAdapter,
) -> None:
    """A task that raises past the item boundary leaves siblings and later groups running."""

    def explode_on_done(item: Item) -> None:
        if item.filename == "loud" and item.state is ItemState.DONE:
            msg = "display broke"
            raise RuntimeError(msg)

    items = add_images(registry, "loud", "quiet", "later")
    orchestrator = make_orchestrator(
        registry,
        store,
        adapter,
        batch_size=2,
        on_update=explode_on_done,
    )

    report = await orchestrator.process_all(ModelId.GPT_4O)

    assert report.groups == 2
    assert [item.state for item in items] == [ItemState.DONE] * 3
    assert_item_invariants(items)


@pytest.mark.asyncio
async def test_item_claimed_by_retry_one_is_not_dispatched_again(
    registry: ItemRegistry,
    store: CredentialStore,
    credential: Credential,
) -> None:
    """An ERROR item retried while an earlier group runs is skipped by the batch."""
    adapter = GatedAdapter("first")
    first, failed = add_images(registry, "first", "failed")
    failed.begin_processing()
    failed.fail("earlier timeout")
    orchestrator = make_orchestrator(registry, store, adapter, batch_size=1)

    batch = asyncio.create_task(orchestrator.process_all(ModelId.GPT_4O))
    await adapter.waiting.wait()
    await orchestrator.retry_one(failed.id, ModelId.GPT_4O)
    assert failed.state is ItemState.DONE
    adapter.gate.set()
    report = await batch

    assert adapter.calls.count("failed") == 1
    assert report.groups == 2
    assert report.attempted == 1
    assert first.state is ItemState.DONE


@pytest.mark.asyncio
async def test_image_bytes_are_read_off_the_event_loop(
    registry: ItemRegistry,
    store: CredentialStore,
    credential: Credential,
    adapter: ScriptedAdapter,
) -> None:
    source = ThreadRecordingSource("photo")
    item = registry.add(source)
    orchestrator = make_orchestrator(registry, store, adapter)

    await orchestrator.process_all(ModelId.GPT_4O)

    assert item.state is ItemState.DONE
    assert source.read_threads
    assert threading.get_ident() not in source.read_threads
