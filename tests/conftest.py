"""Shared fixtures: in-memory stores, tiny images and a scripted model adapter."""

import asyncio
import json
from pathlib import Path

import pytest
from PIL import Image

from stock_tagger.adapters import ModelAdapter
from stock_tagger.credentials import CredentialStore, MemoryBackend
from stock_tagger.images import ImagePayload, MemoryImageSource
from stock_tagger.items import Item, ItemState
from stock_tagger.models import Credential, ModelId
from stock_tagger.registry import ItemRegistry


def reply_for(name: str) -> str:
    """A chatty but valid model reply whose title names the image."""
    payload = {"title": f"Photo {name}", "keywords": ["stock", name], "category": "Nature"}
    return f"Here is the metadata: {json.dumps(payload)} Hope it helps!"


class ScriptedAdapter(ModelAdapter):
    """
    Adapter answering from a script keyed by image name.

    Memory sources created by ``add_images`` carry their name as content, so the adapter can
    tell images apart. Script values are reply strings or exceptions to raise. With
    ``rendezvous`` set, no call returns before that many calls are in flight together.
    """

    provider_label = "Scripted"

    def __init__(
        self,
        script: dict[str, str | Exception] | None = None,
        *,
        rendezvous: int = 0,
    ) -> None:
        super().__init__("scripted-model")
        self.script = script or {}
        self.rendezvous = rendezvous
        self._all_arrived = asyncio.Event()
        self.calls: list[str] = []
        self.credentials_used: list[Credential] = []
        self.events: list[tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def invoke(self, image: ImagePayload, prompt: str, credential: Credential) -> str:
        name = image.data.decode()
        self.calls.append(name)
        self.credentials_used.append(credential)
        self.events.append(("start", name))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        if self.in_flight >= self.rendezvous:
            self._all_arrived.set()
        try:
            await self._all_arrived.wait()
            await asyncio.sleep(0)
            outcome = self.script.get(name, reply_for(name))
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.in_flight -= 1
            self.events.append(("end", name))


def add_images(registry: ItemRegistry, *names: str) -> list[Item]:
    return [registry.add(MemoryImageSource(name, name.encode(), "image/png")) for name in names]


def assert_item_invariants(items: list[Item]) -> None:
    for item in items:
        assert (item.state is ItemState.DONE) == (item.metadata is not None)
        assert (item.state is ItemState.ERROR) == (item.error_message is not None)


@pytest.fixture
def registry() -> ItemRegistry:
    return ItemRegistry()


@pytest.fixture
def store() -> CredentialStore:
    return CredentialStore(MemoryBackend())


@pytest.fixture
def credential(store: CredentialStore) -> Credential:
    return store.add(ModelId.GPT_4O, "sk-test-secret-0001", "main")


@pytest.fixture
def adapter() -> ScriptedAdapter:
    return ScriptedAdapter()


@pytest.fixture
def image_dir(tmp_path: Path) -> Path:
    """Folder with two small real images and one text file."""
    folder = tmp_path / "shoot"
    folder.mkdir()
    Image.new("RGB", (8, 8), (200, 30, 30)).save(folder / "barn.jpg", format="JPEG")
    Image.new("RGB", (8, 8), (30, 200, 30)).save(folder / "field.png", format="PNG")
    (folder / "notes.txt").write_text("not an image")
    return folder
