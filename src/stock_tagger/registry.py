"""In-memory registry of tracked items; the single source of truth for display and export."""

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from uuid import UUID

from loguru import logger

from stock_tagger.config import MAX_UPLOAD_FILES
from stock_tagger.errors import ItemNotFoundError, UploadRejectedError
from stock_tagger.images import FileImageSource, ImageSource, sniff_media_type
from stock_tagger.items import Item, ItemState


@dataclass(frozen=True)
class StatusCounts:
    """Per-state item counts for progress display."""

    pending: int = 0
    processing: int = 0
    done: int = 0
    error: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.done + self.error

    @property
    def progress(self) -> float:
        """Percentage of items that are DONE (0 for an empty registry)."""
        return self.done / self.total * 100 if self.total else 0.0


class ItemRegistry:
    """Ordered collection of items keyed by id."""

    def __init__(self, max_upload_files: int = MAX_UPLOAD_FILES) -> None:
        """Create an empty registry accepting up to ``max_upload_files`` images per upload."""
        self.max_upload_files = max_upload_files
        self._items: dict[UUID, Item] = {}

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Item]:
        return iter(list(self._items.values()))

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def add(self, source: ImageSource) -> Item:
        item = Item(source=source)
        self._items[item.id] = item
        logger.debug("item_added", item_id=str(item.id), file=source.name)
        return item

    def add_paths(self, paths: Iterable[Path]) -> list[Item]:
        """
        Register image files as new PENDING items, in the given order.

        Files that are not recognisable images are skipped. Nothing is added when the upload
        is rejected.

        Raises:
            UploadRejectedError: no valid image among ``paths``, or more than
                ``max_upload_files`` images at once.

        """
        sources: list[FileImageSource] = []
        for path in paths:
            media_type = sniff_media_type(path)
            if media_type is None:
                logger.warning("skipping_non_image_file", file=str(path))
                continue
            sources.append(FileImageSource(path, media_type))

        if not sources:
            msg = "No valid images: please upload image files only"
            raise UploadRejectedError(msg)
        if len(sources) > self.max_upload_files:
            msg = f"Too many files: maximum {self.max_upload_files} images allowed at once"
            raise UploadRejectedError(msg)

        added = [self.add(source) for source in sources]
        logger.info("images_uploaded", count=len(added))
        return added

    def get(self, item_id: UUID) -> Item:
        try:
            return self._items[item_id]
        except KeyError:
            msg = f"No item with id {item_id}"
            raise ItemNotFoundError(msg) from None

    def remove(self, item_id: UUID) -> None:
        item = self.get(item_id)
        item.source.release()
        del self._items[item_id]
        logger.debug("item_removed", item_id=str(item_id))

    def clear(self) -> None:
        """Remove every item and release its image resource."""
        for item in self._items.values():
            item.source.release()
        count = len(self._items)
        self._items.clear()
        logger.info("registry_cleared", count=count)

    def items(self) -> list[Item]:
        return list(self._items.values())

    def with_state(self, *states: ItemState) -> list[Item]:
        return [item for item in self._items.values() if item.state in states]

    def done_items(self) -> list[Item]:
        return self.with_state(ItemState.DONE)

    def status_counts(self) -> StatusCounts:
        counts = dict.fromkeys(ItemState, 0)
        for item in self._items.values():
            counts[item.state] += 1
        return StatusCounts(
            pending=counts[ItemState.PENDING],
            processing=counts[ItemState.PROCESSING],
            done=counts[ItemState.DONE],
            error=counts[ItemState.ERROR],
        )
