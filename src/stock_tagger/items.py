"""Tracked items and their processing lifecycle."""

from dataclasses import dataclass, field
from enum import StrEnum
from uuid import UUID, uuid4

from stock_tagger.errors import InvalidTransitionError
from stock_tagger.images import ImageSource
from stock_tagger.models import Metadata


class ItemState(StrEnum):
    """Lifecycle states of an item."""

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


ELIGIBLE_STATES = frozenset({ItemState.PENDING, ItemState.ERROR})


@dataclass(eq=False)
class Item:
    """
    One uploaded image tracked through processing.

    ``metadata`` is set exactly when the item is DONE and ``error_message`` exactly when it is
    ERROR. Only the transition methods below change state, so the invariant holds at every step.
    """

    source: ImageSource
    id: UUID = field(default_factory=uuid4)
    state: ItemState = ItemState.PENDING
    metadata: Metadata | None = None
    error_message: str | None = None

    @property
    def filename(self) -> str:
        return self.source.name

    def begin_processing(self, *, allow_done: bool = False) -> None:
        """
        Move to PROCESSING, clearing any earlier result or error.

        DONE items are only re-processed when ``allow_done`` is set.

        Raises:
            InvalidTransitionError: the item is already processing, or DONE without allow_done.

        """
        if self.state is ItemState.PROCESSING or (
            self.state is ItemState.DONE and not allow_done
        ):
            msg = f"Cannot start processing {self.filename}: item is {self.state}"
            raise InvalidTransitionError(msg)
        self.state = ItemState.PROCESSING
        self.metadata = None
        self.error_message = None

    def complete(self, metadata: Metadata) -> None:
        self._require_processing("complete")
        self.state = ItemState.DONE
        self.metadata = metadata

    def fail(self, message: str) -> None:
        self._require_processing("fail")
        self.state = ItemState.ERROR
        self.error_message = message or "Unknown error"

    def _require_processing(self, action: str) -> None:
        if self.state is not ItemState.PROCESSING:
            msg = f"Cannot {action} {self.filename}: item is {self.state}"
            raise InvalidTransitionError(msg)
