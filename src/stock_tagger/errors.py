"""Exception taxonomy for batch tagging.

Batch-level errors propagate to the caller and leave every item untouched.
Per-item errors (``ItemProcessingError`` subclasses) are caught at the item boundary
and recorded on the item as its error message.
"""


class StockTaggerError(Exception):
    """Base class for all errors raised by stock_tagger."""


class CredentialRequiredError(StockTaggerError):
    """No active credential exists for the requested model."""

    def __init__(self, model: str) -> None:
        """Remember the model that has no usable credential."""
        super().__init__(f"API key required: add an active credential for {model}")
        self.model = model


class NoWorkItemsError(StockTaggerError):
    """Nothing is eligible for processing."""


class UnsupportedModelError(StockTaggerError):
    """No adapter is registered for the requested model."""


class ItemProcessingError(StockTaggerError):
    """Failure scoped to a single item; never aborts sibling items."""


class TransportFailureError(ItemProcessingError):
    """The provider could not be reached or answered with a non-success status."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        """Store the provider message and, when known, the HTTP status."""
        super().__init__(message)
        self.status_code = status_code


class MalformedResponseError(ItemProcessingError):
    """The provider reply does not contain usable structured metadata."""


class EncodingFailureError(ItemProcessingError):
    """The item's image content could not be read."""


class InvalidTransitionError(StockTaggerError):
    """An item state change not allowed by the lifecycle was requested."""


class ItemNotFoundError(StockTaggerError, KeyError):
    """No item with the given id is tracked by the registry."""

    def __str__(self) -> str:
        """Avoid KeyError's repr-quoting of the message."""
        return str(self.args[0]) if self.args else ""


class UploadRejectedError(StockTaggerError):
    """An upload was refused (no images, or too many at once)."""


class CredentialNotFoundError(StockTaggerError, KeyError):
    """No credential with the given id exists in the store."""

    def __str__(self) -> str:
        """Avoid KeyError's repr-quoting of the message."""
        return str(self.args[0]) if self.args else ""


class NothingToExportError(StockTaggerError):
    """No processed item is available for export."""
