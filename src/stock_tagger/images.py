"""Image sources tracked by items, and their conversion into request payloads."""

import base64
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import cached_property
from pathlib import Path

from loguru import logger
from PIL import Image, UnidentifiedImageError

from stock_tagger.errors import EncodingFailureError


DEFAULT_MEDIA_TYPE = "image/jpeg"


class ImageSource(ABC):
    """Opaque handle to the binary content of one uploaded image."""

    name: str
    media_type: str

    @abstractmethod
    def read(self) -> bytes:
        """Return the raw image bytes."""

    def release(self) -> None:  # noqa: B027
        """Drop any transient resource held for this image."""


class FileImageSource(ImageSource):
    """Image read lazily from disk on every request."""

    def __init__(self, path: Path, media_type: str = DEFAULT_MEDIA_TYPE) -> None:
        """Point at ``path``; nothing is read until :meth:`read`."""
        self.path = path
        self.name = path.name
        self.media_type = media_type

    def read(self) -> bytes:
        return self.path.read_bytes()

    def __repr__(self) -> str:
        return f"FileImageSource({str(self.path)!r}, {self.media_type!r})"


class MemoryImageSource(ImageSource):
    """Image held in memory, e.g. received through an upload form."""

    def __init__(self, name: str, data: bytes, media_type: str = DEFAULT_MEDIA_TYPE) -> None:
        """Keep ``data`` until :meth:`release` is called."""
        self.name = name
        self.media_type = media_type
        self._data: bytes | None = data

    def read(self) -> bytes:
        if self._data is None:
            msg = f"{self.name} has been released"
            raise OSError(msg)
        return self._data

    def release(self) -> None:
        self._data = None

    def __repr__(self) -> str:
        return f"MemoryImageSource({self.name!r}, {self.media_type!r})"


def sniff_media_type(path: Path) -> str | None:
    """
    Identify an image file by its header and return its MIME type.

    Pillow only parses the header here; pixel data is never decoded.

    Examples:
        >>> sniff_media_type(Path("notes.txt"))  # doctest: +SKIP
        None
        >>> sniff_media_type(Path("barn.jpg"))  # doctest: +SKIP
        'image/jpeg'

    """
    try:
        with Image.open(path) as img:
            image_format = img.format
    except (UnidentifiedImageError, OSError) as exc:
        logger.debug("image_type_unidentified", file=path.name, error=str(exc))
        return None
    if not image_format:
        return None
    return Image.MIME.get(image_format, f"image/{image_format.lower()}")


@dataclass(frozen=True)
class ImagePayload:
    """Image bytes ready to be attached to a provider request."""

    data: bytes
    media_type: str

    @cached_property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @property
    def data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.base64}"


def encode_image(source: ImageSource) -> ImagePayload:
    """
    Read an item's image into a payload.

    Raises:
        EncodingFailureError: the content could not be read.

    """
    try:
        data = source.read()
    except OSError as exc:
        msg = f"Could not read {source.name}: {exc}"
        raise EncodingFailureError(msg) from exc
    if not data:
        msg = f"Could not read {source.name}: file is empty"
        raise EncodingFailureError(msg)
    logger.debug("image_encoded", size_kb=len(data) // 1024, media_type=source.media_type)
    return ImagePayload(data=data, media_type=source.media_type)
