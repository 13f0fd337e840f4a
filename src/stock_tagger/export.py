"""CSV export of processed items in the stock-agency upload layout."""

import csv
import io
from collections.abc import Iterable
from pathlib import Path

from loguru import logger

from stock_tagger.errors import NothingToExportError
from stock_tagger.items import Item, ItemState


CSV_COLUMNS = ("Filename", "Title", "Keywords", "Category")
KEYWORD_SEPARATOR = ", "


def _rows(items: Iterable[Item]) -> list[tuple[str, str, str, str]]:
    return [
        (
            item.filename,
            item.metadata.title,
            KEYWORD_SEPARATOR.join(item.metadata.keywords),
            item.metadata.category,
        )
        for item in items
        if item.state is ItemState.DONE and item.metadata is not None
    ]


def generate_csv(items: Iterable[Item]) -> str:
    """
    Render DONE items as CSV text; other items are left out.

    Every field is quoted and keywords are joined with ``", "``.
    """
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL)
    writer.writerow(CSV_COLUMNS)
    writer.writerows(_rows(items))
    return buf.getvalue()


def write_csv(items: Iterable[Item], path: Path) -> int:
    """
    Write DONE items to ``path`` and return the number of rows written.

    Raises:
        NothingToExportError: no item is DONE.

    """
    rows = _rows(items)
    if not rows:
        msg = "No data to export: process some images first"
        raise NothingToExportError(msg)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as fh:
        writer = csv.writer(fh, quoting=csv.QUOTE_ALL)
        writer.writerow(CSV_COLUMNS)
        writer.writerows(rows)
    logger.info("csv_exported", file=str(path), rows=len(rows))
    return len(rows)
