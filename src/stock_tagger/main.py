#!/usr/bin/env python3
"""
Stock Tagger: CLI app to generate stock photo titles, keywords and categories using AI.

Images are sent in concurrent groups to the selected vision model (Gemini, Claude, GPT-4o or a
local LM Studio/Ollama model). Results are tracked per image and exported as a CSV ready for
bulk upload to stock agencies (columns: Filename, Title, Keywords, Category).

Requirements:
 - An API key for the selected model, added with `stock-tagger keys add`.
 - For `local-vision`: an OpenAI-compatible server running a vision-language model.

"""
# ruff: noqa: PLR0913

import asyncio
import contextlib
import getpass
import sys
from datetime import UTC, datetime
from itertools import batched, chain
from pathlib import Path
from typing import Annotated, Literal
from uuid import UUID

import httpx
from cyclopts import App, Parameter, validators
from loguru import logger

from stock_tagger.adapters import build_adapters, check_local_model
from stock_tagger.config import (
    BATCH_SIZE,
    DEFAULT_CREDENTIALS_FILE,
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    LOCAL_VISION_BASE_URL,
    PACING_DELAY_SECONDS,
    REQUEST_TIMEOUT_SECONDS,
    LogLevel,
)
from stock_tagger.credentials import CredentialStore, JsonFileBackend
from stock_tagger.errors import (
    CredentialNotFoundError,
    CredentialRequiredError,
    NothingToExportError,
    NoWorkItemsError,
    TransportFailureError,
    UnsupportedModelError,
    UploadRejectedError,
)
from stock_tagger.export import write_csv
from stock_tagger.items import Item, ItemState
from stock_tagger.models import MODEL_SPECS, Credential, ModelId
from stock_tagger.orchestrator import BatchOrchestrator, BatchReport, ItemCallback
from stock_tagger.registry import ItemRegistry


ModelName = Literal[
    "gemini-2.0-flash",
    "claude-3-5-sonnet",
    "gpt-4o",
    "gpt-4o-mini",
    "local-vision",
]
CredentialsFile = Annotated[
    Path,
    Parameter(name=("--credentials-file",), help="JSON file holding the credential store"),
]

# Cyclopts app
__version__ = "0.1.0"
app = App(
    name="stock-tagger",
    version=__version__,
)
keys_app = App(name="keys", help="Manage provider API keys (one active key per model).")
app.command(keys_app)


def setup_logging(
    file_log_level: LogLevel = "DEBUG",
    console_log_level: LogLevel = "INFO",
    log_folder: Path = Path("logs"),
) -> None:
    """
    Configure Loguru for both console and file logging.

    Args:
        file_log_level: Log level for file (use 'OFF' to disable)
        console_log_level: Log level for console (use 'OFF' to disable)
        log_folder: Directory where log files are stored

    """
    logger.remove()

    if file_log_level != "OFF":
        log_folder.mkdir(parents=True, exist_ok=True)
        log_file = log_folder / Path(
            datetime.now(tz=UTC).strftime("%Y%m%d%H%M%S-stock_tagger.log"),
        )
        logger.add(
            log_file,
            level=file_log_level,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{name:<8}:{function:<25}:{line:>4} | "
                "{message:<40} | "
                "{extra}"
            ),
            rotation="500 MB",
            retention="10 days",
            compression="zip",
        )

    if console_log_level != "OFF":
        logger.add(
            sys.stderr,
            level=console_log_level,
            colorize=True,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <7}</level> | "
                "<level>{message:<40.50}</level> | "
                "<yellow>{extra}</yellow>"
            ),
        )


def _parse_extensions(image_extensions: str) -> set[str]:
    """
    Normalize comma-separated extensions into a set like {".jpg", ".png"}.

    Examples:
        >>> sorted(_parse_extensions("jpg, png ,WEBP"))
        ['.WEBP', '.jpg', '.png']

    """
    return {
        f".{ext.strip().lstrip('.')}"
        for ext in image_extensions.split(",")
        if ext.strip().lstrip(".")
    }


def _resolve_image_files(
    inputs: list[Path],
    ext_set: set[str],
    *,
    recursive: bool,
) -> list[Path]:
    """
    Resolve provided inputs into a list of files.

    - Directories are expanded by extension (honoring --recursive)
    - Explicit files are accepted as-is (extension filter not applied)
    - Order is preserved and duplicates removed
    """
    pattern = "**/*" if recursive else "*"

    files_from_dirs: list[Path] = []
    files_explicit: list[Path] = []

    for path in inputs:
        path_resolved = path
        with contextlib.suppress(OSError):
            path_resolved = path.resolve()
        if path_resolved.is_dir():
            for ext in sorted(ext_set):
                files_from_dirs.extend(sorted(path_resolved.glob(f"{pattern}{ext}")))
        elif path_resolved.is_file():
            files_explicit.append(path_resolved)
        else:
            logger.warning("input_not_file_or_dir", path=str(path))

    combined: list[Path] = []
    seen = set()
    for f in chain(files_explicit, files_from_dirs):
        key = str(f.resolve()) if f.exists() else str(f)
        if key not in seen:
            combined.append(f)
            seen.add(key)

    return combined


def _load_registry(image_files: list[Path]) -> ItemRegistry:
    """Register files in upload-sized chunks; chunks without any image are skipped."""
    registry = ItemRegistry()
    for chunk in batched(image_files, registry.max_upload_files):
        try:
            registry.add_paths(chunk)
        except UploadRejectedError as exc:
            logger.warning("upload_chunk_rejected", error=str(exc), files=len(chunk))
    return registry


def _progress_logger(registry: ItemRegistry) -> ItemCallback:
    def log_progress(item: Item) -> None:
        if item.state is ItemState.PROCESSING:
            return
        counts = registry.status_counts()
        logger.info(
            "item_progress",
            file=item.filename,
            state=str(item.state),
            progress=f"{counts.progress:.0f}%",
            done=counts.done,
            errors=counts.error,
            total=counts.total,
        )

    return log_progress


async def _run_batch(
    registry: ItemRegistry,
    store: CredentialStore,
    model: ModelId,
    *,
    batch_size: int,
    pacing_delay: float,
    temperature: float,
    max_tokens: int,
    retry_failed: bool,
) -> list[BatchReport]:
    async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS) as client:
        orchestrator = BatchOrchestrator(
            registry,
            store,
            build_adapters(client, temperature=temperature, max_tokens=max_tokens),
            batch_size=batch_size,
            pacing_delay=pacing_delay,
            on_update=_progress_logger(registry),
        )
        reports = [await orchestrator.process_all(model)]
        if retry_failed and registry.with_state(ItemState.ERROR):
            logger.info("retrying_failed_items", count=len(registry.with_state(ItemState.ERROR)))
            reports.append(await orchestrator.retry_failed(model))
        return reports


@app.command
def tag(
    inputs: Annotated[
        list[Path] | None,
        Parameter(
            name=("--input", "-i"),
            validator=validators.Path(exists=True),
            help="One or more paths: files and/or directories (repeat this option)",
        ),
    ] = None,
    *,
    model: Annotated[
        ModelName,
        Parameter(name=("--model", "-m"), help="AI model used to generate metadata"),
    ] = "gemini-2.0-flash",
    image_extensions: Annotated[
        str,
        Parameter(
            name=("--ext", "--extensions"),
            help="Comma-separated image file extensions to pick up from directories",
        ),
    ] = "jpg,jpeg,png,webp",
    recursive: Annotated[
        bool,
        Parameter(
            name=("--recursive", "-r"),
            help="Process files in subdirectories recursively",
        ),
    ] = False,
    output: Annotated[
        Path,
        Parameter(name=("--output", "-o"), help="CSV file receiving the generated metadata"),
    ] = Path("stock_metadata.csv"),
    batch_size: Annotated[
        int,
        Parameter(
            name=("--batch-size",),
            validator=validators.Number(gte=1),
            help="Number of images sent to the model concurrently",
        ),
    ] = BATCH_SIZE,
    pacing_delay: Annotated[
        float,
        Parameter(
            name=("--pacing-delay",),
            validator=validators.Number(gte=0),
            help="Seconds to wait between two groups of requests",
        ),
    ] = PACING_DELAY_SECONDS,
    retry_failed: Annotated[
        bool,
        Parameter(
            name=("--retry-failed",),
            negative="--no-retry-failed",
            help="Retry failed images once after the first pass",
        ),
    ] = True,
    temperature: Annotated[
        float,
        Parameter(name=("--temperature",), help="Sampling temperature (0.0-1.0)"),
    ] = DEFAULT_TEMPERATURE,
    max_tokens: Annotated[
        int,
        Parameter(name=("--max-tokens",), help="Maximum tokens to generate"),
    ] = DEFAULT_MAX_TOKENS,
    credentials_file: CredentialsFile = DEFAULT_CREDENTIALS_FILE,
    file_log_level: Annotated[
        LogLevel,
        Parameter(
            name="--file-log-level",
            help="Log level for file (use 'OFF' to disable)",
        ),
    ] = "DEBUG",
    log_folder: Annotated[
        Path,
        Parameter(
            name=("--log-folder",),
            help="Folder where log files are stored",
        ),
    ] = Path("logs"),
    console_log_level: Annotated[
        LogLevel,
        Parameter(
            name="--console-log-level",
            help="Log level for console (use 'OFF' to disable)",
        ),
    ] = "INFO",
) -> None:
    """
    Generate stock metadata for images and export it as CSV.

    Behavior:
    - Files are processed as is; directories use --ext (add --recursive for subfolders).
    - Images are sent --batch-size at a time, with --pacing-delay seconds between groups.
    - Failed images are retried once (disable with --no-retry-failed).
    - Processed images are written to --output.

    Exit status: returns 1 if no images are found, no API key is active for the model,
    or any image still fails after the retry pass.

    Examples:
        stock-tagger tag -i ./shoot --model gpt-4o-mini
        stock-tagger tag -i ./shoot -r --ext jpg,png -o ./adobe.csv

    """
    setup_logging(
        file_log_level=file_log_level,
        console_log_level=console_log_level,
        log_folder=log_folder,
    )
    model_id = ModelId(model)
    logger.info(
        "starting_stock_tagger",
        inputs=[str(p) for p in (inputs or [])],
        extensions=image_extensions,
        model=model,
        recursive=recursive,
        output=str(output),
        batch_size=batch_size,
        pacing_delay=pacing_delay,
        retry_failed=retry_failed,
        temperature=temperature,
        max_tokens=max_tokens,
    )

    if not inputs:
        logger.error("no_inputs_provided", hint="Pass one or more --input/-i paths")
        raise SystemExit(1)
    ext_set = _parse_extensions(image_extensions)
    if not ext_set:
        logger.error("no_valid_extensions_provided", raw_input=image_extensions)
        raise SystemExit(1)

    registry = _load_registry(_resolve_image_files(inputs, ext_set, recursive=recursive))
    if len(registry) == 0:
        logger.error("no_image_files_found", inputs=[str(p) for p in inputs])
        raise SystemExit(1)

    store = CredentialStore(JsonFileBackend(credentials_file))
    if model_id is ModelId.LOCAL_VISION:
        credential = store.select(model_id)
        try:
            check_local_model(
                LOCAL_VISION_BASE_URL,
                MODEL_SPECS[model_id].api_model,
                credential.secret if credential else None,
            )
        except TransportFailureError as exc:
            logger.error("local_model_check_failed", error=str(exc))
            raise SystemExit(1) from exc

    try:
        reports = asyncio.run(
            _run_batch(
                registry,
                store,
                model_id,
                batch_size=batch_size,
                pacing_delay=pacing_delay,
                temperature=temperature,
                max_tokens=max_tokens,
                retry_failed=retry_failed,
            ),
        )
    except (CredentialRequiredError, NoWorkItemsError, UnsupportedModelError) as exc:
        logger.error("batch_not_started", error=str(exc))
        raise SystemExit(1) from exc

    try:
        write_csv(registry.items(), output)
    except NothingToExportError as exc:
        logger.warning("nothing_exported", reason=str(exc))

    counts = registry.status_counts()
    failed = registry.with_state(ItemState.ERROR)
    logger.info(
        "processing_summary",
        total_files=counts.total,
        successful=counts.done,
        failed=counts.error,
        initial_failures=reports[0].failed,
        retry_successes=reports[1].succeeded if len(reports) > 1 else 0,
    )
    if failed:
        logger.error(
            "files_failed",
            files={item.filename: item.error_message for item in failed},
        )
        raise SystemExit(1)


@app.command
def models(credentials_file: CredentialsFile = DEFAULT_CREDENTIALS_FILE) -> None:
    """List supported models and whether an active API key is configured for each."""
    store = CredentialStore(JsonFileBackend(credentials_file))
    for spec in MODEL_SPECS.values():
        marker = "ready" if store.select(spec.id) else "API key required"
        print(f"{spec.id:<20} {spec.display_name:<20} {spec.provider:<10} {marker}")  # noqa: T201


def _find_credential(store: CredentialStore, ref: str) -> Credential:
    """Resolve a credential by full id, id prefix or nickname."""
    with contextlib.suppress(ValueError, CredentialNotFoundError):
        return store.get(UUID(ref))
    matches = [
        credential
        for credential in store.list()
        if str(credential.id).startswith(ref) or credential.nickname == ref
    ]
    if len(matches) != 1:
        logger.error("credential_reference_unresolved", ref=ref, matches=len(matches))
        raise SystemExit(1)
    return matches[0]


@keys_app.command(name="add")
def add_key(
    model: ModelName,
    secret: str | None = None,
    *,
    nickname: Annotated[str | None, Parameter(name=("--nickname", "-n"))] = None,
    activate: Annotated[bool, Parameter(negative="--inactive")] = True,
    credentials_file: CredentialsFile = DEFAULT_CREDENTIALS_FILE,
) -> None:
    """Store an API key for a model; prompts for the key when it is not given."""
    store = CredentialStore(JsonFileBackend(credentials_file))
    secret = secret or getpass.getpass(f"API key for {model}: ")
    try:
        credential = store.add(ModelId(model), secret, nickname, activate=activate)
    except ValueError as exc:
        logger.error("credential_rejected", error=str(exc))
        raise SystemExit(1) from exc
    print(f"Added {credential.label} ({credential.masked_secret}) for {model}")  # noqa: T201


@keys_app.command(name="list")
def list_keys(
    model: ModelName | None = None,
    *,
    credentials_file: CredentialsFile = DEFAULT_CREDENTIALS_FILE,
) -> None:
    """Show stored API keys (masked) with usage counters."""
    store = CredentialStore(JsonFileBackend(credentials_file))
    for credential in store.list(ModelId(model) if model else None):
        last_used = credential.last_used_at.isoformat() if credential.last_used_at else "never"
        print(  # noqa: T201
            f"{str(credential.id)[:8]}  {credential.model:<18} "
            f"{'active' if credential.is_active else 'inactive':<8} "
            f"{credential.masked_secret:<12} requests={credential.requests_made:<6} "
            f"last_used={last_used}  {credential.nickname or ''}",
        )


@keys_app.command(name="remove")
def remove_key(ref: str, *, credentials_file: CredentialsFile = DEFAULT_CREDENTIALS_FILE) -> None:
    """Delete an API key by id, id prefix or nickname."""
    store = CredentialStore(JsonFileBackend(credentials_file))
    store.remove(_find_credential(store, ref).id)


@keys_app.command(name="activate")
def activate_key(
    ref: str,
    *,
    credentials_file: CredentialsFile = DEFAULT_CREDENTIALS_FILE,
) -> None:
    """Make a key the active one for its model (other keys of that model are deactivated)."""
    store = CredentialStore(JsonFileBackend(credentials_file))
    store.set_active(_find_credential(store, ref).id, True)  # noqa: FBT003


@keys_app.command(name="deactivate")
def deactivate_key(
    ref: str,
    *,
    credentials_file: CredentialsFile = DEFAULT_CREDENTIALS_FILE,
) -> None:
    """Keep a key stored but stop using it."""
    store = CredentialStore(JsonFileBackend(credentials_file))
    store.set_active(_find_credential(store, ref).id, False)  # noqa: FBT003


if __name__ == "__main__":
    app()
