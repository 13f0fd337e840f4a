"""
Credential store: provider secrets per model, with activation and usage accounting.

Activation policy is single-active: at most one credential per model is active, and
activating a credential deactivates every other credential of the same model.
"""

import json
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import UUID

from loguru import logger
from pydantic import TypeAdapter

from stock_tagger.config import CREDENTIALS_STORAGE_KEY
from stock_tagger.errors import CredentialNotFoundError
from stock_tagger.models import Credential, ModelId


_CREDENTIAL_LIST = TypeAdapter(list[Credential])


class KeyValueBackend(ABC):
    """Opaque persistence for JSON-compatible values under string keys."""

    @abstractmethod
    def load(self, key: str) -> Any | None:  # noqa: ANN401
        """Return the value stored under ``key``, or None."""

    @abstractmethod
    def save(self, key: str, value: Any) -> None:  # noqa: ANN401
        """Store ``value`` under ``key``."""


class MemoryBackend(KeyValueBackend):
    """Backend kept in a dict; used for tests and throwaway sessions."""

    def __init__(self) -> None:
        """Start empty."""
        self.data: dict[str, Any] = {}

    def load(self, key: str) -> Any | None:  # noqa: ANN401
        return self.data.get(key)

    def save(self, key: str, value: Any) -> None:  # noqa: ANN401
        self.data[key] = value


class JsonFileBackend(KeyValueBackend):
    """Backend storing a single JSON object file that maps keys to values."""

    def __init__(self, path: Path) -> None:
        """Use ``path``; the file and its folder are created on first save."""
        self.path = path

    def _read_all(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        content = self.path.read_text(encoding="utf-8")
        if not content.strip():
            return {}
        data = json.loads(content)
        if not isinstance(data, dict):
            msg = f"{self.path} does not contain a JSON object"
            raise ValueError(msg)  # noqa: TRY004
        return data

    def load(self, key: str) -> Any | None:  # noqa: ANN401
        return self._read_all().get(key)

    def save(self, key: str, value: Any) -> None:  # noqa: ANN401
        data = self._read_all()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        tmp_path.replace(self.path)


class CredentialStore:
    """Ordered credential records persisted under a fixed storage key."""

    def __init__(
        self,
        backend: KeyValueBackend,
        storage_key: str = CREDENTIALS_STORAGE_KEY,
    ) -> None:
        """Load any credentials already persisted in ``backend``."""
        self._backend = backend
        self._storage_key = storage_key
        raw = backend.load(storage_key)
        self._credentials: list[Credential] = (
            _CREDENTIAL_LIST.validate_python(raw) if raw else []
        )
        logger.debug("credentials_loaded", count=len(self._credentials))

    def _persist(self) -> None:
        self._backend.save(
            self._storage_key,
            _CREDENTIAL_LIST.dump_python(self._credentials, mode="json"),
        )

    def add(
        self,
        model: ModelId,
        secret: str,
        nickname: str | None = None,
        *,
        activate: bool = True,
    ) -> Credential:
        """
        Add a credential for ``model``.

        With ``activate`` (the default) the new credential becomes the model's active one.

        Raises:
            ValueError: the secret is blank.

        """
        secret = secret.strip()
        if not secret:
            msg = "secret must not be empty"
            raise ValueError(msg)
        credential = Credential(model=ModelId(model), secret=secret, nickname=nickname)
        self._credentials.append(credential)
        if activate:
            self._activate(credential)
        self._persist()
        logger.info(
            "credential_added",
            credential=credential.label,
            model=str(credential.model),
            active=credential.is_active,
        )
        return credential

    def get(self, credential_id: UUID) -> Credential:
        for credential in self._credentials:
            if credential.id == credential_id:
                return credential
        msg = f"No credential with id {credential_id}"
        raise CredentialNotFoundError(msg)

    def remove(self, credential_id: UUID) -> None:
        credential = self.get(credential_id)
        self._credentials.remove(credential)
        self._persist()
        logger.info("credential_removed", credential=credential.label, model=str(credential.model))

    def set_active(self, credential_id: UUID, active: bool) -> Credential:  # noqa: FBT001
        credential = self.get(credential_id)
        if active:
            self._activate(credential)
        else:
            credential.is_active = False
        self._persist()
        logger.info(
            "credential_activation_changed",
            credential=credential.label,
            model=str(credential.model),
            active=active,
        )
        return credential

    def _activate(self, credential: Credential) -> None:
        for other in self._credentials:
            if other.model == credential.model and other is not credential and other.is_active:
                other.is_active = False
                logger.debug("credential_deactivated", credential=other.label)
        credential.is_active = True

    def list(self, model: ModelId | None = None) -> list[Credential]:
        """Credentials in insertion order, optionally only those of ``model``."""
        return [
            credential
            for credential in self._credentials
            if model is None or credential.model == model
        ]

    def select(self, model: ModelId) -> Credential | None:
        """Return the active credential for ``model``, or None when there is none."""
        return next(
            (c for c in self._credentials if c.model == model and c.is_active),
            None,
        )

    def record_usage(self, credential_id: UUID) -> Credential:
        """Count one successful request against the credential."""
        credential = self.get(credential_id)
        credential.requests_made += 1
        credential.last_used_at = datetime.now(tz=UTC)
        self._persist()
        return credential
