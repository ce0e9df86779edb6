"""Key-value persistence backends shared by the cache stores."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from researchlens.config import Settings, settings
from researchlens.services import logger as log_service

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class PersistenceBackend(Protocol):
    def load(self, namespace: str) -> str | None: ...

    def save(self, namespace: str, payload: str) -> None: ...

    def clear(self, namespace: str) -> None: ...


class InMemoryBackend:
    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def load(self, namespace: str) -> str | None:
        return self._data.get(namespace)

    def save(self, namespace: str, payload: str) -> None:
        self._data[namespace] = payload

    def clear(self, namespace: str) -> None:
        self._data.pop(namespace, None)


class JsonFileBackend:
    """One JSON document per namespace under ``root``."""

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, namespace: str) -> Path:
        return self.root / f"{namespace}.json"

    def load(self, namespace: str) -> str | None:
        path = self._path(namespace)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def save(self, namespace: str, payload: str) -> None:
        path = self._path(namespace)
        tmp_path = path.parent / f"{path.name}.tmp"
        tmp_path.write_text(payload, encoding="utf-8")
        os.replace(tmp_path, path)

    def clear(self, namespace: str) -> None:
        self._path(namespace).unlink(missing_ok=True)


def build_backend(config: Settings | None = None) -> PersistenceBackend:
    config = config or settings
    backend = config.storage_backend.lower().strip()
    if backend == "memory":
        return InMemoryBackend()
    if backend == "file":
        return JsonFileBackend(config.storage_dir)
    raise ValueError(f"Unsupported STORAGE_BACKEND: {config.storage_backend}")


def load_payload(
    backend: PersistenceBackend,
    namespace: str,
    model: type[PayloadT],
    *,
    version: int,
) -> PayloadT | None:
    """Load and validate a persisted payload.

    Unreadable, invalid or version-mismatched payloads are logged and
    reported as ``None`` so the caller starts from an empty store.
    """
    try:
        raw = backend.load(namespace)
    except (OSError, ValueError) as exc:
        log_service.log_cache_operation(namespace, "load", "*", "failed", error=str(exc))
        return None
    if raw is None:
        return None

    try:
        payload = model.model_validate_json(raw)
    except ValidationError as exc:
        log_service.log_cache_operation(
            namespace,
            "load",
            "*",
            "reset",
            error=f"invalid payload: {exc.error_count()} validation errors",
        )
        return None

    stored_version = getattr(payload, "schema_version", None)
    if stored_version != version:
        log_service.log_cache_operation(
            namespace,
            "load",
            "*",
            "reset",
            error=f"schema version {stored_version} != {version}",
        )
        return None
    return payload


def save_payload(backend: PersistenceBackend, namespace: str, payload: BaseModel) -> None:
    try:
        backend.save(namespace, payload.model_dump_json())
    except (OSError, TypeError, ValueError) as exc:
        log_service.log_cache_operation(namespace, "save", "*", "failed", error=str(exc))
