"""Key-value backends for session credential records.

Two backends implement the ``KeyValueStorage`` port:

  - ``InMemoryKeyValueStorage``: a dict owned by the process.  The default,
    and what the tests use.
  - ``VaultKeyValueStorage``: one Vault KV v2 secret per session under a
    configurable path prefix.  Records are still ephemeral: they are deleted
    (metadata and all versions) when the session closes.

Backends translate their own failures into ``StorageReadError`` /
``StorageWriteError`` so callers handle one taxonomy.
"""

from __future__ import annotations

import asyncio
import logging

import hvac

logger = logging.getLogger(__name__)

_VALUE_FIELD = "value"


class StorageError(Exception):
    """Base class for key-value storage failures."""


class StorageReadError(StorageError):
    """Raised when a record cannot be read."""


class StorageWriteError(StorageError):
    """Raised when a record cannot be written or deleted."""


class InMemoryKeyValueStorage:
    """Process-local storage."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class VaultKeyValueStorage:
    """Stores each record as a KV v2 secret ``{path_prefix}/{key}``.

    hvac is synchronous, so every call runs in a worker thread to keep the
    event loop free for other contexts' handlers.
    """

    def __init__(
        self,
        vault_addr: str,
        token: str,
        mount: str = "secret",
        path_prefix: str = "tab-isolation/sessions",
    ) -> None:
        self._client = hvac.Client(url=vault_addr, token=token)
        self._mount = mount
        self._prefix = path_prefix.strip("/")

    def _path(self, key: str) -> str:
        return f"{self._prefix}/{key}"

    async def get(self, key: str) -> str | None:
        return await asyncio.to_thread(self._read, key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._write, key, value)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete, key)

    # -- private helpers -----------------------------------------------------

    def _read(self, key: str) -> str | None:
        try:
            response = self._client.secrets.kv.v2.read_secret_version(
                path=self._path(key),
                mount_point=self._mount,
                raise_on_deleted_version=True,
            )
        except hvac.exceptions.InvalidPath:
            return None
        except hvac.exceptions.VaultError as exc:
            raise StorageReadError(f"Vault read failed for {key}: {exc}") from exc
        return response["data"]["data"].get(_VALUE_FIELD)

    def _write(self, key: str, value: str) -> None:
        try:
            self._client.secrets.kv.v2.create_or_update_secret(
                path=self._path(key),
                secret={_VALUE_FIELD: value},
                mount_point=self._mount,
            )
        except hvac.exceptions.VaultError as exc:
            raise StorageWriteError(f"Vault write failed for {key}: {exc}") from exc

    def _delete(self, key: str) -> None:
        try:
            self._client.secrets.kv.v2.delete_metadata_and_all_versions(
                path=self._path(key),
                mount_point=self._mount,
            )
        except hvac.exceptions.InvalidPath:
            logger.debug("Vault record %s already absent", key)
        except hvac.exceptions.VaultError as exc:
            raise StorageWriteError(f"Vault delete failed for {key}: {exc}") from exc
