"""Key-value setting store backed by Azure Blob Storage."""

from __future__ import annotations

import contextlib
import logging
from typing import TYPE_CHECKING, Protocol

from azure.core.exceptions import ResourceNotFoundError
from azure.storage.blob import BlobServiceClient

if TYPE_CHECKING:
    from pcloud_sync.config import AppConfig

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_CONTAINER = "pcloud-sync-state"
DEFAULT_SETTINGS_BLOB_PREFIX = "settings/"


class SettingStore(Protocol):
    """Minimal key-value store the sync target persists its auth token in."""

    def value(self, key: str) -> str | None: ...

    def set_value(self, key: str, value: str | None) -> None: ...


class BlobSettingStore:
    """Setting store keeping each key as a UTF-8 text blob.

    Writing None removes the key.
    """

    def __init__(
        self,
        storage_connection_string: str,
        container: str = DEFAULT_SETTINGS_CONTAINER,
        blob_prefix: str = DEFAULT_SETTINGS_BLOB_PREFIX,
    ) -> None:
        """Initialise the setting store.

        Args:
            storage_connection_string: Azure Storage connection string.
            container: Blob container name for settings.
            blob_prefix: Prefix for setting blob paths (e.g. "settings/").
        """
        self._blob_service = BlobServiceClient.from_connection_string(storage_connection_string)
        self._container = container
        self._blob_prefix = blob_prefix

    def _blob_client(self, key: str):  # type: ignore[no-untyped-def]
        container_client = self._blob_service.get_container_client(self._container)
        return container_client.get_blob_client(f"{self._blob_prefix}{key}")

    def value(self, key: str) -> str | None:
        """Return the stored value for ``key``, or None if it was never set."""
        try:
            data = self._blob_client(key).download_blob().readall()
        except ResourceNotFoundError:
            logger.info("[setting_store] no value stored; key:%s", key)
            return None
        return data.decode("utf-8")

    def set_value(self, key: str, value: str | None) -> None:
        """Store ``value`` under ``key``, creating the container if needed."""
        if value is None:
            with contextlib.suppress(ResourceNotFoundError):
                self._blob_client(key).delete_blob()
            logger.info("[setting_store] cleared; key:%s", key)
            return

        container_client = self._blob_service.get_container_client(self._container)
        with contextlib.suppress(Exception):
            container_client.create_container()
        container_client.get_blob_client(f"{self._blob_prefix}{key}").upload_blob(
            value.encode("utf-8"), overwrite=True
        )
        logger.info("[setting_store] stored; key:%s", key)


def setting_store_from_config(config: AppConfig) -> BlobSettingStore:
    """Construct a BlobSettingStore from application configuration.

    Args:
        config: Application configuration instance.

    Returns:
        Configured BlobSettingStore instance.
    """
    return BlobSettingStore(
        storage_connection_string=config.storage_connection_string,
        container=config.settings_container,
        blob_prefix=config.settings_blob_prefix,
    )
