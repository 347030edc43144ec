"""pCloud sync target: wires the API client, the filesystem driver and persisted auth."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from pcloud_sync.fs.driver import PCloudFsDriver
from pcloud_sync.pcloud.client import PCloudAuthError, PCloudClient, pcloud_client_from_config
from pcloud_sync.pcloud.models import AuthToken
from pcloud_sync.sync.settings import SettingStore, setting_store_from_config

if TYPE_CHECKING:
    from pcloud_sync.config import AppConfig

logger = logging.getLogger(__name__)

SYNC_TARGET_ID = 11
SYNC_TARGET_NAME = "pcloud"
SYNC_TARGET_LABEL = "pCloud"

ErrorReporter = Callable[[Exception], None]


def auth_setting_key(sync_target_id: int = SYNC_TARGET_ID) -> str:
    return f"sync.{sync_target_id}.auth"


class PCloudSyncTarget:
    """Owns the PCloudClient for one sync target and persists its auth token."""

    def __init__(
        self,
        client_factory: Callable[[], PCloudClient],
        settings: SettingStore,
        error_reporter: ErrorReporter | None = None,
    ) -> None:
        """Initialise the sync target.

        Args:
            client_factory: Builds the API client on first use.
            settings: Key-value store holding the serialized auth token.
            error_reporter: Optional callback receiving errors raised while
                starting a synchronization.
        """
        self._client_factory = client_factory
        self._settings = settings
        self._error_reporter = error_reporter
        self._api: PCloudClient | None = None
        self._file_api: PCloudFsDriver | None = None

    @staticmethod
    def id() -> int:
        return SYNC_TARGET_ID

    @staticmethod
    def target_name() -> str:
        return SYNC_TARGET_NAME

    @staticmethod
    def label() -> str:
        return SYNC_TARGET_LABEL

    def api(self) -> PCloudClient:
        """Return the API client, creating it and loading the persisted token on first call."""
        if self._api is not None:
            return self._api

        api = self._client_factory()
        api.subscribe_auth_refreshed(self._save_auth)
        token = self._load_auth()
        if token is not None:
            api.set_auth(token)
        self._api = api
        return api

    def _load_auth(self) -> AuthToken | None:
        raw = self._settings.value(auth_setting_key())
        if not raw:
            return None
        try:
            return AuthToken.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("[load_auth] could not parse persisted auth token; error:%s", exc)
            return None

    def _save_auth(self, token: AuthToken | None) -> None:
        logger.info("[save_auth] saving updated pCloud auth; authenticated:%s", token is not None)
        value = json.dumps(token.to_dict()) if token is not None else None
        self._settings.set_value(auth_setting_key(), value)

    def is_authenticated(self) -> bool:
        return self.api().is_authenticated

    def file_api(self) -> PCloudFsDriver:
        if self._file_api is None:
            self._file_api = PCloudFsDriver(self.api())
        return self._file_api

    def init_synchronizer(self) -> PCloudFsDriver:
        """Return the driver the synchronizer runs against.

        Raises:
            PCloudAuthError: If no auth token is available.
        """
        try:
            if not self.is_authenticated():
                raise PCloudAuthError("User is not authenticated")
            return self.file_api()
        except Exception as exc:
            if self._error_reporter is not None:
                self._error_reporter(exc)
            raise


def sync_target_from_config(config: AppConfig) -> PCloudSyncTarget:
    """Construct a PCloudSyncTarget from application configuration.

    Args:
        config: Application configuration instance.

    Returns:
        Configured PCloudSyncTarget instance.
    """
    return PCloudSyncTarget(
        client_factory=lambda: pcloud_client_from_config(config),
        settings=setting_store_from_config(config),
    )
