"""Application configuration loaded from environment variables."""

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class AppConfig:
    """Centralized application configuration.

    Required fields have no defaults and will cause a KeyError at startup
    if the corresponding environment variable is missing.
    """

    # Required: no defaults, fail at startup if missing
    client_id: str
    client_secret: str
    storage_connection_string: str

    # Defaults provided, overridable via env
    settings_container: str = "pcloud-sync-state"
    settings_blob_prefix: str = "settings/"
    app_name: str = "pcloud-sync"
    is_public: bool = False


def load_config() -> AppConfig:
    """Construct an AppConfig from environment variables.

    Required environment variables:
        PCS_CLIENT_ID: pCloud application client ID.
        PCS_CLIENT_SECRET: pCloud application client secret.
        AzureWebJobsStorage: Azure Storage connection string for settings.

    Optional environment variables (with defaults):
        PCS_SETTINGS_CONTAINER: Blob container for persisted settings.
        PCS_SETTINGS_BLOB_PREFIX: Blob path prefix for setting keys.
        PCS_APP_NAME: Application name sent in the User-Agent header.
        PCS_IS_PUBLIC: "true" for public (mobile/desktop) clients (default: false).

    Returns:
        Configured AppConfig instance.
    """
    return AppConfig(
        client_id=os.environ["PCS_CLIENT_ID"],
        client_secret=os.environ["PCS_CLIENT_SECRET"],
        storage_connection_string=os.environ["AzureWebJobsStorage"],  # noqa: SIM112
        settings_container=os.environ.get("PCS_SETTINGS_CONTAINER", "pcloud-sync-state"),
        settings_blob_prefix=os.environ.get("PCS_SETTINGS_BLOB_PREFIX", "settings/"),
        app_name=os.environ.get("PCS_APP_NAME", "pcloud-sync"),
        is_public=os.environ.get("PCS_IS_PUBLIC", "false").lower() == "true",
    )
