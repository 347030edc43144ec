"""Integration tests against the real pCloud API.

These tests require a real access token and are skipped unless the
PCS_ACCESS_TOKEN environment variable is set. PCS_API_HOSTNAME selects the
data region (default: api.pcloud.com).
"""

import os

import pytest

pytestmark = pytest.mark.skipif(
    not os.getenv("PCS_ACCESS_TOKEN"),
    reason="Real pCloud credentials not available",
)


def test_list_and_stat_root_real() -> None:
    """List the account root and stat it without raising."""
    from pcloud_sync.fs.driver import PCloudFsDriver
    from pcloud_sync.pcloud.client import PCloudClient
    from pcloud_sync.pcloud.models import AuthToken

    client = PCloudClient(client_id=os.getenv("PCS_CLIENT_ID", ""), client_secret="")
    client.set_auth(
        AuthToken(
            access_token=os.environ["PCS_ACCESS_TOKEN"],
            hostname=os.getenv("PCS_API_HOSTNAME", "api.pcloud.com"),
        )
    )
    driver = PCloudFsDriver(client)

    result = driver.list("")
    root = driver.stat("")

    assert result.has_more is False
    assert root is not None
    assert root.is_dir is True
