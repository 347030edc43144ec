"""Smoke tests — sync target and driver end-to-end against the fake provider."""

import json
from unittest.mock import MagicMock

from pcloud_sync.fs.models import ListResult
from pcloud_sync.pcloud.models import AuthToken
from pcloud_sync.sync.target import PCloudSyncTarget
from tests.fake_pcloud import FakePCloud


def test_sync_round_trip(fake_pcloud: FakePCloud) -> None:
    """Empty listing, deep upload, read back, delete and stat."""
    settings = MagicMock()
    settings.value.return_value = json.dumps(
        AuthToken(access_token="fake-token", hostname="eapi.pcloud.test").to_dict()
    )
    client = fake_pcloud.client()
    client.set_auth(None)
    target = PCloudSyncTarget(client_factory=lambda: client, settings=settings)

    driver = target.init_synchronizer()

    assert driver.list("") == ListResult(items=[], has_more=False)

    driver.put("/a/b/c.txt", "hello from c")
    assert driver.stat("/a") is not None
    assert driver.stat("/a/b") is not None
    assert driver.get("/a/b/c.txt") == "hello from c"

    driver.delete("/a/b/c.txt")
    assert driver.stat("/a/b/c.txt") is None
    assert driver.get("/a/b/c.txt") is None
