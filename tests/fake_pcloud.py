"""In-memory fake of the pCloud API, served through httpx.MockTransport."""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from pcloud_sync.pcloud.client import PCloudClient
from pcloud_sync.pcloud.models import AuthToken

FAKE_HOSTNAME = "eapi.pcloud.test"
BASE_TIME = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

FILE_NOT_FOUND = {"result": 2002, "error": "A component of parent directory does not exist."}
DIRECTORY_NOT_FOUND = {"result": 2005, "error": "Directory does not exist."}


@dataclass(eq=False)
class Node:
    name: str
    isfolder: bool
    folderid: int | None = None
    fileid: int | None = None
    parent: Node | None = None
    content: bytes = b""
    created: str = ""
    modified: str = ""
    children: dict[str, Node] = field(default_factory=dict)


class FakePCloud:
    """Enough of the pCloud API to exercise the driver end to end.

    ``calls`` records every (command, params) pair received. ``overrides``
    maps a command to a canned JSON payload returned instead of the real
    behaviour.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._fds = itertools.count(1)
        self._minutes = itertools.count(0)
        self.root = Node(name="/", isfolder=True, folderid=0, created=self._now(), modified=self._now())
        self.folders: dict[int, Node] = {0: self.root}
        self.open_fds: dict[int, Node] = {}
        self.calls: list[tuple[str, dict[str, str]]] = []
        self.overrides: dict[str, dict[str, Any]] = {}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _now(self) -> str:
        moment = BASE_TIME + timedelta(minutes=next(self._minutes))
        return moment.strftime("%a, %d %b %Y %H:%M:%S +0000")

    def count(self, command: str) -> int:
        return sum(1 for name, _ in self.calls if name == command)

    def find(self, path: str) -> Node | None:
        node = self.root
        for part in [p for p in path.split("/") if p]:
            if not node.isfolder or part not in node.children:
                return None
            node = node.children[part]
        return node

    def add_folder(self, parent: Node, name: str) -> Node:
        folder = Node(
            name=name,
            isfolder=True,
            folderid=next(self._ids),
            parent=parent,
            created=self._now(),
            modified=self._now(),
        )
        parent.children[name] = folder
        self.folders[folder.folderid] = folder  # type: ignore[index]
        return folder

    def add_file(self, parent: Node, name: str, content: bytes = b"") -> Node:
        node = Node(
            name=name,
            isfolder=False,
            fileid=next(self._ids),
            parent=parent,
            content=content,
            created=self._now(),
            modified=self._now(),
        )
        parent.children[name] = node
        return node

    def metadata(
        self,
        node: Node,
        recursive: bool = False,
        deleted: bool = False,
        include_contents: bool = True,
    ) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": node.name,
            "isfolder": node.isfolder,
            "created": node.created,
            "modified": node.modified,
            "size": len(node.content),
            "parentfolderid": node.parent.folderid if node.parent else None,
        }
        if deleted:
            data["isdeleted"] = True
        if node.isfolder:
            data["folderid"] = node.folderid
            if include_contents:
                data["contents"] = [
                    self.metadata(c, recursive=True, include_contents=recursive)
                    for c in node.children.values()
                ]
        else:
            data["fileid"] = node.fileid
        return data

    def _split(self, path: str) -> tuple[Node | None, str]:
        parent_path, _, name = path.rstrip("/").rpartition("/")
        return self.find(parent_path), name

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        command = request.url.path.lstrip("/")
        params = dict(request.url.params)
        self.calls.append((command, params))
        if command in self.overrides:
            return httpx.Response(200, json=self.overrides[command])
        method = getattr(self, f"_cmd_{command}")
        result = method(params, request)
        if isinstance(result, bytes):
            return httpx.Response(200, content=result)
        return httpx.Response(200, json=result)

    def client(self) -> PCloudClient:
        client = PCloudClient("client-id", "client-secret", transport=httpx.MockTransport(self.handler))
        client.set_auth(AuthToken(access_token="fake-token", hostname=FAKE_HOSTNAME))
        return client

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _cmd_listfolder(self, params: dict[str, str], request: httpx.Request) -> dict[str, Any]:
        node = self.find(params["path"])
        if node is None or not node.isfolder:
            return DIRECTORY_NOT_FOUND
        return {"result": 0, "metadata": self.metadata(node, recursive=params.get("recursive") == "1")}

    def _cmd_stat(self, params: dict[str, str], request: httpx.Request) -> dict[str, Any]:
        node = self.find(params["path"])
        if node is None:
            return FILE_NOT_FOUND
        return {"result": 0, "metadata": self.metadata(node, include_contents=False)}

    def _cmd_createfolderifnotexists(
        self, params: dict[str, str], request: httpx.Request
    ) -> dict[str, Any]:
        parent = self.folders.get(int(params["folderid"]))
        if parent is None:
            return DIRECTORY_NOT_FOUND
        name = params["name"]
        folder = parent.children.get(name) or self.add_folder(parent, name)
        return {"result": 0, "created": True, "metadata": self.metadata(folder)}

    def _cmd_deletefile(self, params: dict[str, str], request: httpx.Request) -> dict[str, Any]:
        node = self.find(params["path"])
        if node is None or node.isfolder:
            return FILE_NOT_FOUND
        del node.parent.children[node.name]  # type: ignore[union-attr]
        return {"result": 0, "metadata": self.metadata(node, deleted=True)}

    def _cmd_file_open(self, params: dict[str, str], request: httpx.Request) -> dict[str, Any]:
        parent, name = self._split(params["path"])
        if parent is None:
            return FILE_NOT_FOUND
        node = parent.children.get(name)
        if node is None:
            if not int(params["flags"]) & 0x0040:
                return FILE_NOT_FOUND
            node = self.add_file(parent, name)
        fd = next(self._fds)
        self.open_fds[fd] = node
        return {"result": 0, "fd": fd, "fileid": node.fileid}

    def _cmd_file_size(self, params: dict[str, str], request: httpx.Request) -> dict[str, Any]:
        node = self.open_fds.get(int(params["fd"]))
        if node is None:
            return {"result": 1007, "error": "Invalid or closed file descriptor."}
        return {"result": 0, "size": len(node.content), "offset": 0}

    def _cmd_file_read(self, params: dict[str, str], request: httpx.Request) -> bytes:
        node = self.open_fds[int(params["fd"])]
        return node.content[: int(params["count"])]

    def _cmd_file_write(self, params: dict[str, str], request: httpx.Request) -> dict[str, Any]:
        node = self.open_fds[int(params["fd"])]
        node.content = request.read()
        node.modified = self._now()
        return {"result": 0, "bytes": len(node.content)}

    def _cmd_file_close(self, params: dict[str, str], request: httpx.Request) -> dict[str, Any]:
        self.open_fds.pop(int(params["fd"]), None)
        return {"result": 0}

    def _cmd_uploadfile(self, params: dict[str, str], request: httpx.Request) -> dict[str, Any]:
        folder = self.find(params["path"])
        if folder is None:
            return DIRECTORY_NOT_FOUND
        content = _multipart_file_content(request)
        node = self.add_file(folder, params["filename"], content)
        return {"result": 0, "fileids": [node.fileid], "metadata": [self.metadata(node)]}


def _multipart_file_content(request: httpx.Request) -> bytes:
    boundary = request.headers["content-type"].split("boundary=")[1].encode()
    for part in request.read().split(b"--" + boundary):
        headers, _, data = part.partition(b"\r\n\r\n")
        if b'name="file"' in headers:
            return data[: -len(b"\r\n")]
    return b""
