"""Filesystem driver mapping stat/list/get/put/mkdir/delete/delta onto pCloud commands."""

from __future__ import annotations

import logging
import posixpath
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from pcloud_sync.fs.delta import basic_delta
from pcloud_sync.fs.models import DeltaResult, FileStat, ListResult
from pcloud_sync.pcloud.client import NotSupportedError, PCloudApiError, PCloudClient
from pcloud_sync.pcloud.models import (
    FIELD_ERROR,
    FIELD_FD,
    FIELD_METADATA,
    FIELD_RESULT,
    SOURCE_FILE,
    TARGET_FILE,
    EntryMetadata,
    RequestOptions,
    ResultCode,
)

logger = logging.getLogger(__name__)

# file_open flag creating the file if it does not exist
O_CREAT = 0x0040

NOT_FOUND_RESULTS = (ResultCode.FILE_NOT_FOUND, ResultCode.PARENT_NOT_FOUND)


def make_path(path: str) -> str:
    """Prefix ``path`` with a single leading separator."""
    return path if path.startswith("/") else f"/{path}"


def is_root(path: str) -> bool:
    return path in ("", "/")


def parse_pcloud_date(value: str) -> int | None:
    """Convert a pCloud date ("Thu, 19 Sep 2013 07:31:46 +0000") to Unix milliseconds."""
    if not value:
        return None
    try:
        return int(parsedate_to_datetime(value).timestamp() * 1000)
    except (TypeError, ValueError):
        logger.warning("[parse_pcloud_date] unparsable provider date; value:%s", value)
        return None


def make_item(metadata: EntryMetadata, path: str | None = None) -> FileStat:
    """Project provider metadata onto a FileStat; deleted entries carry no timestamps."""
    item = FileStat(
        path=metadata.name if path is None else path,
        is_dir=metadata.isfolder,
        folder_id=metadata.folderid,
    )
    if metadata.isdeleted:
        item.is_deleted = True
    else:
        item.created_time = parse_pcloud_date(metadata.created)
        item.updated_time = parse_pcloud_date(metadata.modified)
    return item


def make_items(contents: list[EntryMetadata], prefix: str = "") -> list[FileStat]:
    """Flatten a recursive folder listing into stats with paths relative to the listed folder."""
    items: list[FileStat] = []
    for metadata in contents:
        path = f"{prefix}{metadata.name}"
        items.append(make_item(metadata, path))
        if metadata.contents:
            items.extend(make_items(metadata.contents, f"{path}/"))
    return items


def _api_error(payload: dict[str, Any], message: str) -> PCloudApiError:
    result = payload.get(FIELD_RESULT)
    return PCloudApiError(result, f"{message}. Cause: {result} - {payload.get(FIELD_ERROR)}")


class PCloudFsDriver:
    """Path-based filesystem driver on top of the folder-id based pCloud API.

    Paths are resolved to folder identifiers per call; nothing is cached
    between calls.
    """

    def __init__(self, client: PCloudClient) -> None:
        self._api = client

    @property
    def api(self) -> PCloudClient:
        return self._api

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def _stat_raw(self, path: str) -> EntryMetadata | None:
        if is_root(path):
            return self._root_folder_metadata()
        payload = self._api.execute_json("GET", "stat", {"path": make_path(path)})
        result = payload.get(FIELD_RESULT)
        if result == ResultCode.FILE_NOT_FOUND:
            return None
        if result != ResultCode.OK:
            raise _api_error(payload, f"Could not stat {path}")
        return EntryMetadata.from_dict(payload[FIELD_METADATA])

    def _root_folder_metadata(self) -> EntryMetadata:
        payload = self._api.execute_json("GET", "listfolder", {"path": "/", "recursive": 0})
        if payload.get(FIELD_RESULT) != ResultCode.OK:
            raise _api_error(payload, "Could not read root folder")
        return EntryMetadata.from_dict(payload[FIELD_METADATA])

    def stat(self, path: str) -> FileStat | None:
        """Return the stat of ``path``, or None if the provider reports it missing."""
        metadata = self._stat_raw(path)
        if metadata is None:
            return None
        return make_item(metadata)

    def list(self, path: str, options: RequestOptions | None = None) -> ListResult:
        """List everything below ``path`` using the provider's recursive listing.

        A missing folder lists as empty. Results are never paginated, so
        ``options`` carries nothing this driver uses.
        """
        payload = self._api.execute_json(
            "GET", "listfolder", {"path": make_path(path), "recursive": 1}
        )
        result = payload.get(FIELD_RESULT)
        if result in NOT_FOUND_RESULTS:
            return ListResult(items=[], has_more=False)
        if result != ResultCode.OK:
            raise _api_error(payload, f"Could not list {path}")
        metadata = EntryMetadata.from_dict(payload[FIELD_METADATA])
        return ListResult(items=make_items(metadata.contents), has_more=False)

    def file_exists(self, path: str) -> bool:
        """Return True if the folder at ``path`` exists; a missing parent counts as absent."""
        payload = self._api.execute_json(
            "GET", "listfolder", {"path": make_path(path), "recursive": 0}
        )
        result = payload.get(FIELD_RESULT)
        if result not in (ResultCode.OK, ResultCode.PARENT_NOT_FOUND):
            raise _api_error(payload, f"Cannot check directory for existence: {path}")
        return result == ResultCode.OK

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    def get(self, path: str, options: RequestOptions | None = None) -> str | httpx.Response | None:
        """Read a remote file.

        With ``options.target == "file"`` the content is streamed to
        ``options.path`` and the provider response is returned; otherwise
        the content is returned as text. A missing file returns None.
        """
        options = options or RequestOptions()
        path = make_path(path)
        try:
            if options.target == TARGET_FILE:
                if not options.path:
                    raise ValueError("get: options.path is required when target is 'file'")
                logger.debug("[get] streaming content to file; path:%s;local_path:%s", path, options.path)
                return self._api.download_file(path, options.path)
            logger.debug("[get] reading content; path:%s", path)
            return self._api.read_file_content(path)
        except PCloudApiError as exc:
            if exc.is_not_found:
                return None
            raise

    def put(
        self,
        path: str,
        content: str | bytes | None = None,
        options: RequestOptions | None = None,
    ) -> httpx.Response | None:
        """Write a remote file, creating missing parent directories.

        With ``options.source == "file"`` the local file at ``options.path``
        is uploaded; otherwise ``content`` is written through a file
        descriptor. If the parent chain is missing, it is created and the
        write is retried once.
        """
        return self._put(make_path(path), content, options or RequestOptions(), retried=False)

    def _put(
        self,
        path: str,
        content: str | bytes | None,
        options: RequestOptions,
        retried: bool,
    ) -> httpx.Response | None:
        if options.source == SOURCE_FILE:
            return self._put_file(path, options)

        payload = self._api.open_file(path, O_CREAT)
        result = payload.get(FIELD_RESULT)
        if result in NOT_FOUND_RESULTS and not retried:
            logger.info("[put] parent directory missing, creating it; path:%s", path)
            self._create_dir_recursively(posixpath.dirname(path))
            return self._put(path, content, options, retried=True)
        if result != ResultCode.OK:
            raise _api_error(payload, f"Error creating file descriptor {path}")

        fd = int(payload[FIELD_FD])
        try:
            return self._api.write_file(fd, content if content is not None else b"")
        finally:
            self._api.release_file(fd)

    def _put_file(self, path: str, options: RequestOptions) -> httpx.Response | None:
        if not options.path:
            raise ValueError("put: options.path is required when source is 'file'")
        parent_path = posixpath.dirname(path)
        logger.info("[put] uploading local file; local_path:%s;parent:%s", options.path, parent_path)
        if not self.file_exists(parent_path):
            self._create_dir_recursively(parent_path)
        return self._api.upload_file(parent_path, posixpath.basename(path), options.path)

    # ------------------------------------------------------------------
    # Directories
    # ------------------------------------------------------------------

    def mkdir(self, path: str) -> FileStat:
        """Create the directory at ``path`` unless something already exists there.

        Missing ancestors are not created; a missing parent raises.
        """
        item = self.stat(path)
        if item is not None:
            return item

        normalized = make_path(path).rstrip("/")
        parent_path = posixpath.dirname(normalized)
        parent = self._stat_raw(parent_path)
        if parent is None:
            raise PCloudApiError(
                ResultCode.PARENT_NOT_FOUND, f"Parent directory does not exist: {parent_path}"
            )
        return make_item(self._exec_create_dir(posixpath.basename(normalized), parent.folderid))

    def _create_dir_recursively(self, directory_path: str) -> EntryMetadata:
        if is_root(directory_path):
            return self._root_folder_metadata()
        parent_dir = posixpath.dirname(directory_path)
        if self.file_exists(parent_dir):
            base = self._stat_raw(parent_dir)
            if base is None:
                raise PCloudApiError(
                    ResultCode.FILE_NOT_FOUND, f"Directory disappeared while creating: {parent_dir}"
                )
        else:
            base = self._create_dir_recursively(parent_dir)
        return self._exec_create_dir(posixpath.basename(directory_path), base.folderid)

    def _exec_create_dir(self, name: str, parent_folder_id: int | None) -> EntryMetadata:
        payload = self._api.execute_json(
            "GET", "createfolderifnotexists", {"folderid": parent_folder_id, "name": name}
        )
        if payload.get(FIELD_RESULT) != ResultCode.OK:
            raise _api_error(
                payload, f"Could not create directory: {name}, parent: {parent_folder_id}"
            )
        logger.info("[mkdir] created directory; name:%s;parent:%s", name, parent_folder_id)
        return EntryMetadata.from_dict(payload[FIELD_METADATA])

    # ------------------------------------------------------------------
    # Removal and unsupported operations
    # ------------------------------------------------------------------

    def delete(self, path: str) -> FileStat:
        """Delete the file at ``path``; a missing file raises."""
        path = make_path(path)
        payload = self._api.execute_json("GET", "deletefile", {"path": path})
        if payload.get(FIELD_RESULT) != ResultCode.OK:
            raise _api_error(payload, f"Could not delete file: {path}")
        return make_item(EntryMetadata.from_dict(payload[FIELD_METADATA]))

    def move(self, old_path: str, new_path: str) -> None:
        raise NotSupportedError("move is not supported by the pCloud driver")

    def format(self) -> None:
        raise NotSupportedError("format is not supported by the pCloud driver")

    # ------------------------------------------------------------------
    # Change detection
    # ------------------------------------------------------------------

    def delta(self, path: str, context: dict[str, Any] | None = None) -> DeltaResult:
        """Compute changes under ``path``. Directories are not part of the comparison."""

        def get_dir_stats(dir_path: str) -> list[FileStat]:
            return [item for item in self.list(dir_path).items if not item.is_dir]

        return basic_delta(path, get_dir_stats, context)
