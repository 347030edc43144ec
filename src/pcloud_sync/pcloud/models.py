"""Data models for the pCloud API: auth tokens, entry metadata and request options."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

# pCloud JSON field names
FIELD_RESULT = "result"
FIELD_ERROR = "error"
FIELD_METADATA = "metadata"
FIELD_CONTENTS = "contents"
FIELD_FD = "fd"
FIELD_SIZE = "size"

# Request option values
TARGET_STRING = "string"
TARGET_FILE = "file"
SOURCE_FILE = "file"


class ResultCode(IntEnum):
    """Numeric ``result`` codes returned in every pCloud response body."""

    OK = 0
    FILE_NOT_FOUND = 2002
    PARENT_NOT_FOUND = 2005


@dataclass(frozen=True)
class AuthToken:
    """OAuth token bound to the API host of the account's data region.

    Instances are never mutated; a refreshed token replaces the old one.
    """

    access_token: str
    token_type: str = "bearer"
    userid: int = 0
    locationid: int = 1
    hostname: str = "api.pcloud.com"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuthToken:
        """Create an AuthToken from a token-endpoint response or persisted dict."""
        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type", "bearer"),
            userid=int(data.get("userid", 0)),
            locationid=int(data.get("locationid", 1)),
            hostname=data.get("hostname", "api.pcloud.com"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "userid": self.userid,
            "locationid": self.locationid,
            "hostname": self.hostname,
        }


@dataclass
class EntryMetadata:
    """Provider-native description of a file or folder."""

    name: str = ""
    folderid: int | None = None
    parentfolderid: int | None = None
    fileid: int | None = None
    size: int = 0
    created: str = ""
    modified: str = ""
    isfolder: bool = False
    isdeleted: bool = False
    contents: list[EntryMetadata] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntryMetadata:
        """Map a raw ``metadata`` object, including nested ``contents``."""
        return cls(
            name=data.get("name", ""),
            folderid=data.get("folderid"),
            parentfolderid=data.get("parentfolderid"),
            fileid=data.get("fileid"),
            size=data.get("size", 0),
            created=data.get("created", ""),
            modified=data.get("modified", ""),
            isfolder=bool(data.get("isfolder", False)),
            isdeleted=bool(data.get("isdeleted", False)),
            contents=[cls.from_dict(c) for c in data.get(FIELD_CONTENTS, [])],
        )


@dataclass
class RequestOptions:
    """Transport selection for a single API call.

    Attributes:
        target: ``"string"`` buffers the response, ``"file"`` streams it to ``path``.
        source: ``"file"`` uploads the local file at ``path`` as multipart form data.
        path: Local file used by the ``target``/``source`` streaming modes.
        headers: Extra request headers.
    """

    target: str = TARGET_STRING
    source: str | None = None
    path: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
