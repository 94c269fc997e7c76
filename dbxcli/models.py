"""
Data models for dbxcli.

This module defines the data structures exchanged with the Dropbox API
and passed between the transfer and listing drivers and the CLI.
"""

from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Union
from dataclasses import dataclass, replace
from enum import Enum


# 16 MiB chunks
DEFAULT_CHUNK_SIZE = 1 << 24

# Chunk sizes must be a multiple of this
CHUNK_SIZE_UNIT = 1 << 22

DELETED_MARKER = "[{}]"


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _format_timestamp(value: datetime) -> str:
    """Format a timestamp the way the API accepts it: UTC, second precision."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.replace(microsecond=0, tzinfo=None).isoformat() + "Z"


def mark_deleted(name: str) -> str:
    """Wrap a display name so it reads as a deleted item."""
    return DELETED_MARKER.format(name)


class WriteMode(Enum):
    """Conflict policy applied when committing a file."""
    ADD = "add"
    OVERWRITE = "overwrite"


@dataclass(frozen=True)
class FileMetadata:
    """A file entry, or one historical revision of a file."""

    name: str
    path_display: str
    path_lower: str = ""
    id: str = ""
    rev: str = ""
    size: int = 0
    client_modified: Optional[datetime] = None
    server_modified: Optional[datetime] = None
    content_hash: Optional[str] = None
    deleted: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileMetadata":
        """Create FileMetadata from API response dictionary."""
        return cls(
            name=data["name"],
            path_display=data.get("path_display", ""),
            path_lower=data.get("path_lower", ""),
            id=data.get("id", ""),
            rev=data.get("rev", ""),
            size=data.get("size", 0),
            client_modified=_parse_timestamp(data.get("client_modified")),
            server_modified=_parse_timestamp(data.get("server_modified")),
            content_hash=data.get("content_hash"),
        )

    @property
    def is_deleted(self) -> bool:
        return self.deleted


@dataclass(frozen=True)
class FolderMetadata:
    """A folder entry."""

    name: str
    path_display: str
    path_lower: str = ""
    id: str = ""
    deleted: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FolderMetadata":
        """Create FolderMetadata from API response dictionary."""
        return cls(
            name=data["name"],
            path_display=data.get("path_display", ""),
            path_lower=data.get("path_lower", ""),
            id=data.get("id", ""),
        )

    @property
    def is_deleted(self) -> bool:
        return self.deleted


@dataclass(frozen=True)
class DeletedMetadata:
    """A path that no longer exists at HEAD but has history."""

    name: str
    path_display: str
    path_lower: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeletedMetadata":
        """Create DeletedMetadata from API response dictionary."""
        return cls(
            name=data["name"],
            path_display=data.get("path_display", ""),
            path_lower=data.get("path_lower", ""),
        )

    @property
    def is_deleted(self) -> bool:
        return True


Metadata = Union[FileMetadata, FolderMetadata, DeletedMetadata]

_METADATA_TAGS = {
    "file": FileMetadata,
    "folder": FolderMetadata,
    "deleted": DeletedMetadata,
}


def metadata_from_dict(data: Dict[str, Any]) -> Metadata:
    """Build the entry variant named by the ``.tag`` discriminator."""
    tag = data.get(".tag")
    try:
        cls = _METADATA_TAGS[tag]
    except KeyError:
        raise ValueError(f"Unknown metadata tag: {tag!r}")
    return cls.from_dict(data)


def as_deleted(entry: Metadata) -> Metadata:
    """
    Re-tag an entry as the last known state of a deleted path.

    File and folder entries keep their metadata, gain ``deleted=True`` and
    have their display name and path wrapped in the deleted marker.
    Entries that are already ``DeletedMetadata`` are returned unchanged.
    """
    if isinstance(entry, DeletedMetadata):
        return entry
    return replace(
        entry,
        name=mark_deleted(entry.name),
        path_display=mark_deleted(entry.path_display),
        deleted=True,
    )


@dataclass(frozen=True)
class ListingCursor:
    """Continuation token for a paginated listing."""

    value: str
    has_more: bool


@dataclass
class ListFolderResult:
    """One page of a folder listing."""

    entries: List[Metadata]
    cursor: ListingCursor

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ListFolderResult":
        """Create ListFolderResult from API response dictionary."""
        return cls(
            entries=[metadata_from_dict(e) for e in data.get("entries", [])],
            cursor=ListingCursor(
                value=data.get("cursor", ""),
                has_more=data.get("has_more", False),
            ),
        )

    @property
    def has_more(self) -> bool:
        return self.cursor.has_more


@dataclass(frozen=True)
class TransferSession:
    """
    An in-progress chunked upload.

    ``bytes_written`` is the offset the server expects for the next
    chunk. Values are immutable; ``advance`` returns the session as it
    stands after another chunk has been accepted.
    """

    session_id: str
    total_size: int
    bytes_written: int = 0

    @property
    def remaining(self) -> int:
        return self.total_size - self.bytes_written

    def advance(self, nbytes: int) -> "TransferSession":
        return replace(self, bytes_written=self.bytes_written + nbytes)

    def cursor(self) -> Dict[str, Any]:
        """Upload session cursor as sent on the wire."""
        return {"session_id": self.session_id, "offset": self.bytes_written}


@dataclass
class CommitInfo:
    """Destination and conflict policy for a committed file."""

    path: str
    mode: WriteMode = WriteMode.OVERWRITE
    autorename: bool = False
    client_modified: Optional[datetime] = None
    mute: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert CommitInfo to the API argument dictionary."""
        result = {
            "path": self.path,
            "mode": self.mode.value,
            "autorename": self.autorename,
            "mute": self.mute,
        }
        if self.client_modified:
            result["client_modified"] = _format_timestamp(self.client_modified)
        return result


@dataclass
class ListOptions:
    """Options for a directory listing."""

    recursive: bool = False
    include_deleted: bool = False
    only_deleted: bool = False

    @property
    def wants_deleted(self) -> bool:
        return self.include_deleted or self.only_deleted


@dataclass
class TransferProgress:
    """Progress information for uploads and downloads."""

    filename: str
    total_bytes: int
    transferred_bytes: int
    percentage: float
    speed_bps: float  # Bytes per second
    eta_seconds: Optional[float] = None

    @property
    def speed_mbps(self) -> float:
        """Transfer speed in MB/s."""
        return self.speed_bps / (1024 * 1024)


@dataclass
class SpaceUsage:
    """Storage usage for the current account."""

    used: int
    allocation_type: str
    allocated: int = 0
    team_used: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SpaceUsage":
        """Create SpaceUsage from API response dictionary."""
        allocation = data.get("allocation", {})
        return cls(
            used=data.get("used", 0),
            allocation_type=allocation.get(".tag", "other"),
            allocated=allocation.get("allocated", 0),
            team_used=allocation.get("used"),
        )


@dataclass
class FullAccount:
    """Details of the account the token belongs to."""

    account_id: str
    display_name: str
    email: str
    account_type: str = ""
    locale: str = ""
    referral_link: str = ""
    profile_photo_url: Optional[str] = None
    is_paired: bool = False
    team_name: Optional[str] = None
    team_id: Optional[str] = None
    team_member_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FullAccount":
        """Create FullAccount from API response dictionary."""
        team = data.get("team") or {}
        return cls(
            account_id=data["account_id"],
            display_name=data.get("name", {}).get("display_name", ""),
            email=data.get("email", ""),
            account_type=data.get("account_type", {}).get(".tag", ""),
            locale=data.get("locale", ""),
            referral_link=data.get("referral_link", ""),
            profile_photo_url=data.get("profile_photo_url"),
            is_paired=data.get("is_paired", False),
            team_name=team.get("name"),
            team_id=team.get("id"),
            team_member_id=data.get("team_member_id"),
        )


@dataclass
class BasicAccount:
    """Public details of another account."""

    account_id: str
    display_name: str
    email: str
    email_verified: bool = False
    is_teammate: bool = False
    team_member_id: Optional[str] = None
    profile_photo_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BasicAccount":
        """Create BasicAccount from API response dictionary."""
        return cls(
            account_id=data["account_id"],
            display_name=data.get("name", {}).get("display_name", ""),
            email=data.get("email", ""),
            email_verified=data.get("email_verified", False),
            is_teammate=data.get("is_teammate", False),
            team_member_id=data.get("team_member_id"),
            profile_photo_url=data.get("profile_photo_url"),
        )


@dataclass
class TeamInfo:
    name: str
    team_id: str
    num_licensed_users: int = 0
    num_provisioned_users: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TeamInfo":
        return cls(
            name=data.get("name", ""),
            team_id=data.get("team_id", ""),
            num_licensed_users=data.get("num_licensed_users", 0),
            num_provisioned_users=data.get("num_provisioned_users", 0),
        )


@dataclass
class TeamMember:
    team_member_id: str
    display_name: str
    email: str
    status: str
    role: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TeamMember":
        profile = data.get("profile", {})
        return cls(
            team_member_id=profile.get("team_member_id", ""),
            display_name=profile.get("name", {}).get("display_name", ""),
            email=profile.get("email", ""),
            status=profile.get("status", {}).get(".tag", ""),
            role=data.get("role", {}).get(".tag", ""),
        )


@dataclass
class TeamGroup:
    group_name: str
    group_id: str
    member_count: int = 0
    group_external_id: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TeamGroup":
        return cls(
            group_name=data.get("group_name", ""),
            group_id=data.get("group_id", ""),
            member_count=data.get("member_count", 0),
            group_external_id=data.get("group_external_id", ""),
        )


@dataclass
class SharedLink:
    """A shared link to a file or folder."""

    url: str
    name: str
    path_lower: Optional[str] = None
    expires: Optional[datetime] = None
    visibility: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SharedLink":
        """Create SharedLink from API response dictionary."""
        return cls(
            url=data["url"],
            name=data.get("name", ""),
            path_lower=data.get("path_lower"),
            expires=_parse_timestamp(data.get("expires")),
            visibility=data.get("link_permissions", {}).get("resolved_visibility", {}).get(".tag", ""),
        )


@dataclass
class SharedFolder:
    name: str
    shared_folder_id: str
    access_type: str = ""
    path_lower: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SharedFolder":
        return cls(
            name=data.get("name", ""),
            shared_folder_id=data.get("shared_folder_id", ""),
            access_type=data.get("access_type", {}).get(".tag", ""),
            path_lower=data.get("path_lower"),
        )


@dataclass
class SharedFile:
    name: str
    file_id: str
    preview_url: str = ""
    access_type: str = ""
    path_display: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SharedFile":
        return cls(
            name=data.get("name", ""),
            file_id=data.get("id", ""),
            preview_url=data.get("preview_url", ""),
            access_type=data.get("access_type", {}).get(".tag", ""),
            path_display=data.get("path_display"),
        )
