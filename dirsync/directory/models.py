"""
Raw directory records.

These are transient snapshots rebuilt on every sync or event. Groups are
enriched in place (members, subgroups and parent name are attached after the
record is listed) before they are turned into catalog entities.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class DirectoryUser:
    """A user record as returned by the directory."""

    id: Optional[str]
    username: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @classmethod
    def from_representation(cls, data: Dict[str, Any]) -> "DirectoryUser":
        return cls(
            id=data.get("id"),
            username=data.get("username", ""),
            email=data.get("email"),
            first_name=data.get("firstName"),
            last_name=data.get("lastName"),
        )

    @property
    def display_name(self) -> Optional[str]:
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts) if parts else None


@dataclass
class DirectoryGroup:
    """
    A group record as returned by the directory.

    ``parent`` holds the parent's *name* once resolved, ``members`` the member
    usernames once fetched.
    """

    id: Optional[str]
    name: str
    parent_id: Optional[str] = None
    parent: Optional[str] = None
    sub_group_count: int = 0
    sub_groups: List["DirectoryGroup"] = field(default_factory=list)
    members: List[str] = field(default_factory=list)

    @classmethod
    def from_representation(cls, data: Dict[str, Any]) -> "DirectoryGroup":
        sub_groups = [cls.from_representation(g) for g in data.get("subGroups") or []]
        return cls(
            id=data.get("id"),
            name=data.get("name", ""),
            parent_id=data.get("parentId"),
            sub_group_count=data.get("subGroupCount", len(sub_groups)) or 0,
            sub_groups=sub_groups,
        )
