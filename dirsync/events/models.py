"""
Directory change events.

Admin events emitted by the directory are delivered on the ``keycloak`` topic
as ``EventParams``; the payload's ``type`` selects the reconciler branch.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union


class EventTopic:
    """Event payload types handled by the incremental reconciler."""

    USER_CREATE = "admin.USER-CREATE"
    USER_UPDATE = "admin.USER-UPDATE"
    USER_DELETE = "admin.USER-DELETE"
    USER_ADD_GROUP = "admin.GROUP_MEMBERSHIP-CREATE"
    USER_REMOVE_GROUP = "admin.GROUP_MEMBERSHIP-DELETE"
    GROUP_CREATE = "admin.GROUP-CREATE"
    GROUP_UPDATE = "admin.GROUP-UPDATE"
    GROUP_DELETE = "admin.GROUP-DELETE"


@dataclass(frozen=True)
class DirectoryEvent:
    """
    One change notification from the directory.

    ``resource_path`` looks like ``users/{id}``, ``groups/{id}``,
    ``groups/{parentId}/children`` or ``users/{userId}/groups/{groupId}``.
    ``representation`` is the changed resource, as a JSON string or mapping.
    """

    type: str
    resource_path: str
    representation: Optional[Union[str, Mapping[str, Any]]] = None

    @property
    def path(self):
        return self.resource_path.strip("/").split("/")

    def representation_dict(self) -> Dict[str, Any]:
        if self.representation is None:
            return {}
        if isinstance(self.representation, str):
            return json.loads(self.representation) if self.representation else {}
        return dict(self.representation)

    @classmethod
    def from_admin_event(cls, data: Mapping[str, Any]) -> "DirectoryEvent":
        """
        Build an event from a raw admin event.

        ``{"resourceType": "GROUP_MEMBERSHIP", "operationType": "CREATE", ...}``
        becomes type ``admin.GROUP_MEMBERSHIP-CREATE``.
        """
        if "type" in data and "resourcePath" in data and "resourceType" not in data:
            return cls(
                type=data["type"],
                resource_path=data["resourcePath"],
                representation=data.get("representation"),
            )
        return cls(
            type=f"admin.{data['resourceType']}-{data['operationType']}",
            resource_path=data["resourcePath"],
            representation=data.get("representation"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "resourcePath": self.resource_path,
            "representation": self.representation,
        }


@dataclass(frozen=True)
class EventParams:
    """An event as delivered on a topic."""

    topic: str
    event_payload: DirectoryEvent
