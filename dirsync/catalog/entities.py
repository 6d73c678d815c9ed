"""
Catalog entity model.

Entities are the durable artifact of a sync: once handed to the catalog they
are owned by it. Identity is ``(kind, name)``; every entity produced by the
engine carries the directory id and realm annotations so it can be traced
back to its directory record.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Tuple


API_VERSION = "backstage.io/v1beta1"
DEFAULT_NAMESPACE = "default"

DIRECTORY_ID_ANNOTATION = "keycloak.org/id"
DIRECTORY_REALM_ANNOTATION = "keycloak.org/realm"
LOCATION_ANNOTATION = "backstage.io/managed-by-location"
ORIGIN_LOCATION_ANNOTATION = "backstage.io/managed-by-origin-location"

RELATION_MEMBER_OF = "memberOf"
RELATION_HAS_MEMBER = "hasMember"
RELATION_CHILD_OF = "childOf"
RELATION_PARENT_OF = "parentOf"


def entity_ref(kind: str, name: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    """Stringified entity reference, e.g. ``group:default/admins``."""
    return f"{kind}:{namespace}/{name}".lower()


@dataclass(frozen=True, order=True)
class EntityRelation:
    """A catalog-derived relation to another entity."""

    type: str
    target_ref: str

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type, "targetRef": self.target_ref}


@dataclass
class CatalogEntity:
    """Base for User and Group entities."""

    kind: ClassVar[str] = ""

    name: str
    annotations: Dict[str, str] = field(default_factory=dict)
    namespace: str = DEFAULT_NAMESPACE
    relations: List[EntityRelation] = field(default_factory=list)

    @property
    def ref(self) -> str:
        return entity_ref(self.kind, self.name, self.namespace)

    @property
    def directory_id(self) -> Optional[str]:
        return self.annotations.get(DIRECTORY_ID_ANNOTATION)

    @property
    def realm(self) -> Optional[str]:
        return self.annotations.get(DIRECTORY_REALM_ANNOTATION)

    def relation_targets(self, relation_type: str) -> List[str]:
        return [r.target_ref for r in self.relations if r.type == relation_type]

    def copy(self) -> "CatalogEntity":
        return copy.deepcopy(self)

    def spec_dict(self) -> Dict[str, Any]:
        raise NotImplementedError

    def to_dict(self) -> Dict[str, Any]:
        """Convert entity to the catalog document shape."""
        doc: Dict[str, Any] = {
            "apiVersion": API_VERSION,
            "kind": self.kind,
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
                "annotations": dict(sorted(self.annotations.items())),
            },
            "spec": self.spec_dict(),
        }
        if self.relations:
            doc["relations"] = [r.to_dict() for r in sorted(self.relations)]
        return doc

    @staticmethod
    def from_dict(doc: Dict[str, Any]) -> "CatalogEntity":
        """Rebuild a User or Group entity from a catalog document."""
        kind = doc.get("kind")
        metadata = doc.get("metadata") or {}
        spec = doc.get("spec") or {}
        profile = spec.get("profile") or {}
        common = {
            "name": metadata["name"],
            "annotations": dict(metadata.get("annotations") or {}),
            "namespace": metadata.get("namespace", DEFAULT_NAMESPACE),
            "relations": [
                EntityRelation(r["type"], r["targetRef"]) for r in doc.get("relations") or []
            ],
        }
        if kind == UserEntity.kind:
            return UserEntity(
                email=profile.get("email"),
                display_name=profile.get("displayName"),
                member_of=list(spec.get("memberOf") or []),
                **common,
            )
        if kind == GroupEntity.kind:
            return GroupEntity(
                display_name=profile.get("displayName"),
                parent=spec.get("parent"),
                children=list(spec.get("children") or []),
                members=list(spec.get("members") or []),
                type=spec.get("type", "group"),
                **common,
            )
        raise ValueError(f"Unsupported entity kind: {kind}")


@dataclass
class UserEntity(CatalogEntity):
    kind: ClassVar[str] = "User"

    email: Optional[str] = None
    display_name: Optional[str] = None
    member_of: List[str] = field(default_factory=list)

    def spec_dict(self) -> Dict[str, Any]:
        profile: Dict[str, Any] = {"email": self.email}
        if self.display_name:
            profile["displayName"] = self.display_name
        return {"profile": profile, "memberOf": list(self.member_of)}


@dataclass
class GroupEntity(CatalogEntity):
    kind: ClassVar[str] = "Group"

    display_name: Optional[str] = None
    parent: Optional[str] = None
    children: List[str] = field(default_factory=list)
    members: List[str] = field(default_factory=list)
    type: str = "group"

    def spec_dict(self) -> Dict[str, Any]:
        spec: Dict[str, Any] = {
            "type": self.type,
            "profile": {"displayName": self.display_name},
            "children": list(self.children),
            "members": list(self.members),
        }
        if self.parent:
            spec["parent"] = self.parent
        return spec


def with_locations(base_url: str, realm: str, entity: CatalogEntity) -> CatalogEntity:
    """
    Copy of ``entity`` carrying location annotations pointing at its record.

    Annotations already present on the entity win.
    """
    kind = "groups" if isinstance(entity, GroupEntity) else "users"
    location = f"url:{base_url}/admin/realms/{realm}/{kind}/{entity.directory_id}"
    located = entity.copy()
    located.annotations = {
        LOCATION_ANNOTATION: location,
        ORIGIN_LOCATION_ANNOTATION: location,
        **entity.annotations,
    }
    return located


# (source ref, relation, target ref, inverse relation)
EntityLink = Tuple[str, str, str, str]


def entity_links(entity: CatalogEntity) -> List[EntityLink]:
    """Links an entity declares through its memberships, members and hierarchy."""
    links: List[EntityLink] = []
    if isinstance(entity, UserEntity):
        for group in entity.member_of:
            links.append((entity.ref, RELATION_MEMBER_OF,
                          entity_ref(GroupEntity.kind, group, entity.namespace), RELATION_HAS_MEMBER))
    elif isinstance(entity, GroupEntity):
        for member in entity.members:
            links.append((entity.ref, RELATION_HAS_MEMBER,
                          entity_ref(UserEntity.kind, member, entity.namespace), RELATION_MEMBER_OF))
        for child in entity.children:
            links.append((entity.ref, RELATION_PARENT_OF,
                          entity_ref(GroupEntity.kind, child, entity.namespace), RELATION_CHILD_OF))
        if entity.parent:
            links.append((entity.ref, RELATION_CHILD_OF,
                          entity_ref(GroupEntity.kind, entity.parent, entity.namespace), RELATION_PARENT_OF))
    return links
