"""
Unit tests for the entity builder.

Tests cover:
- Entity construction from directory records
- Transformer rejection and renaming
- Post-transform reference resolution
- The username -> groups index
"""

import pytest

from dirsync.catalog.entities import DIRECTORY_ID_ANNOTATION, DIRECTORY_REALM_ANNOTATION
from dirsync.core.errors import EntityRejected
from dirsync.directory.models import DirectoryGroup, DirectoryUser
from dirsync.sync.builder import (
    ParsedGroup,
    build_entities,
    build_group_index,
    parse_group,
    parse_groups,
    parse_user,
)
from dirsync.sync.reader import read_directory
from dirsync.sync.transformers import sanitize_email_transformer


def sample_groups():
    platform = DirectoryGroup(id="g-platform", name="platform", parent="backend", members=["dave"])
    backend = DirectoryGroup(id="g-backend", name="backend", parent="engineering",
                             sub_group_count=1, sub_groups=[platform], members=["carol"])
    engineering = DirectoryGroup(id="g-eng", name="engineering", sub_group_count=1,
                                 sub_groups=[backend], members=["alice", "carol"])
    return [engineering, backend, platform]


def sample_users():
    return [
        DirectoryUser(id="u-alice", username="alice", email="alice@example.com",
                      first_name="Alice", last_name="Archer"),
        DirectoryUser(id="u-carol", username="carol", email="carol@example.com"),
        DirectoryUser(id="u-dave", username="dave", email="dave@example.com"),
    ]


class TestParse:
    """Test single record parsing."""

    @pytest.mark.asyncio
    async def test_parse_group(self):
        """Test a group entity carries raw names and both annotations."""
        entity = await parse_group(sample_groups()[1], "acme")

        assert entity.name == "backend"
        assert entity.display_name == "backend"
        assert entity.parent == "engineering"
        assert entity.children == ["platform"]
        assert entity.members == ["carol"]
        assert entity.annotations == {
            DIRECTORY_ID_ANNOTATION: "g-backend",
            DIRECTORY_REALM_ANNOTATION: "acme",
        }

    @pytest.mark.asyncio
    async def test_parse_user(self):
        """Test a user entity takes memberOf from the index."""
        user = sample_users()[0]

        entity = await parse_user(user, "acme", [], {"alice": ["engineering"]})

        assert entity.name == "alice"
        assert entity.email == "alice@example.com"
        assert entity.display_name == "Alice Archer"
        assert entity.member_of == ["engineering"]
        assert entity.directory_id == "u-alice"
        assert entity.realm == "acme"

    @pytest.mark.asyncio
    async def test_record_without_id_is_never_emitted(self):
        """Test records without a directory id are dropped."""
        assert await parse_group(DirectoryGroup(id=None, name="ghost"), "acme") is None
        assert await parse_user(DirectoryUser(id=None, username="ghost"), "acme", [], {}) is None

    @pytest.mark.asyncio
    async def test_sync_transformer(self):
        """Test plain functions work as transformers."""
        def upper(entity, group, realm):
            entity.name = entity.name.upper()
            return entity

        entity = await parse_group(sample_groups()[0], "acme", upper)

        assert entity.name == "ENGINEERING"

    @pytest.mark.asyncio
    async def test_transformer_raising_rejection(self):
        """Test EntityRejected drops the record like returning None."""
        async def reject(entity, user, realm, groups):
            raise EntityRejected()

        assert await parse_user(sample_users()[0], "acme", [], {}, reject) is None

    @pytest.mark.asyncio
    async def test_transformer_removing_directory_id(self):
        """Test an entity stripped of its directory id is dropped."""
        def strip(entity, group, realm):
            entity.annotations.pop(DIRECTORY_ID_ANNOTATION)
            return entity

        assert await parse_group(sample_groups()[0], "acme", strip) is None

    @pytest.mark.asyncio
    async def test_transformer_removing_realm(self):
        """Test entities stripped of their realm annotation are dropped from a full build."""
        def strip_group(entity, group, realm):
            entity.annotations.pop(DIRECTORY_REALM_ANNOTATION)
            return entity

        def strip_user(entity, user, realm, groups):
            entity.annotations.pop(DIRECTORY_REALM_ANNOTATION)
            return entity

        assert await parse_group(sample_groups()[0], "acme", strip_group) is None
        assert await parse_user(sample_users()[0], "acme", [], {}, strip_user) is None

        users, groups = await build_entities(sample_users(), sample_groups(), "acme",
                                             user_transformer=strip_user,
                                             group_transformer=strip_group)
        assert users == []
        assert groups == []

    @pytest.mark.asyncio
    async def test_user_transformer_sees_parsed_groups(self):
        """Test the user transformer receives the parsed groups as context."""
        seen = []

        def record(entity, user, realm, groups):
            seen.extend(g.entity.name for g in groups)
            return entity

        parsed = await parse_groups(sample_groups(), "acme")
        await parse_user(sample_users()[0], "acme", parsed, {}, record)

        assert seen == ["engineering", "backend", "platform"]


class TestGroupIndex:
    """Test the username -> groups index."""

    @pytest.mark.asyncio
    async def test_index(self):
        """Test each member maps to the groups listing it."""
        parsed = await parse_groups(sample_groups(), "acme")

        index = build_group_index(parsed)

        assert index == {
            "alice": ["engineering"],
            "carol": ["engineering", "backend"],
            "dave": ["platform"],
        }

    def test_index_has_set_semantics(self):
        """Test a group name appears once per user even if listed twice."""
        group = DirectoryGroup(id="g", name="dup", members=["alice", "alice"])
        parsed = [ParsedGroup(group=group, entity=None), ParsedGroup(group=group, entity=None)]

        assert build_group_index(parsed) == {"alice": ["dup"]}


class TestBuildEntities:
    """Test building the full entity set."""

    @pytest.mark.asyncio
    async def test_references_resolved(self):
        """Test members, children, parent and memberOf point at emitted entities."""
        users, groups = await build_entities(sample_users(), sample_groups(), "acme")

        by_name = {g.name: g for g in groups}
        assert by_name["engineering"].children == ["backend"]
        assert by_name["backend"].parent == "engineering"
        assert by_name["engineering"].members == ["alice", "carol"]
        assert {u.name: u.member_of for u in users} == {
            "alice": ["engineering"],
            "carol": ["engineering", "backend"],
            "dave": ["platform"],
        }

    @pytest.mark.asyncio
    async def test_rejected_group_disappears_everywhere(self):
        """Test a rejected group leaves no children or memberOf reference behind."""
        def reject_backend(entity, group, realm):
            return None if group.name == "backend" else entity

        users, groups = await build_entities(
            sample_users(), sample_groups(), "acme", group_transformer=reject_backend
        )

        names = [g.name for g in groups]
        assert "backend" not in names
        assert all("backend" not in g.children for g in groups)
        assert all("backend" != g.parent for g in groups)
        assert all("backend" not in u.member_of for u in users)
        platform = next(g for g in groups if g.name == "platform")
        assert platform.parent is None

    @pytest.mark.asyncio
    async def test_renamed_entities_are_followed(self):
        """Test references use post-transform names."""
        def prefix(entity, group, realm):
            entity.name = f"team-{entity.name}"
            return entity

        users, groups = await build_entities(
            [DirectoryUser(id="u-1", username="jane.doe@example.com")],
            [DirectoryGroup(id="g-1", name="ops", members=["jane.doe@example.com"])],
            "acme",
            user_transformer=sanitize_email_transformer,
            group_transformer=prefix,
        )

        assert users[0].name == "jane-doe-example-com"
        assert users[0].member_of == ["team-ops"]
        assert groups[0].name == "team-ops"
        assert groups[0].members == ["jane-doe-example-com"]

    @pytest.mark.asyncio
    async def test_dangling_member_dropped(self):
        """Test a member with no user entity is dropped, not left dangling."""
        users, groups = await build_entities(
            [DirectoryUser(id="u-1", username="alice")],
            [DirectoryGroup(id="g-1", name="ops", members=["alice", "deleted-mid-sync"])],
            "acme",
        )

        assert groups[0].members == ["alice"]

    @pytest.mark.asyncio
    async def test_full_sync_is_idempotent(self, directory, make_session):
        """Test two syncs of an unchanged directory give identical documents."""
        async def build():
            result = await read_directory(make_session(directory))
            users, groups = await build_entities(result.users, result.groups, "acme")
            return [e.to_dict() for e in [*users, *groups]]

        assert await build() == await build()
