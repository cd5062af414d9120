"""Test milestone storage and relationship lookups."""
import pytest

from questweave.exceptions import MilestoneInUse, MilestoneNotFound
from questweave.model import RelationshipRule, RelationshipSpec, UnlockConditionRule, UnlockTarget
from questweave.services import EntityUnlockService, MilestoneService
from tests.fakes import FakeCompletionStore, FakeEntityGenerator


def spec_for(*groups):
    return RelationshipSpec(rules=[RelationshipRule(type="required_all", entity_ids=list(g)) for g in groups])


def test_lookups_by_entity(run_db):
    async def body(Session):
        async with Session() as session:
            service = MilestoneService(session)
            await service.create_milestone("S1", "Crypt", spec_for(["E1", "E2"], ["E2", "E3"]), milestone_id="M1")
            await service.create_milestone("S1", "Tower", spec_for(["E3"]), milestone_id="M2")
            await service.create_milestone("S1", "Legacy", milestone_id="M3")
            await service.create_milestone("S2", "Elsewhere", spec_for(["E1"]), milestone_id="M4")

            assert [m.id for m in await service.find_milestones_by_entity("S1", "E1")] == ["M1"]
            by_entity = await service.find_milestones_by_entities("S1", ["E3", "E9"])
            assert sorted(m.id for m in by_entity["E3"]) == ["M1", "M2"]
            assert by_entity["E9"] == []

            relationship_map = await service.build_relationship_map("S1")
            assert relationship_map == {"M1": ["E1", "E2", "E3"], "M2": ["E3"]}

    run_db(body)


def test_update_and_require(run_db):
    async def body(Session):
        async with Session() as session:
            service = MilestoneService(session)
            await service.create_milestone("S1", "Crypt", spec_for(["E1"]), milestone_id="M1")
            await service.update_relationships("M1", spec_for(["E7"]))
            assert [m.id for m in await service.find_milestones_by_entity("S1", "E7")] == ["M1"]

            with pytest.raises(MilestoneNotFound):
                await service.require_milestone("nope")
            with pytest.raises(MilestoneNotFound):
                await service.update_relationships("nope", spec_for(["E1"]))

    run_db(body)


def test_malformed_relationships_are_tolerated(run_db):
    async def body(Session):
        async with Session() as session:
            service = MilestoneService(session)
            await service.create_milestone("S1", "Odd", {"rules": "not-a-list"}, milestone_id="M1")
            assert await service.find_milestones_by_entity("S1", "E1") == []
            assert await service.build_relationship_map("S1") == {"M1": []}

    run_db(body)


def test_delete_refused_while_referenced(run_db):
    async def body(Session):
        async with Session() as session:
            service = MilestoneService(session)
            unlock = EntityUnlockService(session, FakeCompletionStore(), FakeEntityGenerator())
            await service.create_milestone("S1", "Crypt", spec_for(["E1"]), milestone_id="M1")
            condition = await unlock.register_condition(
                "S1",
                "After crypt",
                "milestone_completion",
                [UnlockConditionRule(type="milestone_completed", target_id="M1")],
                [UnlockTarget(entity_kind="npc", entity_name="Ghost", location_id="crypt")],
            )

            with pytest.raises(MilestoneInUse) as excinfo:
                await service.delete_milestone("M1")
            assert excinfo.value.condition_ids == [condition.id]

            await unlock.deactivate_condition(condition.id)
            assert await service.delete_milestone("M1")
            assert await service.get_milestone("M1") is None
            assert not await service.delete_milestone("M1")

    run_db(body)
