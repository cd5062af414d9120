"""Test the milestone progress engine against an in-memory database."""
import pytest
from sqlalchemy import func, select

from questweave.database.models import Milestone, MilestoneCompletion
from questweave.exceptions import MilestoneNotFound
from questweave.database.unlock_models import UnlockEvent
from questweave.model import RelationshipRule, RelationshipSpec, UnlockConditionRule, UnlockTarget
from questweave.services import (
    EntityUnlockService,
    MilestoneProgressService,
    MilestoneService,
    SqlEntityGenerator,
)
from tests.fakes import (
    FakeCompletionStore,
    RecordingFeedbackGenerator,
    RecordingNarrativeGenerator,
    RecordingUnlockService,
)

REQUIRED_PAIR = RelationshipSpec(
    completion_condition="all_rules",
    rules=[RelationshipRule(type="required_all", entity_ids=["E1", "E2"], completion_weight=1)],
)


async def completion_count(session, milestone_id):
    stmt = select(func.count(MilestoneCompletion.id)).where(MilestoneCompletion.milestone_id == milestone_id)
    return (await session.execute(stmt)).scalar_one()


def test_end_to_end_required_all(run_db):
    async def body(Session):
        async with Session() as session:
            milestone = await MilestoneService(session).create_milestone(
                "S1", "Find both halves", REQUIRED_PAIR, milestone_id="M1"
            )
            store = FakeCompletionStore(["E1"])
            unlock = RecordingUnlockService()
            narrative = RecordingNarrativeGenerator()
            service = MilestoneProgressService(session, store, unlock, narrative_generator=narrative)

            changed = await service.on_entity_completed("S1", "E1", "hero")
            assert [m.id for m in changed] == ["M1"]
            assert milestone.progress == pytest.approx(0.575)
            assert milestone.progress_percentage == pytest.approx(57.5)
            assert milestone.status == "in_progress"
            assert await completion_count(session, "M1") == 0
            assert narrative.calls == []
            assert unlock.completion_calls == []
            assert unlock.progress_calls == [("S1", "M1", pytest.approx(0.575))]

            store.complete("E2")
            await service.on_entity_completed("S1", "E2", "hero")
            assert milestone.progress == pytest.approx(1.0)
            assert milestone.status == "completed"
            assert milestone.completed_at is not None
            assert await completion_count(session, "M1") == 1
            assert len(narrative.calls) == 1
            assert narrative.calls[0][3] == "Milestone «Find both halves» completed."
            assert unlock.completion_calls == [("S1", "M1")]

            # completed milestones are never recalculated
            assert await service.on_entity_completed("S1", "E2", "hero") == []
            assert await completion_count(session, "M1") == 1

    run_db(body)


def test_unrelated_entity_changes_nothing(run_db):
    async def body(Session):
        async with Session() as session:
            await MilestoneService(session).create_milestone("S1", "Pair", REQUIRED_PAIR, milestone_id="M1")
            service = MilestoneProgressService(session, FakeCompletionStore(["X"]))
            assert await service.on_entity_completed("S1", "X", "hero") == []

    run_db(body)


def test_unchanged_progress_is_not_rewritten(run_db):
    async def body(Session):
        async with Session() as session:
            await MilestoneService(session).create_milestone("S1", "Pair", REQUIRED_PAIR, milestone_id="M1")
            unlock = RecordingUnlockService()
            service = MilestoneProgressService(session, FakeCompletionStore(["E1"]), unlock)
            assert len(await service.on_entity_completed("S1", "E1", "hero")) == 1
            assert await service.on_entity_completed("S1", "E1", "hero") == []
            assert len(unlock.progress_calls) == 1

    run_db(body)


def test_store_failure_leaves_milestone_untouched(run_db):
    async def body(Session):
        async with Session() as session:
            milestone = await MilestoneService(session).create_milestone("S1", "Pair", REQUIRED_PAIR)
            store = FakeCompletionStore(["E1"])
            store.fail = True
            service = MilestoneProgressService(session, store)
            assert await service.on_entity_completed("S1", "E1", "hero") == []
            assert milestone.status == "pending"
            assert milestone.progress == 0.0

    run_db(body)


def test_weighted_threshold_with_optional_rule(run_db):
    spec = RelationshipSpec(
        completion_condition="weighted_threshold,0.8",
        rules=[
            RelationshipRule(type="required_any", entity_ids=["BONUS"], is_optional=True),
            RelationshipRule(type="sequential", entity_ids=["A", "B"], completion_weight=2),
        ],
    )

    async def body(Session):
        async with Session() as session:
            milestone = await MilestoneService(session).create_milestone("S1", "Ritual", spec)
            store = FakeCompletionStore(["A"])
            service = MilestoneProgressService(session, store)

            progress, rules = await service.calculate_progress(milestone)
            assert progress == pytest.approx(0.5)
            assert [r.progress for r in rules] == [0.0, pytest.approx(0.5)]
            assert not service.is_completed(milestone, progress)

            store.complete("B")
            await service.on_entity_completed("S1", "B", "hero")
            assert milestone.status == "completed"

    run_db(body)


def test_completion_is_recorded_once(run_db):
    async def body(Session):
        async with Session() as session:
            milestone = await MilestoneService(session).create_milestone("S1", "Pair", REQUIRED_PAIR)
            feedback = RecordingFeedbackGenerator(fail=True)
            service = MilestoneProgressService(session, FakeCompletionStore(), feedback_generator=feedback)
            # a failing feedback generator does not undo the completion
            assert await service.complete_milestone(milestone, 1.0, [], "hero")
            assert not await service.complete_milestone(milestone, 1.0, [], "hero")
            assert await completion_count(session, milestone.id) == 1

    run_db(body)


def test_legacy_milestone_uses_external_progress(run_db):
    async def body(Session):
        async with Session() as session:
            milestone = await MilestoneService(session).create_milestone("S1", "Old quest")
            unlock = RecordingUnlockService()
            service = MilestoneProgressService(session, FakeCompletionStore(), unlock)

            assert await service.calculate_progress(milestone) == (0.0, [])
            await service.set_legacy_progress(milestone.id, 0.4)
            assert milestone.status == "in_progress"
            await service.set_legacy_progress(milestone.id, 1.5)
            assert milestone.progress == 1.0
            assert milestone.status == "completed"
            assert unlock.completion_calls == [("S1", milestone.id)]

            with pytest.raises(MilestoneNotFound):
                await service.set_legacy_progress("missing", 1.0)

    run_db(body)


def test_get_milestone_progress_report(run_db):
    async def body(Session):
        async with Session() as session:
            await MilestoneService(session).create_milestone("S1", "Pair", REQUIRED_PAIR, milestone_id="M1")
            service = MilestoneProgressService(session, FakeCompletionStore(["E1", "E2"]))

            report = await service.get_milestone_progress("S1", "M1")
            assert report.overall_progress == pytest.approx(1.0)
            assert report.is_completed
            assert report.rule_progresses[0].rule_type == "required_all"
            assert report.rule_progresses[0].is_completed

            assert await service.get_milestone_progress("S2", "M1") is None
            assert await service.get_milestone_progress("S1", "nope") is None

    run_db(body)


def test_rule_without_entities_scores_zero(run_db):
    async def body(Session):
        async with Session() as session:
            milestone = await MilestoneService(session).create_milestone(
                "S1", "Broken", {"completion_condition": "all_rules", "rules": [{"type": "required_all"}]}
            )
            service = MilestoneProgressService(session, FakeCompletionStore(["E1"]))
            assert await service.milestone_progress(milestone) == 0.0
            stored = await session.get(Milestone, milestone.id)
            assert stored.status == "pending"

    run_db(body)


def test_duplicate_completion_row_returns_false(run_db):
    async def body(Session):
        async with Session() as session:
            milestone = await MilestoneService(session).create_milestone("S1", "Pair", REQUIRED_PAIR, milestone_id="M1")
            session.add(MilestoneCompletion(milestone_id="M1", session_id="S1", overall_progress=1.0))
            await session.commit()

            unlock = RecordingUnlockService()
            service = MilestoneProgressService(session, FakeCompletionStore(), unlock)
            assert await service.complete_milestone(milestone, 1.0, [], "hero") is False
            assert await completion_count(session, "M1") == 1
            stored = await session.get(Milestone, "M1")
            assert stored.status == "pending"
            assert unlock.completion_calls == []

    run_db(body)


def test_rejected_unlock_target_does_not_stop_other_milestones(run_db):
    shared = RelationshipSpec(rules=[RelationshipRule(type="required_any", entity_ids=["E1"])])

    async def body(Session):
        async with Session() as session:
            milestones = MilestoneService(session)
            await milestones.create_milestone("S1", "First", shared, milestone_id="M1")
            await milestones.create_milestone("S1", "Second", shared, milestone_id="M2")

            store = FakeCompletionStore(["E1"])
            generator = SqlEntityGenerator(session)
            unlock = EntityUnlockService(session, store, generator)
            await unlock.register_condition(
                "S1",
                "Cellar",
                "milestone_completion",
                [UnlockConditionRule(type="milestone_completed", target_id="M1")],
                [
                    UnlockTarget(entity_kind="object", entity_name="Barrel", location_id="cellar"),
                    {"entity_kind": "object", "entity_name": None, "location_id": "cellar"},
                    UnlockTarget(entity_kind="npc", entity_name="Smuggler", location_id="cellar"),
                ],
            )

            service = MilestoneProgressService(session, store, unlock)
            changed = await service.on_entity_completed("S1", "E1", "hero")
            assert sorted(m.id for m in changed) == ["M1", "M2"]
            assert all(m.status == "completed" for m in changed)
            assert await completion_count(session, "M2") == 1

            events = (await session.execute(select(UnlockEvent))).scalars().all()
            assert len(events) == 1
            assert len(events[0].unlocked_entities) == 2
            entities = await generator.list_session_entities("S1")
            assert sorted(e.name for e in entities) == ["Barrel", "Smuggler"]

    run_db(body)
