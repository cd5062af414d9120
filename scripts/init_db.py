import asyncio
import os
import sys

# Añadimos la raíz del proyecto al sys.path para permitir las importaciones
SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
ROOT_DIR = os.path.abspath(os.path.join(SCRIPT_DIR, os.pardir))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from questweave.database import init_db, get_session_factory, close_db
from questweave.database.models import GameEntity, GameSession
from questweave.model import RelationshipRule, RelationshipSpec, UnlockConditionRule, UnlockTarget
from questweave.services import EntityUnlockService, MilestoneService, SqlCompletionStore, SqlEntityGenerator
from questweave.utils import setup_logging

DEMO_SESSION_ID = "demo-session"

DEMO_ENTITIES = [
    {"id": "demo-letter", "name": "Carta sellada", "kind": "object", "location_id": "library"},
    {"id": "demo-librarian", "name": "Bibliotecaria", "kind": "npc", "location_id": "library"},
    {"id": "demo-map", "name": "Mapa rasgado", "kind": "treasure", "location_id": "attic"},
]


async def seed_demo(session) -> None:
    if await session.get(GameSession, DEMO_SESSION_ID):
        print("Demo session already exists.")
        return

    session.add(GameSession(id=DEMO_SESSION_ID, active_story_elements=["mystery", "library"]))
    for data in DEMO_ENTITIES:
        session.add(GameEntity(session_id=DEMO_SESSION_ID, **data))
    await session.commit()

    milestone = await MilestoneService(session).create_milestone(
        DEMO_SESSION_ID,
        "El secreto de la biblioteca",
        RelationshipSpec(
            completion_condition="weighted_threshold",
            weighted_threshold=0.8,
            rules=[
                RelationshipRule(type="sequential", entity_ids=["demo-letter", "demo-librarian"], completion_weight=2),
                RelationshipRule(type="required_any", entity_ids=["demo-map"], is_optional=True),
            ],
            completion_narrative="La bibliotecaria revela la puerta oculta tras las estanterías.",
        ),
    )

    unlock_service = EntityUnlockService(session, SqlCompletionStore(session), SqlEntityGenerator(session))
    await unlock_service.register_condition(
        DEMO_SESSION_ID,
        "Puerta oculta",
        "milestone_completion",
        [UnlockConditionRule(type="milestone_completed", target_id=milestone.id)],
        [
            UnlockTarget(
                entity_kind="location_feature",
                entity_name="Puerta oculta",
                location_id="library",
                available_actions=[{"action_type": "investigate", "action_name": "Abrir la puerta"}],
                unlock_message="Una corriente de aire frío sale de detrás de las estanterías.",
                narrative_context="Tras la estantería aparece una puerta que nadie recordaba.",
            )
        ],
        priority=10,
    )
    print(f"Demo session '{DEMO_SESSION_ID}' seeded with milestone {milestone.id}.")


async def main() -> None:
    setup_logging()
    await init_db()
    Session = get_session_factory()
    async with Session() as session:
        await seed_demo(session)
        entities = await SqlEntityGenerator(session).list_session_entities(DEMO_SESSION_ID)
        print(f"{len(entities)} entities in demo session.")
    await close_db()
    print("Database initialised")

if __name__ == "__main__":
    asyncio.run(main())
