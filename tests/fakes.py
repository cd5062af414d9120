"""In-memory stand-ins for the engines' collaborators."""
from typing import Dict, Iterable, List, Optional

from questweave.model import EntityCompletionDetail, NarrativeState


class FakeCompletionStore:
    def __init__(self, completed: Iterable[str] = (), details: Optional[Dict[str, EntityCompletionDetail]] = None):
        self.completed = set(completed)
        self.details = details or {}
        self.fail = False

    def complete(self, *entity_ids: str) -> None:
        self.completed.update(entity_ids)

    async def list_completed(self, session_id: str, entity_ids: List[str]) -> List[str]:
        if self.fail:
            raise RuntimeError("completion store unavailable")
        return [e for e in entity_ids if e in self.completed]

    async def get_completion_details(self, session_id: str, entity_ids: List[str]) -> Dict[str, EntityCompletionDetail]:
        if self.fail:
            raise RuntimeError("completion store unavailable")
        return {e: self.details[e] for e in entity_ids if e in self.details}


class FakeNarrativeStates:
    def __init__(self, state: NarrativeState):
        self.state = state

    async def get_narrative_state(self, session_id: str) -> NarrativeState:
        return self.state


class FakeEntityGenerator:
    def __init__(self, fail_on: Iterable[str] = ()):
        self.fail_on = set(fail_on)
        self.generated = []

    async def generate_entity(self, session_id, location_id, name, kind, actions, *, description=None) -> str:
        if name in self.fail_on:
            raise RuntimeError(f"cannot generate {name}")
        entity_id = f"gen-{len(self.generated) + 1}"
        self.generated.append((session_id, location_id, name, kind, description))
        return entity_id


class RecordingNarrativeGenerator:
    def __init__(self):
        self.calls = []

    async def process_story_progression(self, milestone, session_id, character_id, narrative_text):
        self.calls.append((milestone.id, session_id, character_id, narrative_text))


class RecordingFeedbackGenerator:
    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail

    async def process_narrative_feedback(self, milestone, session_id, character_id, narrative_text):
        if self.fail:
            raise RuntimeError("feedback service down")
        self.calls.append((milestone.id, session_id, character_id, narrative_text))


class RecordingUnlockService:
    """Captures the progress and completion signals sent to the unlock engine."""

    def __init__(self):
        self.progress_calls = []
        self.completion_calls = []

    async def on_milestone_progress(self, session_id, milestone_id, progress, character_id=None):
        self.progress_calls.append((session_id, milestone_id, progress))
        return []

    async def on_milestone_completion(self, session_id, milestone, character_id=None):
        self.completion_calls.append((session_id, milestone.id))
        return []


class FakeBot:
    def __init__(self, fail_for: Iterable[int] = ()):
        self.fail_for = set(fail_for)
        self.sent = []

    async def send_message(self, chat_id, text):
        if chat_id in self.fail_for:
            raise RuntimeError("chat not found")
        self.sent.append((chat_id, text))
