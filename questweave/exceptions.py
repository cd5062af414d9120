class QuestweaveError(Exception):
    """Base class for errors a caller is expected to handle."""


class MilestoneNotFound(QuestweaveError):
    def __init__(self, milestone_id: str):
        super().__init__(f"Milestone {milestone_id} not found")
        self.milestone_id = milestone_id


class MilestoneInUse(QuestweaveError):
    """Raised when deleting a milestone still referenced by active unlock conditions."""

    def __init__(self, milestone_id: str, condition_ids: list[str]):
        super().__init__(
            f"Milestone {milestone_id} is referenced by active unlock conditions: {', '.join(condition_ids)}"
        )
        self.milestone_id = milestone_id
        self.condition_ids = condition_ids


class InvalidRuleDefinition(QuestweaveError):
    """Raised when registering a rule set that can never be evaluated."""
