"""
Opportunity stage ordering.

Stages move forward through intake -> quote -> uw_review -> bind. `lost` is
terminal and reachable from any non-terminal stage.
"""

from quotedesk.models import Opportunity, OpportunityStage, utcnow

STAGE_ORDER = [
    OpportunityStage.INTAKE.value,
    OpportunityStage.QUOTE.value,
    OpportunityStage.UW_REVIEW.value,
    OpportunityStage.BIND.value,
]

TERMINAL_STAGES = {OpportunityStage.LOST.value}


def can_transition(current: str, target: str) -> bool:
    """Whether moving an opportunity from `current` to `target` is a legal transition."""
    if current in TERMINAL_STAGES:
        return False
    if target == OpportunityStage.LOST.value:
        return True
    if current not in STAGE_ORDER or target not in STAGE_ORDER:
        return False
    return STAGE_ORDER.index(target) > STAGE_ORDER.index(current)


def advance_on_quoted(opportunity: Opportunity, policy: str = "always") -> bool:
    """
    Move an opportunity to uw_review after a quoted outcome.

    "always" sets the stage unconditionally, matching how the CRM has always
    behaved (including moving a `bind` opportunity back to uw_review).
    "forward_only" only applies legal forward transitions.

    Returns:
        True if the stage changed
    """
    target = OpportunityStage.UW_REVIEW.value
    if opportunity.stage == target:
        return False
    if policy == "forward_only" and not can_transition(opportunity.stage, target):
        return False

    opportunity.stage = target
    opportunity.updated_at = utcnow()
    return True
