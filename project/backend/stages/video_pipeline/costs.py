"""
Credit costs per stage kind.
"""

import math
from typing import Any, Mapping

STAGE_COSTS = {
    "upload": 0,
    "narrate": None,  # depends on script length, see narration_cost
    "align": 1,
    "compose": 2,
    "render": 5,
    "polish": 10,
}

# Characters of narration script charged as one credit
NARRATION_CHARS_PER_CREDIT = 100


def narration_cost(script: str) -> int:
    """One credit per started 100 characters, minimum 1."""
    return max(1, math.ceil(len(script or "") / NARRATION_CHARS_PER_CREDIT))


def stage_cost(stage: str, context: Mapping[str, Any]) -> int:
    """Credits charged for one attempt of a stage."""
    if stage == "narrate":
        return narration_cost(context.get("narration_script", ""))
    if stage not in STAGE_COSTS:
        raise KeyError(f"Unknown stage kind: {stage}")
    return STAGE_COSTS[stage]
