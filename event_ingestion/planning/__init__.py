from .range_planner import BlockRange, BoundedRangePlanner, next_window
from .catch_up import CatchUpPlan, CatchUpSelector, CatchUpStrategy

__all__ = [
    "BlockRange",
    "BoundedRangePlanner",
    "next_window",
    "CatchUpPlan",
    "CatchUpSelector",
    "CatchUpStrategy",
]
