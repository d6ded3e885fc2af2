from .latest_block_tracker import LatestBlockTracker

__all__ = ["LatestBlockTracker"]
