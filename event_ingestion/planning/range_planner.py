from dataclasses import dataclass
from typing import Iterator, Optional


@dataclass(frozen=True)
class BlockRange:
    start_block: int
    end_block: int

    def __post_init__(self):
        if self.start_block > self.end_block:
            raise ValueError(
                f"start_block {self.start_block} > end_block {self.end_block}"
            )

    @property
    def size(self) -> int:
        return self.end_block - self.start_block + 1

    def split(self, span: int) -> Iterator["BlockRange"]:
        """Consecutive sub-ranges of at most ``span`` blocks."""
        span = max(1, span)
        for start in range(self.start_block, self.end_block + 1, span):
            yield BlockRange(start, min(start + span - 1, self.end_block))


# -------------------------
# Realtime: 永远追 safe head
# window 总是从 checkpoint + 1 开始, 失败后原样重试
# -------------------------
def next_window(
    last_indexed_block: int,
    safe_head: int,
    batch_size: int,
) -> Optional[BlockRange]:
    start = last_indexed_block + 1
    if start > safe_head:
        return None
    return BlockRange(start, min(start + max(1, batch_size) - 1, safe_head))


class BoundedRangePlanner:
    """
    Backfill planner
    - 有明确 end_block
    - 不追新块
    - 生成完即结束
    """
    def __init__(
        self,
        start_block: int,
        end_block: int,
        range_size: int,
    ):
        if start_block > end_block:
            raise ValueError(
                f"start_block {start_block} > end_block {end_block}"
            )

        self._next_block = start_block
        self._end_block = end_block
        self._range_size = max(1, range_size)

    def next_range(self, latest_block: int) -> Optional[BlockRange]:
        # hard stop
        if self._next_block > self._end_block:
            return None

        # 安全上限：不能超过 planner 的 end_block
        upper = min(latest_block, self._end_block)
        if self._next_block > upper:
            return None

        start = self._next_block
        end = min(start + self._range_size - 1, upper)
        self._next_block = end + 1
        return BlockRange(start, end)

    @property
    def exhausted(self) -> bool:
        return self._next_block > self._end_block
