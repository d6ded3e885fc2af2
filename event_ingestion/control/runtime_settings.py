from dataclasses import dataclass

from event_ingestion.logging import log


@dataclass(frozen=True)
class SettingsSnapshot:
    batch_size: int
    poll_interval: float
    concurrency: int


# 控制面: lag monitor 写, 主循环每轮开始时读
class RuntimeSettings:
    def __init__(self, batch_size: int, poll_interval: float, concurrency: int):
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.concurrency = concurrency

        self._normal = SettingsSnapshot(batch_size, poll_interval, concurrency)
        self._before_emergency: SettingsSnapshot | None = None
        self._catch_up_until: int | None = None

    def snapshot(self) -> SettingsSnapshot:
        return SettingsSnapshot(self.batch_size, self.poll_interval, self.concurrency)

    @property
    def in_emergency(self) -> bool:
        return self._before_emergency is not None

    # -------------------------
    # catch-up (startup)
    # -------------------------
    def enter_catch_up(self, batch_size: int, concurrency: int, until_block: int):
        self.batch_size = batch_size
        self.concurrency = concurrency
        self._catch_up_until = until_block

    def finish_catch_up_if_reached(self, last_indexed_block: int) -> bool:
        if self._catch_up_until is None or last_indexed_block < self._catch_up_until:
            return False

        self._catch_up_until = None
        if self.in_emergency:
            # emergency exit will restore the normal knobs
            self._before_emergency = self._normal
        else:
            self._apply(self._normal)
        log.info("catch_up_finished", extra={"last_indexed_block": last_indexed_block})
        return True

    # -------------------------
    # emergency (lag monitor)
    # -------------------------
    def enter_emergency(self, multiplier: int, max_batch_size: int, poll_divider: float):
        self._before_emergency = self.snapshot()
        # never shrink a catch-up batch that is already above the cap
        self.batch_size = max(self.batch_size, min(self.batch_size * multiplier, max_batch_size))
        self.poll_interval = self.poll_interval / poll_divider

    def exit_emergency(self):
        if self._before_emergency is not None:
            self._apply(self._before_emergency)
            self._before_emergency = None

    def _apply(self, s: SettingsSnapshot):
        self.batch_size = s.batch_size
        self.poll_interval = s.poll_interval
        self.concurrency = s.concurrency
