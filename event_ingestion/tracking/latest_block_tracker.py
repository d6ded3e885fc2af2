from event_ingestion.logging import log
from event_ingestion.metrics import MetricsContext


# 外部链状态
# 弱一致
# 不应和 ingestion 强绑定
class LatestBlockTracker:
    """
    Chain head as seen through the RPC manager, kept monotonic.

    A provider lagging behind its peers can report an older head; small
    regressions (reorg depth) are accepted, larger ones are ignored.
    """

    def __init__(
        self,
        rpc,
        *,
        metrics: MetricsContext,
        max_reorg_tolerance: int = 5,
    ):
        self.rpc = rpc
        self.metrics = metrics
        self.max_reorg_tolerance = max_reorg_tolerance

        self._latest: int | None = None

    def get_cached(self) -> int | None:
        return self._latest

    async def refresh(self) -> int:
        candidate = await self.rpc.block_number()
        return self.apply_candidate(candidate)

    def apply_candidate(self, candidate: int) -> int:
        # ---------- first value ----------
        if self._latest is None:
            self._latest = candidate
            log.info("📌 latest_block_initialized", extra={"latest": candidate})

        # ---------- backward (reorg or stale RPC) ----------
        elif candidate < self._latest:
            delta = self._latest - candidate
            if delta <= self.max_reorg_tolerance:
                log.warning(
                    "🔄 chain_head_backward",
                    extra={"from": self._latest, "to": candidate, "delta": delta},
                )
                self._latest = candidate
            else:
                log.warning(
                    "🛑 abnormal_chain_head_backward",
                    extra={"current": self._latest, "candidate": candidate, "delta": delta},
                )

        else:
            self._latest = candidate

        self.metrics.chain_latest_block.set(self._latest)
        return self._latest
