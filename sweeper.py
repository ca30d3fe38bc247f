"""Periodic reclamation of expired state.

Advisory only: every read path already treats expired entries as absent, so
a late or skipped sweep costs memory, never correctness.
"""

import inspect
import logging

import anyio

logger = logging.getLogger(__name__)


class Sweeper:
    def __init__(
        self,
        auth_server,
        broker,
        report_cache=None,
        rate_limiter=None,
        oauth_interval: float = 300,
        session_interval: float = 60,
    ):
        self.auth_server = auth_server
        self.broker = broker
        self.report_cache = report_cache
        self.rate_limiter = rate_limiter
        self.oauth_interval = oauth_interval
        self.session_interval = session_interval

    def sweep_oauth(self) -> dict:
        """Drop expired codes, tokens, CSRF entries and rate-limit windows."""
        removed = self.auth_server.sweep()
        if self.rate_limiter is not None:
            removed["rate_limits"] = self.rate_limiter.prune()
        if any(removed.values()):
            logger.info(f"[SWEEP] OAuth state reclaimed: {removed}")
        return removed

    async def sweep_sessions(self) -> dict:
        """Close idle sessions and prune the shared report cache."""
        removed = {"sessions": await self.broker.sweep()}
        if self.report_cache is not None:
            removed["reports"] = self.report_cache.prune()
        if any(removed.values()):
            logger.info(f"[SWEEP] Session state reclaimed: {removed}")
        return removed

    async def _every(self, interval: float, job) -> None:
        while True:
            await anyio.sleep(interval)
            try:
                result = job()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("[SWEEP] Sweep failed, will retry next interval")

    async def run(self) -> None:
        """Run both sweep loops until cancelled."""
        logger.info(
            f"[SWEEP] Started (oauth every {self.oauth_interval}s, sessions every {self.session_interval}s)"
        )
        async with anyio.create_task_group() as tg:
            tg.start_soon(self._every, self.oauth_interval, self.sweep_oauth)
            tg.start_soon(self._every, self.session_interval, self.sweep_sessions)
