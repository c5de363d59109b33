"""
Periodic claim/execute/settle loop.

Each tick claims due jobs in batches and hands them to the delivery executor
one by one. Several ticks (or several processes) may run at once; the claim's
compare-and-set guarantees each job is handed out once.
"""

import asyncio
import logging
from typing import Optional

from guestcomms import storage
from guestcomms.logging_utils import job_context
from guestcomms.metrics import record_claim_round
from guestcomms.utils import utcnow

logger = logging.getLogger(__name__)


class ClaimLoop:
    def __init__(
        self,
        session_factory,
        executor,
        batch_size: int = 25,
        max_iterations: int = 10,
        lease_seconds: int = 0,
    ):
        self.session_factory = session_factory
        self.executor = executor
        self.batch_size = batch_size
        self.max_iterations = max_iterations
        self.lease_seconds = lease_seconds

    def claim(self, limit: Optional[int] = None) -> list:
        with self.session_factory() as db:
            return storage.claim_due_messages(
                db,
                limit if limit is not None else self.batch_size,
                now=utcnow(),
                lease_seconds=self.lease_seconds,
            )

    def tick(self) -> int:
        """
        Run one processing pass.

        Returns:
            Number of jobs executed.
        """
        processed = 0

        for iteration in range(self.max_iterations):
            claimed = self.claim()
            record_claim_round(len(claimed))

            if not claimed:
                if iteration == 0:
                    logger.debug("No scheduled messages ready for processing")
                break

            for job in claimed:
                with job_context(job.id, job.tenant_id):
                    try:
                        self.executor.execute(job)
                    except Exception as e:
                        # One bad job must not hold up the rest of the batch
                        logger.error(f"Unexpected error executing message {job.id}: {e}", exc_info=True)
                processed += 1

            if len(claimed) < self.batch_size:
                break

        if processed:
            logger.info(f"Claim loop tick processed {processed} messages")
        return processed

    async def run_forever(self, interval: float, stop_event: asyncio.Event) -> None:
        """Call ``tick`` in a worker thread every ``interval`` seconds until stopped."""
        logger.info(f"Claim loop started (interval={interval}s, batch_size={self.batch_size})")
        while not stop_event.is_set():
            try:
                await asyncio.to_thread(self.tick)
            except Exception as e:
                logger.error(f"Claim loop tick failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Claim loop stopped")
