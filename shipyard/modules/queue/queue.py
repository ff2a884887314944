import json
from datetime import UTC, datetime
from typing import List, Optional


class RunQueue:
    def __init__(self, redis_client, queue_ttl: int = 86400):
        """
        Initialize run queue.

        Args:
            redis_client: Async Redis client
            queue_ttl: Seconds an idle queue key is kept
        """
        self.redis = redis_client
        self.queue_ttl = queue_ttl

    async def enqueue(self, pipeline: str, run_id: str) -> int:
        """
        Add a run to the pipeline's queue.

        Logic:
        1. Push to pipeline queue (LPUSH for FIFO with RPOP)
        2. Remember the pipeline as having queued work
        3. Refresh expiration on queue

        Returns:
            Queue depth after the push
        """
        queue_key = f"queue:runs:{pipeline}"

        depth = await self.redis.lpush(queue_key, run_id)
        await self.redis.sadd("queue:pipelines", pipeline)
        await self.redis.expire(queue_key, self.queue_ttl)

        await self.redis.setex(
            f"run:queued:{run_id}",
            self.queue_ttl,
            json.dumps({"pipeline": pipeline, "queued_at": datetime.now(UTC).isoformat()}),
        )

        await self._increment_metric("runs_queued", pipeline)
        return depth

    async def pop(self, pipeline: str) -> Optional[str]:
        """Take the oldest queued run, or None if the queue is empty."""
        queue_key = f"queue:runs:{pipeline}"
        run_id = await self.redis.rpop(queue_key)
        if not run_id:
            await self.redis.srem("queue:pipelines", pipeline)
            # An enqueue may have landed after the RPOP; it must stay discoverable
            if await self.redis.llen(queue_key):
                await self.redis.sadd("queue:pipelines", pipeline)
            return None

        await self.redis.delete(f"run:queued:{run_id}")
        await self._increment_metric("runs_dispatched", pipeline)
        return run_id

    async def requeue(self, pipeline: str, run_id: str) -> None:
        """Put a popped run back at the head of the queue."""
        await self.redis.rpush(f"queue:runs:{pipeline}", run_id)
        await self.redis.sadd("queue:pipelines", pipeline)

    async def remove(self, pipeline: str, run_id: str) -> bool:
        """Withdraw a queued run (cancellation before dispatch)."""
        removed = await self.redis.lrem(f"queue:runs:{pipeline}", 0, run_id)
        if removed:
            await self.redis.delete(f"run:queued:{run_id}")
        return bool(removed)

    async def depth(self, pipeline: str) -> int:
        return await self.redis.llen(f"queue:runs:{pipeline}")

    async def clear(self, pipeline: str) -> int:
        """
        Drop all queued runs for a pipeline.

        Returns:
            Number of runs cleared
        """
        queue_key = f"queue:runs:{pipeline}"
        count = await self.redis.llen(queue_key)
        await self.redis.delete(queue_key)
        await self.redis.srem("queue:pipelines", pipeline)
        return count

    async def queued_pipelines(self) -> List[str]:
        members = await self.redis.smembers("queue:pipelines")
        return sorted(members or [])

    async def acquire_slot(self, pipeline: str, run_id: str, limit: int) -> bool:
        """
        Claim one of the pipeline's concurrent-run slots.

        The run id is added first and withdrawn if that pushes the set past
        the limit, so the limit is never exceeded even with several
        dispatchers racing; a lost race simply retries on the next pass.
        """
        running_key = f"running:{pipeline}"
        await self.redis.sadd(running_key, run_id)
        if await self.redis.scard(running_key) > limit:
            await self.redis.srem(running_key, run_id)
            return False
        return True

    async def release_slot(self, pipeline: str, run_id: str) -> None:
        await self.redis.srem(f"running:{pipeline}", run_id)

    async def running_count(self, pipeline: str) -> int:
        return await self.redis.scard(f"running:{pipeline}")

    async def running_runs(self, pipeline: str) -> List[str]:
        members = await self.redis.smembers(f"running:{pipeline}")
        return sorted(members or [])

    async def _increment_metric(self, metric: str, pipeline: str, count: int = 1):
        """Increment counter metric"""
        key = f"metrics:{metric}:{pipeline}"
        await self.redis.incrby(key, count)

        await self.redis.expire(key, 86400)
