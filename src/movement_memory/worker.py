"""Background job runner for movement memory recomputes.

Jobs live in ``background_jobs``. One loop drains pending jobs in batches;
it wakes every poll interval, or early when a NOTIFY arrives on
``movement_memory_jobs``. Claimed jobs that would recompute the same
(user, exercise) keys as a later job in the same batch are superseded
rather than run, since every recompute reads the full current history.

Entry point: ``movement-memory-worker`` (``main`` below).
"""

import asyncio
import logging
import signal
from typing import Any

import psycopg
from psycopg.rows import dict_row

from . import handlers  # noqa: F401  (registers job and projection handlers)
from .config import Config
from .handlers.movement_memory import affected_exercises
from .health import start_health_server
from .logging import log_context, setup_logging
from .metrics import record_job
from .registry import get_handler, registered_types, subscriptions

logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = "movement_memory_jobs"
MAX_RETRY_DELAY_SECONDS = 300
MAX_RECONNECT_DELAY_SECONDS = 60


def retry_delay(attempt: int) -> float:
    """Seconds before a failed job is retried: 2, 4, 8, ... capped."""
    return float(min(2**attempt, MAX_RETRY_DELAY_SECONDS))


def reconnect_delay(failures: int) -> float:
    """Seconds before reopening a lost LISTEN connection."""
    return float(min(2 ** max(failures - 1, 0), MAX_RECONNECT_DELAY_SECONDS))


def recompute_signature(job: dict[str, Any]) -> tuple[str, str, tuple[str, ...]] | None:
    """Key identifying which memories a projection job rewrites, or None."""
    if job.get("job_type") != "projection.update":
        return None
    payload = job.get("payload") or {}
    user_id = payload.get("user_id") or job.get("user_id")
    targets = affected_exercises(payload)
    if not user_id or not targets:
        return None
    return (str(payload.get("event_type", "")), str(user_id), tuple(sorted(targets)))


def split_superseded(
    jobs: list[dict[str, Any]],
) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Split a claimed batch into jobs to run and jobs made redundant by a later one."""
    last_by_signature: dict[tuple[str, str, tuple[str, ...]], int] = {}
    for index, job in enumerate(jobs):
        signature = recompute_signature(job)
        if signature is not None:
            last_by_signature[signature] = index

    to_run: list[dict[str, Any]] = []
    superseded: list[dict[str, Any]] = []
    for index, job in enumerate(jobs):
        signature = recompute_signature(job)
        if signature is not None and last_by_signature[signature] != index:
            superseded.append(job)
        else:
            to_run.append(job)
    return to_run, superseded


_STATUS_SQL = {
    "completed": """
        UPDATE background_jobs
        SET status = 'completed', completed_at = NOW(), error_message = %s
        WHERE id = ANY(%s)
    """,
    "dead": """
        UPDATE background_jobs
        SET status = 'dead', completed_at = NOW(), error_message = %s
        WHERE id = ANY(%s)
    """,
    "pending": """
        UPDATE background_jobs
        SET status = 'pending',
            error_message = %s,
            scheduled_for = NOW() + make_interval(secs => %s)
        WHERE id = ANY(%s)
    """,
}


class Worker:
    def __init__(self, config: Config) -> None:
        self.config = config
        self._shutdown = asyncio.Event()
        self._wake = asyncio.Event()

    async def run(self) -> None:
        """Drain jobs until SIGTERM/SIGINT."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_shutdown)

        logger.info(
            "Worker starting (poll_interval=%.1fs, batch_size=%d, history_limit=%d)",
            self.config.poll_interval_seconds,
            self.config.batch_size,
            self.config.history_limit,
        )
        async with asyncio.TaskGroup() as tg:
            tg.create_task(self._listen_loop())
            tg.create_task(self._drain_loop())

    def request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown.set()
        self._wake.set()

    async def _sleep(self, seconds: float) -> None:
        """Sleep, returning early on shutdown."""
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def _listen_loop(self) -> None:
        """Turn NOTIFYs into wake-ups for the drain loop; never runs jobs itself."""
        failures = 0
        while not self._shutdown.is_set():
            try:
                async with await psycopg.AsyncConnection.connect(
                    self.config.listen_database_url, autocommit=True
                ) as conn:
                    await conn.execute(f"LISTEN {NOTIFY_CHANNEL}")
                    failures = 0
                    logger.info("Listening on %s", NOTIFY_CHANNEL)
                    while not self._shutdown.is_set():
                        async for notify in conn.notifies(
                            timeout=self.config.poll_interval_seconds
                        ):
                            logger.debug("NOTIFY %s", notify.payload)
                            self._wake.set()
            except psycopg.OperationalError:
                if self._shutdown.is_set():
                    break
                failures += 1
                delay = reconnect_delay(failures)
                logger.warning("LISTEN connection lost, reconnecting in %.0fs", delay)
                await self._sleep(delay)

        logger.info("Listen loop stopped")

    async def _drain_loop(self) -> None:
        while not self._shutdown.is_set():
            claimed = await self._process_batch()
            if claimed >= self.config.batch_size:
                continue
            try:
                await asyncio.wait_for(
                    self._wake.wait(), timeout=self.config.poll_interval_seconds
                )
            except TimeoutError:
                pass
            self._wake.clear()

        logger.info("Drain loop stopped")

    async def _process_batch(self) -> int:
        """Claim and run one batch; returns the number of jobs claimed."""
        try:
            async with await psycopg.AsyncConnection.connect(
                self.config.database_url
            ) as conn:
                jobs = await self._claim_jobs(conn)
                # Claims are committed first so a crash leaves them visible.
                await conn.commit()

                to_run, superseded = split_superseded(jobs)
                if superseded:
                    await self._set_status(
                        conn,
                        [job["id"] for job in superseded],
                        "completed",
                        error="superseded by a later recompute in the same batch",
                    )
                    record_job("superseded", len(superseded))
                    logger.info("Superseded %d duplicate recompute job(s)", len(superseded))
                for job in to_run:
                    await self._process_job(conn, job)
                return len(jobs)
        except Exception:
            logger.exception("Job batch aborted")
            return 0

    async def _claim_jobs(
        self, conn: psycopg.AsyncConnection[Any]
    ) -> list[dict[str, Any]]:
        """Claim pending jobs of the registered types with FOR UPDATE SKIP LOCKED."""
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                UPDATE background_jobs
                SET status = 'processing', started_at = NOW(), attempt = attempt + 1
                WHERE id IN (
                    SELECT id FROM background_jobs
                    WHERE status = 'pending'
                      AND scheduled_for <= NOW()
                      AND job_type = ANY(%s)
                    ORDER BY scheduled_for, priority DESC, id
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING id, user_id, job_type, payload, attempt, max_retries
                """,
                (registered_types(), self.config.batch_size),
            )
            rows = await cur.fetchall()
        return sorted(rows, key=lambda row: row["id"])

    def _job_payload(self, job: dict[str, Any]) -> dict[str, Any]:
        payload = dict(job.get("payload") or {})
        payload.setdefault("user_id", job.get("user_id"))
        payload.setdefault("history_limit", self.config.history_limit)
        return payload

    async def _process_job(
        self, conn: psycopg.AsyncConnection[Any], job: dict[str, Any]
    ) -> None:
        """Run one job; the handler's writes and the completion commit together."""
        job_id = job["id"]
        job_type = job["job_type"]
        payload = self._job_payload(job)

        with log_context(job_id=job_id, job_type=job_type, user_id=payload.get("user_id")):
            handler = get_handler(job_type)
            if handler is None:
                logger.warning("No handler for job_type=%s", job_type)
                await self._set_status(conn, [job_id], "dead", error=f"No handler for job_type={job_type}")
                record_job("dead")
                return

            try:
                async with conn.transaction():
                    await handler(conn, payload)
                    await conn.execute(_STATUS_SQL["completed"], (None, [job_id]))
            except Exception as exc:
                logger.exception("Job %d failed (attempt %d/%d)", job_id, job["attempt"], job["max_retries"])
                if job["attempt"] >= job["max_retries"]:
                    await self._set_status(conn, [job_id], "dead", error=str(exc))
                    record_job("dead")
                    logger.error("Job %d is dead", job_id)
                else:
                    delay = retry_delay(job["attempt"])
                    await self._set_status(conn, [job_id], "pending", error=str(exc), retry_in=delay)
                    record_job("retried")
                    logger.info("Job %d retrying in %.0fs", job_id, delay)
                return

            record_job("completed")
            logger.info("Job %d completed", job_id)

    async def _set_status(
        self,
        conn: psycopg.AsyncConnection[Any],
        job_ids: list[int],
        status: str,
        *,
        error: str | None = None,
        retry_in: float | None = None,
    ) -> None:
        """Move jobs out of 'processing' and commit."""
        if status == "pending":
            params: tuple[Any, ...] = (error, retry_in or 0.0, job_ids)
        else:
            params = (error, job_ids)
        async with conn.cursor() as cur:
            await cur.execute(_STATUS_SQL[status], params)
        await conn.commit()


async def _serve(config: Config) -> None:
    health_server = await start_health_server(config.health_port, config.database_url)
    try:
        await Worker(config).run()
    finally:
        health_server.close()
        await health_server.wait_closed()


def main() -> None:
    config = Config.from_env()
    setup_logging(config.log_format)
    logger.info(
        "Movement memory worker (log_format=%s, health_port=%d, job_types=%s, subscriptions=%s)",
        config.log_format,
        config.health_port,
        registered_types(),
        subscriptions(),
    )
    asyncio.run(_serve(config))


if __name__ == "__main__":
    main()
