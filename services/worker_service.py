from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from dotenv import load_dotenv

from core.blob_store import BlobStore, build_blob_store
from core.config import Settings
from core.errors import DependencyError
from core.index import MetadataIndex
from core.queue import MessageQueue, QueueMessage, build_queue
from services.consumer import MessageResult, MessageState, QueueConsumer


logger = logging.getLogger("index_worker")


class IndexWorker:
    """Stateless worker that drains the indexing queue into the metadata index."""

    def __init__(
        self,
        settings: Settings,
        *,
        blob_store: BlobStore | None = None,
        index: MetadataIndex | None = None,
        queue: MessageQueue | None = None,
    ):
        self.settings = settings
        self.blob_store = blob_store
        self.index = index
        self.queue = queue
        self.consumer: QueueConsumer | None = None
        self.running = False
        self.stats = {state.value: 0 for state in MessageState}
        self.unsettled: list[tuple[QueueMessage, MessageResult]] = []

    async def connect(self) -> None:
        if self.blob_store is None:
            self.blob_store = build_blob_store(self.settings)
        if self.index is None:
            self.index = await MetadataIndex.connect(
                self.settings.database_url,
                min_size=1,
                max_size=max(2, self.settings.worker_concurrency),
            )
        if self.queue is None:
            self.queue = build_queue(self.settings)
            await self.queue.ensure_ready()
        self.consumer = QueueConsumer(
            blob_store=self.blob_store,
            index=self.index,
            concurrency=self.settings.worker_concurrency,
        )

    async def disconnect(self) -> None:
        if self.index:
            await self.index.close()

    async def _settle(self, message: QueueMessage, result: MessageResult) -> bool:
        """Ack, requeue or dead-letter one message.

        A message that cannot be requeued is dead-lettered instead. Returns
        False when the queue accepted neither, in which case the caller must
        keep the message.
        """
        try:
            if result.state is MessageState.INDEXED:
                await self.queue.ack(message)
                return True
            if result.state is MessageState.FAILED_RETRYABLE:
                try:
                    await self.queue.retry(message)
                    return True
                except DependencyError as exc:
                    logger.error(f"Could not requeue message {message.message_id}, dead-lettering it: {exc}")
            await self.queue.dead_letter(message, result.error or "rejected")
            return True
        except DependencyError as exc:
            logger.error(f"Could not settle message {message.message_id} ({result.state.value}): {exc}")
            return False

    async def _settle_all(self, settlements: list[tuple[QueueMessage, MessageResult]]) -> None:
        for message, result in settlements:
            if not await self._settle(message, result):
                self.unsettled.append((message, result))
        if self.unsettled:
            raise DependencyError(f"{len(self.unsettled)} message(s) could not be settled")

    async def run_once(self) -> int:
        """Pull and process one batch; returns the number of messages handled.

        Messages left unsettled by an earlier batch are settled first, and
        nothing new is pulled until they are.
        """
        if self.unsettled:
            pending, self.unsettled = self.unsettled, []
            await self._settle_all(pending)
        messages = await self.queue.receive(self.settings.worker_batch_size)
        if not messages:
            return 0
        results = await self.consumer.process_batch(messages)
        for result in results:
            self.stats[result.state.value] += 1
        failed = sum(1 for r in results if r.failed)
        logger.info(f"Processed batch of {len(messages)} messages ({failed} failed)")
        await self._settle_all(list(zip(messages, results)))
        return len(messages)

    async def run(self, *, drain: bool = False) -> None:
        self.running = True
        logger.info("Index worker starting...")
        await self.connect()
        try:
            while self.running:
                try:
                    handled = await self.run_once()
                except DependencyError as exc:
                    logger.error(f"Worker loop error: {exc}")
                    if drain:
                        raise
                    handled = 0
                if handled == 0:
                    if drain:
                        break
                    await asyncio.sleep(self.settings.worker_poll_interval)
        finally:
            if self.unsettled:
                ids = ", ".join(m.message_id for m, _ in self.unsettled)
                logger.error(f"Stopping with {len(self.unsettled)} unsettled message(s): {ids}")
            await self.disconnect()
            logger.info(f"Index worker stopped: {self.stats}")

    def stop(self) -> None:
        self.running = False
        logger.info("Index worker stopping...")


async def _amain(drain: bool) -> None:
    settings = Settings.from_env()
    worker = IndexWorker(settings)

    def shutdown(signum, frame):
        worker.stop()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)
    await worker.run(drain=drain)


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    p = argparse.ArgumentParser(prog="archivist-worker", description="Drain the indexing queue into Postgres.")
    p.add_argument("--drain", action="store_true", help="Exit once the queue is empty")
    args = p.parse_args(argv)
    logging.basicConfig(
        level=Settings.from_env().log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    try:
        asyncio.run(_amain(args.drain))
    except DependencyError as exc:
        logger.error(f"Index worker stopped on error: {exc}")
        return 1
    return 0


__all__ = [
    "IndexWorker",
    "main",
]
