# arbgate/logger.py
import asyncio
import aiofiles
from aiocsv import AsyncWriter
import logging
import sys
import os
from typing import List, Any, Optional


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class AsyncAuditLogger:
    """
    Non-blocking CSV audit trail for risk alerts and trade outcomes.
    Decouples disk I/O from the pipeline using an asyncio Queue.
    """
    def __init__(self, filepath: str, header: Optional[List[str]] = None):
        self.filepath = filepath
        self.header = header
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker_task = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    async def start(self):
        """
        Creates the directory and file (with header when new) and starts the background writer.
        """
        directory = os.path.dirname(self.filepath)
        if directory and not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)

        is_new = not os.path.exists(self.filepath) or os.path.getsize(self.filepath) == 0
        async with aiofiles.open(self.filepath, mode='a', newline='') as f:
            if is_new and self.header:
                await AsyncWriter(f, dialect='unix').writerow(self.header)
        self._loop = asyncio.get_running_loop()
        self._worker_task = asyncio.create_task(self._writer_worker())

    def log_row(self, row: List[Any]):
        """
        Non-blocking call to add a record to the queue. Safe to call from sync
        callbacks and from threads other than the writer's event loop.
        """
        loop = self._loop
        if loop is None or _running_loop() is loop:
            self._queue.put_nowait(row)
            return
        try:
            loop.call_soon_threadsafe(self._queue.put_nowait, row)
        except RuntimeError as e:
            # Loop already closed
            print(f"AUDIT LOGGING FAILURE: {e}", file=sys.stderr)

    async def stop(self):
        """Flushes pending rows, then stops the writer."""
        if self._worker_task is None:
            return
        # Let rows handed over from other threads reach the queue first
        await asyncio.sleep(0)
        await self._queue.join()
        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        self._worker_task = None
        self._loop = None

    async def _writer_worker(self):
        """
        Background consumer that writes to disk.
        """
        while True:
            row = await self._queue.get()
            try:
                async with aiofiles.open(self.filepath, mode='a', newline='') as f:
                    writer = AsyncWriter(f, dialect='unix')
                    await writer.writerow(row)
            except Exception as e:
                # Disk failures must not take the pipeline down
                print(f"AUDIT LOGGING FAILURE: {e}", file=sys.stderr)
            finally:
                self._queue.task_done()


def setup_console_logger(name: str, level: str):
    """
    Sets up the standard Python logger for console output.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter('%(asctime)s | %(levelname)s | %(module)s | %(message)s')
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
