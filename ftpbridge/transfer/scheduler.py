"""
Transfer queue and scheduler.

Turns a FIFO backlog of upload/download requests into at most
max_concurrent running executions. Each item follows one state machine:

    queued -> active -> completed | error
    active -> paused (observed at a chunk boundary) -> queued
    queued | active | paused -> cancelled

All methods run on the engine's event loop. Control methods are plain
functions: they flip state and flags, then run a scheduling pass; the
executions observe pause and cancel cooperatively between chunks.
"""

import asyncio
import logging
import os
import time
from datetime import datetime
from typing import AsyncIterator, Callable, Dict, List, Optional, Set

from .errors import BridgeError, NotFoundError, TransferInterrupted
from .models import (
    ProgressEvent, TransferDirection, TransferItem, TransferRequest, TransferStatus,
)
from .progress import ProgressManager
from .session_registry import SessionRegistry
from .throttle import LimitRegistry, RateLimiter, chunk_size_for

logger = logging.getLogger(__name__)

PAUSE = 'pause'
CANCEL = 'cancel'


class TransferQueue:
    """Owns every TransferItem from enqueue until it is cleared."""

    def __init__(
        self,
        sessions: SessionRegistry,
        limits: Optional[LimitRegistry] = None,
        progress: Optional[ProgressManager] = None,
        max_concurrent: int = 3,
        activity_log=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self.sessions = sessions
        self.limits = limits if limits is not None else sessions.limits
        self.progress = progress if progress is not None else ProgressManager()
        self.max_concurrent = max_concurrent
        self.activity_log = activity_log
        self.paused = False
        self._clock = clock
        self._items: Dict[int, TransferItem] = {}
        self._next_id = 1
        self._tasks: Dict[int, asyncio.Task] = {}
        self._control: Dict[int, str] = {}
        self._finished: Dict[int, asyncio.Event] = {}
        self._pending_io: Dict[int, Set[asyncio.Task]] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, transfer_id: int) -> TransferItem:
        item = self._items.get(transfer_id)
        if item is None:
            raise NotFoundError(f"Transfer not found: {transfer_id}")
        return item

    def list_items(self) -> List[TransferItem]:
        return list(self._items.values())

    def active_count(self) -> int:
        return sum(1 for item in self._items.values() if item.status is TransferStatus.ACTIVE)

    def progress_stream(self, transfer_id: int) -> AsyncIterator[ProgressEvent]:
        """Lazy event stream for one transfer; ends at its terminal status."""
        self.get(transfer_id)
        return self.progress.subscribe(transfer_id)

    async def wait(self, transfer_id: int, timeout: Optional[float] = None) -> TransferItem:
        """Wait until a transfer reaches completed, error or cancelled and its bookkeeping is written."""
        item = self.get(transfer_id)
        if not item.status.is_finished:
            event = self._finished.setdefault(transfer_id, asyncio.Event())
            await asyncio.wait_for(event.wait(), timeout)
        pending = self._pending_io.get(transfer_id)
        if pending:
            await asyncio.gather(*pending)
        return item

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def enqueue(self, request: TransferRequest) -> int:
        """Append a transfer in FIFO order and return its id immediately."""
        direction = TransferDirection.parse(request.direction)
        source = request.local_path if direction is TransferDirection.UPLOAD else request.remote_path
        size = request.size
        if not size and direction is TransferDirection.UPLOAD:
            try:
                size = os.path.getsize(request.local_path)
            except OSError:
                size = 0

        item = TransferItem(
            id=self._next_id,
            direction=direction,
            local_path=request.local_path,
            remote_path=request.remote_path,
            session_id=request.session_id,
            file_name=os.path.basename(source.rstrip('/')) or source,
            size=size,
            delete_after_upload=request.delete_after_upload,
        )
        self._next_id += 1
        self._items[item.id] = item
        logger.info(f"Transfer {item.id} queued: {direction.value} {item.file_name}")
        self.progress.notify_status(item)
        self._schedule()
        return item.id

    def pause(self, transfer_id: int) -> bool:
        """Request a pause. Only valid while active; the item turns paused at the next chunk boundary."""
        item = self.get(transfer_id)
        if item.status is not TransferStatus.ACTIVE:
            return False
        self._control[transfer_id] = PAUSE
        logger.info(f"Transfer {transfer_id} pause requested")
        return True

    def resume(self, transfer_id: int) -> bool:
        item = self.get(transfer_id)
        if item.status is not TransferStatus.PAUSED:
            return False
        item.status = TransferStatus.QUEUED
        logger.info(f"Transfer {transfer_id} resumed at {item.transferred} bytes")
        self.progress.notify_status(item)
        self._schedule()
        return True

    def cancel(self, transfer_id: int) -> bool:
        item = self.get(transfer_id)
        if not item.status.is_live:
            return False
        if item.status is TransferStatus.ACTIVE:
            # The execution discards its result when the in-flight chunk returns
            self._control[transfer_id] = CANCEL
        self._terminate(item, TransferStatus.CANCELLED)
        self._schedule()
        return True

    def pause_all(self) -> int:
        """Stop scheduling and pause every active transfer. Returns how many were paused."""
        self.paused = True
        paused = [item.id for item in self.list_items() if item.status is TransferStatus.ACTIVE]
        for transfer_id in paused:
            self.pause(transfer_id)
        logger.info(f"Queue paused ({len(paused)} active transfers pausing)")
        return len(paused)

    def resume_all(self) -> int:
        """Lift the queue pause and resume every paused transfer. Returns how many were resumed."""
        self.paused = False
        resumed = 0
        for item in self.list_items():
            if item.status is TransferStatus.PAUSED:
                item.status = TransferStatus.QUEUED
                self.progress.notify_status(item)
                resumed += 1
        logger.info(f"Queue resumed ({resumed} paused transfers requeued)")
        self._schedule()
        return resumed

    def clear_completed(self) -> int:
        """Drop completed, failed and cancelled items. Returns how many were removed."""
        finished = [item.id for item in self._items.values() if item.status.is_finished]
        for transfer_id in finished:
            del self._items[transfer_id]
            self._finished.pop(transfer_id, None)
            self.progress.forget(transfer_id)
        return len(finished)

    async def shutdown(self):
        """Cancel every live transfer and wait for executions to unwind."""
        self.paused = True
        for item in self.list_items():
            if item.status.is_live:
                self.cancel(item.id)
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        pending = [task for group in self._pending_io.values() for task in group]
        if pending:
            await asyncio.gather(*pending)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _next_queued(self) -> Optional[TransferItem]:
        for item in self._items.values():
            if item.status is TransferStatus.QUEUED:
                return item
        return None

    def _schedule(self):
        """Start queued items in FIFO order while capacity is available."""
        if self.paused:
            return
        while self.active_count() < self.max_concurrent:
            item = self._next_queued()
            if item is None:
                return
            self._start(item)

    def _start(self, item: TransferItem):
        item.status = TransferStatus.ACTIVE
        item.started_at = datetime.now()
        item.error = None
        self._control.pop(item.id, None)
        logger.info(f"Transfer {item.id} started: {item.direction.value} {item.file_name}")
        self.progress.notify_status(item)
        self._tasks[item.id] = asyncio.get_running_loop().create_task(
            self._execute(item), name=f"transfer-{item.id}"
        )

    async def _execute(self, item: TransferItem):
        transfer_id = item.id
        try:
            await self._run(item)
        except TransferInterrupted:
            flag = self._control.pop(transfer_id, None)
            if flag == PAUSE and item.status is TransferStatus.ACTIVE:
                item.status = TransferStatus.PAUSED
                item.speed = 0.0
                logger.info(f"Transfer {transfer_id} paused at {item.transferred} bytes")
                self.progress.notify_status(item)
        except BridgeError as e:
            self._fail(item, e.message)
        except Exception as e:
            logger.error(f"Transfer {transfer_id} failed unexpectedly: {e}", exc_info=True)
            self._fail(item, str(e) or e.__class__.__name__)
        else:
            self._control.pop(transfer_id, None)
            if item.status is TransferStatus.ACTIVE:
                self._complete(item)
        finally:
            self._tasks.pop(transfer_id, None)
            self._schedule()

    async def _run(self, item: TransferItem):
        session = self.sessions.get(item.session_id)
        cap = self.limits.get_effective_limit(item.session_id, item.direction)
        item.applied_cap = cap
        limiter = RateLimiter(cap, clock=self._clock)
        offset = item.transferred
        last = {'time': self._clock(), 'bytes': offset}

        def checkpoint():
            flag = self._control.get(item.id)
            if flag:
                raise TransferInterrupted(flag)

        async def on_chunk(transferred: int, total: int):
            if item.status is not TransferStatus.ACTIVE:
                return
            item.transferred = transferred
            if total:
                item.size = total
            if item.id in self._control:
                # Pause pending: bytes count toward the resume offset, nothing is published
                return
            now = self._clock()
            elapsed = now - last['time']
            if elapsed > 0:
                item.speed = (transferred - last['bytes']) / elapsed
            last['time'], last['bytes'] = now, transferred
            item.progress = min(100, round(transferred * 100 / total)) if total else 0
            self.progress.publish(ProgressEvent(
                transfer_id=item.id,
                percent=item.progress,
                transferred=transferred,
                total=total,
                speed=item.speed,
                applied_cap=cap,
            ))

        kwargs = dict(
            on_chunk=on_chunk,
            checkpoint=checkpoint,
            limiter=limiter,
            chunk_size=chunk_size_for(cap),
            offset=offset,
        )
        if item.direction is TransferDirection.UPLOAD:
            await session.upload(item.local_path, item.remote_path, **kwargs)
        else:
            await session.download(item.remote_path, item.local_path, **kwargs)

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _complete(self, item: TransferItem):
        item.progress = 100
        if item.transferred > item.size:
            item.size = item.transferred
        self._terminate(item, TransferStatus.COMPLETED)
        if item.direction is TransferDirection.UPLOAD and item.delete_after_upload:
            self._offload(item, _remove_local, item.local_path)

    def _fail(self, item: TransferItem, message: str):
        if item.status is not TransferStatus.ACTIVE:
            return
        item.error = message
        logger.error(f"Transfer {item.id} failed: {message}")
        self._terminate(item, TransferStatus.ERROR)

    def _terminate(self, item: TransferItem, status: TransferStatus):
        item.status = status
        item.finished_at = datetime.now()
        if status is TransferStatus.CANCELLED:
            item.speed = 0.0
        logger.info(f"Transfer {item.id} {status.value}")
        self.progress.close_stream(item.id)
        self.progress.notify_status(item)
        event = self._finished.get(item.id)
        if event is not None:
            event.set()
        self._record_activity(item)

    def _record_activity(self, item: TransferItem):
        if self.activity_log is None:
            return
        upload = item.direction is TransferDirection.UPLOAD
        path = item.remote_path if upload else item.local_path
        if item.status is TransferStatus.COMPLETED:
            verb = 'Uploaded' if upload else 'Downloaded'
            self._offload(item, self.activity_log.add, item.direction.value, f"{verb} {item.file_name}", {
                'file': item.file_name,
                'size': item.size,
                'duration': item.duration,
                'speed': item.speed,
                'path': path,
            })
        elif item.status is TransferStatus.ERROR:
            self._offload(item, self.activity_log.add, 'error', f"Transfer failed: {item.file_name}", {
                'file': item.file_name,
                'error': item.error,
                'type': item.direction.value,
                'path': path,
            })
        else:
            self._offload(item, self.activity_log.add, 'info', f"Transfer cancelled: {item.file_name}", {
                'file': item.file_name,
                'type': item.direction.value,
                'transferred': item.transferred,
                'path': path,
            })

    def _offload(self, item: TransferItem, func: Callable, *args):
        """Run blocking local bookkeeping for item in a worker thread; wait() joins it."""
        task = asyncio.get_running_loop().create_task(_run_blocking(func, *args))
        pending = self._pending_io.setdefault(item.id, set())
        pending.add(task)

        def done(finished: asyncio.Task):
            pending.discard(finished)
            if not pending and self._pending_io.get(item.id) is pending:
                del self._pending_io[item.id]

        task.add_done_callback(done)


async def _run_blocking(func: Callable, *args):
    try:
        await asyncio.to_thread(func, *args)
    except Exception as e:
        logger.error(f"Background bookkeeping failed in {getattr(func, '__name__', func)}: {e}")


def _remove_local(path: str):
    try:
        os.remove(path)
        logger.info(f"Cleaned up temporary file: {path}")
    except OSError as e:
        logger.warning(f"Failed to clean up temporary file {path}: {e}")
