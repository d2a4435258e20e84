from __future__ import annotations

import asyncio
import logging
import sys
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

logger = logging.getLogger(__name__)


class ConcurrencyGuard:
    """Per-payment exclusive section on top of the store's row lock.

    ``hold`` yields the store transaction holding the lock. The transaction
    commits when the block exits normally and rolls back when it raises;
    the lock is released on every exit path.

    Each hold gets its own single worker thread: the blocking lock wait and
    the release both run there, so waiters never starve the holder of a
    thread to release on and the event loop keeps serving other requests.
    """

    def __init__(self, store: Any, timeout: float):
        self.store = store
        self.timeout = timeout

    @asynccontextmanager
    async def hold(self, payment_id: str) -> AsyncIterator[Any]:
        loop = asyncio.get_running_loop()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="payment-lock")
        section = self.store.locked(payment_id, self.timeout)
        entering = executor.submit(section.__enter__)
        try:
            tx = await asyncio.wrap_future(entering)
        except asyncio.CancelledError:
            # the worker may still get the lock after the caller went away
            entering.add_done_callback(lambda done: _release_abandoned(done, section, payment_id))
            executor.shutdown(wait=False)
            raise
        except BaseException:
            executor.shutdown(wait=False)
            raise
        logger.debug("payment lock acquired", extra={"payment_id": payment_id})
        try:
            yield tx
        except BaseException:
            exc_info = sys.exc_info()
            await loop.run_in_executor(executor, section.__exit__, *exc_info)
            logger.info(
                "payment lock released after error",
                extra={"payment_id": payment_id, "event": exc_info[0].__name__ if exc_info[0] else None},
            )
            raise
        else:
            await loop.run_in_executor(executor, section.__exit__, None, None, None)
            logger.debug("payment lock released", extra={"payment_id": payment_id})
        finally:
            executor.shutdown(wait=False)


def _release_abandoned(entering: Future, section: Any, payment_id: str) -> None:
    if entering.cancelled() or entering.exception() is not None:
        return
    error = asyncio.CancelledError()
    section.__exit__(type(error), error, None)
    logger.info("abandoned payment lock released", extra={"payment_id": payment_id})
