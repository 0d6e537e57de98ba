"""Top-level loop: takes the instance lock, prepares the queue and runs the services."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import List, Optional, Protocol

from darkfactory.frontmatter import PathLike
from darkfactory.lock import LOCK_FILE_NAME
from darkfactory.prompts import PromptManager

logger = logging.getLogger(__name__)

_STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class _Locker(Protocol):
    def acquire(self) -> None: ...

    def release(self) -> None: ...


class _Watcher(Protocol):
    async def watch(self) -> None: ...


class _Processor(Protocol):
    async def process(self) -> None: ...


class _Server(Protocol):
    async def listen_and_serve(self) -> None: ...


class Runner:
    """Runs the watcher, the processor and the optional server under one lock."""

    def __init__(
        self,
        inbox_dir: PathLike,
        queue_dir: PathLike,
        completed_dir: PathLike,
        prompt_manager: PromptManager,
        locker: _Locker,
        watcher: _Watcher,
        processor: _Processor,
        server: Optional[_Server] = None,
        handle_signals: bool = True,
    ) -> None:
        self.inbox_dir = os.fspath(inbox_dir)
        self.queue_dir = os.fspath(queue_dir)
        self.completed_dir = os.fspath(completed_dir)
        self.prompt_manager = prompt_manager
        self.locker = locker
        self.watcher = watcher
        self.processor = processor
        self.server = server
        self.handle_signals = handle_signals

    async def run(self) -> None:
        """Lock, reset stuck prompts, normalize names, then run the services together.

        Returns when every service has finished or on SIGINT/SIGTERM. If one
        service fails, the others are cancelled and its exception is raised.
        """
        self.locker.acquire()
        try:
            logger.info("dark-factory: acquired lock %s", LOCK_FILE_NAME)
            stop = asyncio.Event()
            installed = self._install_signal_handlers(stop)
            try:
                self._create_directories()
                logger.info("dark-factory: watching %s for queued prompts...", self.queue_dir)
                self.prompt_manager.reset_executing()
                self._normalize_filenames()
                await self._run_services(stop)
            finally:
                self._remove_signal_handlers(installed)
        finally:
            try:
                self.locker.release()
            except Exception as exc:
                logger.warning("dark-factory: failed to release lock: %s", exc)

    def _install_signal_handlers(self, stop: asyncio.Event) -> List[signal.Signals]:
        if not self.handle_signals:
            return []
        loop = asyncio.get_running_loop()
        installed = []
        for sig in _STOP_SIGNALS:
            try:
                loop.add_signal_handler(sig, stop.set)
            except (NotImplementedError, RuntimeError, ValueError):
                continue
            installed.append(sig)
        return installed

    @staticmethod
    def _remove_signal_handlers(installed: List[signal.Signals]) -> None:
        if not installed:
            return
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)

    def _create_directories(self) -> None:
        for directory in (self.inbox_dir, self.queue_dir, self.completed_dir):
            try:
                os.makedirs(directory, mode=0o750, exist_ok=True)
            except OSError as exc:
                raise OSError(f"create directory {directory}: {exc}") from exc

    def _normalize_filenames(self) -> None:
        """Normalize the queue only; the inbox holds drafts and is left alone."""
        try:
            renames = self.prompt_manager.normalize_filenames(self.queue_dir)
        except Exception as exc:
            raise RuntimeError(f"normalize queue filenames: {exc}") from exc
        for rename in renames or []:
            logger.info(
                "dark-factory: renamed %s -> %s",
                os.path.basename(rename.old_path),
                os.path.basename(rename.new_path),
            )

    async def _run_services(self, stop: asyncio.Event) -> None:
        coroutines = [self.watcher.watch(), self.processor.process()]
        if self.server is not None:
            coroutines.append(self.server.listen_and_serve())
        workers = [asyncio.ensure_future(coro) for coro in coroutines]
        stop_waiter = asyncio.ensure_future(stop.wait())
        try:
            pending = set(workers)
            while pending:
                done, _ = await asyncio.wait(
                    pending | {stop_waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                if stop_waiter in done:
                    return
                for task in done:
                    pending.discard(task)
                    if task.cancelled():
                        continue
                    exc = task.exception()
                    if exc is not None:
                        raise exc
        finally:
            stop_waiter.cancel()
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, stop_waiter, return_exceptions=True)