"""Executes queued prompts one at a time and commits the results."""

from __future__ import annotations

import asyncio
import logging
import os
import re
from enum import Enum
from typing import Awaitable, Optional, Protocol, TypeVar

from darkfactory.frontmatter import EmptyPromptError, PathLike, Status
from darkfactory.prompts import Prompt, PromptManager, PromptValidationError

logger = logging.getLogger(__name__)

_T = TypeVar("_T")
_UNSAFE_CONTAINER_CHARS = re.compile(r"[^a-zA-Z0-9_-]")
_MINOR_KEYWORDS = ("add", "implement", "new", "support", "feature")
_PR_BODY = "Automated by dark-factory"


class Workflow(str, Enum):
    """How finished prompts reach the repository."""

    DIRECT = "direct"
    PR = "pr"


class VersionBump(str, Enum):
    """Which part of the version a release increments."""

    PATCH = "patch"
    MINOR = "minor"


class _Executor(Protocol):
    async def execute(self, content: str, log_file: str, container_name: str) -> None: ...


class _Releaser(Protocol):
    async def commit_completed_file(self, path: str) -> None: ...

    async def commit_only(self, message: str) -> None: ...

    async def has_changelog(self) -> bool: ...

    async def get_next_version(self, bump: VersionBump) -> str: ...

    async def commit_and_release(self, title: str, bump: VersionBump) -> None: ...


class _Brancher(Protocol):
    async def current_branch(self) -> str: ...

    async def create_and_switch(self, name: str) -> None: ...

    async def push(self, name: str) -> None: ...

    async def switch(self, name: str) -> None: ...


class _PRCreator(Protocol):
    async def create(self, title: str, body: str) -> str: ...


def determine_bump(title: str) -> VersionBump:
    """MINOR if the title mentions a new feature, PATCH otherwise."""
    lower = title.lower()
    if any(keyword in lower for keyword in _MINOR_KEYWORDS):
        return VersionBump.MINOR
    return VersionBump.PATCH


def sanitize_container_name(name: str) -> str:
    """Replace every character outside [a-zA-Z0-9_-] with a hyphen."""
    return _UNSAFE_CONTAINER_CHARS.sub("-", name)


async def _run_to_completion(awaitable: Awaitable[_T]) -> _T:
    """Await work that must finish even if the caller is cancelled meanwhile."""
    task = asyncio.ensure_future(awaitable)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            logger.warning("dark-factory: git operation failed during shutdown: %s",
                           task.exception())
        raise


class Processor:
    """Picks queued prompts in order, runs them and records the outcome in git."""

    def __init__(
        self,
        queue_dir: PathLike,
        completed_dir: PathLike,
        log_dir: PathLike,
        executor: _Executor,
        prompt_manager: PromptManager,
        releaser: _Releaser,
        version: str,
        ready: Optional[asyncio.Event] = None,
        workflow: Workflow = Workflow.DIRECT,
        brancher: Optional[_Brancher] = None,
        pr_creator: Optional[_PRCreator] = None,
        scan_interval: float = 5.0,
    ) -> None:
        self.queue_dir = os.fspath(queue_dir)
        self.completed_dir = os.fspath(completed_dir)
        self.log_dir = os.fspath(log_dir)
        self.executor = executor
        self.prompt_manager = prompt_manager
        self.releaser = releaser
        self.version = version
        self.ready = ready if ready is not None else asyncio.Event()
        self.workflow = Workflow(workflow)
        self.brancher = brancher
        self.pr_creator = pr_creator
        self.scan_interval = scan_interval
        if self.workflow is Workflow.PR and (brancher is None or pr_creator is None):
            raise ValueError("the pr workflow needs a brancher and a pr creator")

    async def process(self) -> None:
        """Run until cancelled: drain the queue on start, on each ready signal and periodically."""
        logger.info("dark-factory: processor started")
        try:
            self.prompt_manager.reset_failed()
            await self._process_existing_queued()
            while True:
                try:
                    await asyncio.wait_for(self.ready.wait(), self.scan_interval)
                except asyncio.TimeoutError:
                    pass
                self.ready.clear()
                await self._process_existing_queued()
        except asyncio.CancelledError:
            logger.info("dark-factory: processor shutting down")
            raise

    async def _process_existing_queued(self) -> None:
        while True:
            await asyncio.sleep(0)
            queued = self.prompt_manager.list_queued()
            if not queued:
                return

            pr = queued[0]
            name = os.path.basename(pr.path)
            try:
                pr.validate_for_execution()
            except PromptValidationError as exc:
                logger.info("dark-factory: skipping %s: %s", name, exc)
                continue

            if not self.prompt_manager.all_previous_completed(pr.number()):
                logger.info("dark-factory: skipping %s: previous prompt not completed", name)
                continue

            logger.info("dark-factory: found queued prompt: %s", name)
            try:
                await self._process_prompt(pr)
            except Exception:
                try:
                    self.prompt_manager.set_status(pr.path, Status.FAILED)
                except Exception as set_exc:
                    logger.warning("dark-factory: failed to set failed status: %s", set_exc)
                raise

            logger.info("dark-factory: watching %s for queued prompts...", self.queue_dir)

    async def _process_prompt(self, pr: Prompt) -> None:
        name = os.path.basename(pr.path)
        try:
            body = self.prompt_manager.content(pr.path)
        except EmptyPromptError:
            logger.info(
                "dark-factory: skipping empty prompt: %s (file may still be in progress)", name
            )
            self.prompt_manager.move_to_completed(pr.path)
            return

        base_name, container_name = self._setup_prompt_metadata(pr.path)
        title = self.prompt_manager.title(pr.path)
        logger.info("dark-factory: executing prompt: %s", title)

        original_branch = ""
        branch_name = ""
        if self.workflow is Workflow.PR:
            original_branch = await self.brancher.current_branch()
            branch_name = "dark-factory/" + base_name
            await self.brancher.create_and_switch(branch_name)

        log_file = os.path.join(self.log_dir, base_name + ".log")
        try:
            await self.executor.execute(body, log_file, container_name)
        except Exception as exc:
            logger.error("dark-factory: docker container exited with error: %s", exc)
            raise
        logger.info("dark-factory: docker container exited with code 0")

        self.prompt_manager.move_to_completed(pr.path)
        logger.info("dark-factory: moved %s to completed/", name)

        completed_path = os.path.join(self.completed_dir, name)
        await _run_to_completion(
            self._record(completed_path, title, branch_name, original_branch)
        )

    async def _record(
        self, completed_path: str, title: str, branch_name: str, original_branch: str
    ) -> None:
        await self.releaser.commit_completed_file(completed_path)
        if self.workflow is Workflow.PR:
            await self._pr_workflow(title, branch_name, original_branch)
        else:
            await self._direct_workflow(title)

    async def _pr_workflow(self, title: str, branch_name: str, original_branch: str) -> None:
        await self.releaser.commit_only(title)
        await self.brancher.push(branch_name)
        url = await self.pr_creator.create(title, _PR_BODY)
        logger.info("dark-factory: created PR: %s", url)
        await self.brancher.switch(original_branch)

    async def _direct_workflow(self, title: str) -> None:
        if not await self.releaser.has_changelog():
            await self.releaser.commit_only(title)
            logger.info("dark-factory: committed changes")
            return
        bump = determine_bump(title)
        next_version = await self.releaser.get_next_version(bump)
        await self.releaser.commit_and_release(title, bump)
        logger.info("dark-factory: committed and tagged %s", next_version)

    def _setup_prompt_metadata(self, path: str) -> tuple:
        name = os.path.basename(path)
        if name.endswith(".md"):
            name = name[: -len(".md")]
        base_name = sanitize_container_name(name)
        container_name = "dark-factory-" + base_name
        self.prompt_manager.set_container(path, container_name)
        self.prompt_manager.set_version(path, self.version)
        self.prompt_manager.set_status(path, Status.EXECUTING)
        return base_name, container_name