"""Prompt files in a queue directory: listing, ordering, renaming and moving."""

from __future__ import annotations

import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Set, Tuple

from darkfactory import frontmatter
from darkfactory.frontmatter import Frontmatter, PathLike, Status

logger = logging.getLogger(__name__)

_NUMBER_PREFIX = re.compile(r"(\d{3})-", re.ASCII)
_VALID_NAME = re.compile(r"(\d{3})-(.+)\.md", re.ASCII)
_NUMERIC_NAME = re.compile(r"(\d+)-(.+)\.md", re.ASCII)
_SKIP_STATUSES = frozenset({Status.EXECUTING, Status.COMPLETED, Status.FAILED})


class PromptValidationError(ValueError):
    """Raised when a prompt is not valid or not ready to execute."""


@dataclass
class Prompt:
    """A prompt file and its status."""

    path: str
    status: Status = field(default=Status(""))

    def __post_init__(self) -> None:
        self.path = os.fspath(self.path)
        self.status = Status(self.status)

    def validate(self) -> None:
        """Raise PromptValidationError if path, status or filename is invalid."""
        errors = []
        if not self.path:
            errors.append("path: must not be empty")
        try:
            self.status.validate()
        except ValueError as exc:
            errors.append(f"status: {exc}")
        name = os.path.basename(self.path)
        if not has_number_prefix(name):
            errors.append(f"filename: missing NNN- prefix: {name}")
        if errors:
            raise PromptValidationError("; ".join(errors))

    def validate_for_execution(self) -> None:
        """Raise PromptValidationError unless the prompt is valid and queued."""
        errors = []
        try:
            self.validate()
        except PromptValidationError as exc:
            errors.append(f"prompt: {exc}")
        if self.status != Status.QUEUED:
            errors.append(f"status: expected status queued, got {self.status}")
        if errors:
            raise PromptValidationError("; ".join(errors))

    def number(self) -> int:
        """The NNN- prefix of the file name as a number, or -1 if there is none."""
        return extract_number_from_filename(os.path.basename(self.path))


@dataclass(frozen=True)
class Rename:
    """A file rename that was performed."""

    old_path: str
    new_path: str


class FileMover(ABC):
    """Moves files from one path to another."""

    @abstractmethod
    def move_file(self, old_path: str, new_path: str) -> None:
        """Move old_path to new_path."""


class RenameMover(FileMover):
    """Moves files with a plain filesystem rename."""

    def move_file(self, old_path: str, new_path: str) -> None:
        os.replace(old_path, new_path)


def _markdown_files(directory: PathLike) -> Iterator[Tuple[str, str]]:
    """Yield (name, path) of the .md files directly in directory, sorted by name."""
    with os.scandir(directory) as it:
        entries = sorted(it, key=lambda e: e.name)
    for entry in entries:
        if entry.is_dir(follow_symlinks=False) or not entry.name.endswith(".md"):
            continue
        yield entry.name, os.path.join(os.fspath(directory), entry.name)


def _try_read_frontmatter(path: str) -> Optional[Frontmatter]:
    try:
        return frontmatter.read_frontmatter(path)
    except (OSError, ValueError):
        return None


def list_queued(directory: PathLike) -> List[Prompt]:
    """Return the prompts to pick up, sorted by file name.

    A file is picked up unless its status is executing, completed or failed;
    files without a status count as queued. Unreadable files are skipped.
    """
    queued = []
    for _, path in _markdown_files(directory):
        fm = _try_read_frontmatter(path)
        if fm is None or fm.status in _SKIP_STATUSES:
            continue
        status = Status(fm.status) if fm.status else Status.QUEUED
        queued.append(Prompt(path=path, status=status))
    queued.sort(key=lambda p: os.path.basename(p.path))
    return queued


def _reset_status(directory: PathLike, from_status: Status) -> List[str]:
    reset = []
    for name, path in _markdown_files(directory):
        fm = _try_read_frontmatter(path)
        if fm is None or fm.status != from_status:
            continue
        frontmatter.set_status(path, Status.QUEUED)
        reset.append(name)
    return reset


def reset_executing(directory: PathLike) -> None:
    """Set prompts stuck in "executing" back to "queued"."""
    _reset_status(directory, Status.EXECUTING)


def reset_failed(directory: PathLike) -> None:
    """Set failed prompts back to "queued" so they are retried."""
    for name in _reset_status(directory, Status.FAILED):
        logger.info("dark-factory: reset failed prompt %s to queued", name)


def has_executing(directory: PathLike) -> bool:
    """True if any prompt in directory has status "executing"."""
    try:
        files = list(_markdown_files(directory))
    except OSError:
        return False
    for _, path in files:
        fm = _try_read_frontmatter(path)
        if fm is not None and fm.status == Status.EXECUTING:
            return True
    return False


def move_to_completed(path: PathLike, completed_dir: PathLike, mover: FileMover) -> None:
    """Mark a prompt completed and move it into completed_dir."""
    frontmatter.set_status(path, Status.COMPLETED)
    os.makedirs(completed_dir, mode=0o750, exist_ok=True)
    dest = os.path.join(os.fspath(completed_dir), os.path.basename(os.fspath(path)))
    mover.move_file(os.fspath(path), dest)


@dataclass
class _FileInfo:
    name: str
    number: int
    slug: str


def _parse_filename(name: str) -> _FileInfo:
    match = _VALID_NAME.fullmatch(name) or _NUMERIC_NAME.fullmatch(name)
    if match:
        return _FileInfo(name, int(match.group(1)), match.group(2))
    return _FileInfo(name, -1, name[: -len(".md")])


def _scan(names: List[str]) -> Tuple[List[_FileInfo], Set[int]]:
    files = [_parse_filename(name) for name in names]
    used = {f.number for f in files if f.number != -1}
    return files, used


def _next_available(used: Set[int]) -> int:
    number = 1
    while number in used:
        number += 1
    return number


def _format_name(number: int, slug: str) -> str:
    return f"{number:03d}-{slug}.md"


def normalize_filenames(
    directory: PathLike, completed_dir: PathLike, mover: FileMover
) -> List[Rename]:
    """Rename .md files in directory to the NNN-slug.md convention.

    Files without a number or with a number already taken get the smallest
    free number (numbers in completed_dir count as taken); files with a
    badly padded number are zero-padded. Every file also gets a created
    timestamp. Returns the renames performed.
    """
    names = [name for name, _ in _markdown_files(directory)]
    for name in names:
        try:
            frontmatter.ensure_created_timestamp(os.path.join(os.fspath(directory), name))
        except (OSError, ValueError) as exc:
            logger.warning(
                "dark-factory: failed to set created timestamp for %s: %s", name, exc
            )

    files, used = _scan(names)
    try:
        completed_names = [name for name, _ in _markdown_files(completed_dir)]
    except FileNotFoundError:
        completed_names = []
    used |= _scan(completed_names)[1]

    files.sort(key=lambda f: f.name)
    renames = []
    seen: Dict[int, str] = {}
    for info in files:
        if info.number == -1 or info.number in seen:
            number = _next_available(used)
            used.add(number)
        elif info.name != _format_name(info.number, info.slug):
            number = info.number
        else:
            seen[info.number] = info.name
            continue
        old_path = os.path.join(os.fspath(directory), info.name)
        new_path = os.path.join(os.fspath(directory), _format_name(number, info.slug))
        mover.move_file(old_path, new_path)
        renames.append(Rename(old_path=old_path, new_path=new_path))
        seen[number] = new_path
    return renames


def all_previous_completed(completed_dir: PathLike, n: int) -> bool:
    """True if prompts 1 to n-1 are all present in completed_dir."""
    if n <= 1:
        return True
    try:
        names = [name for name, _ in _markdown_files(completed_dir)]
    except OSError:
        return False
    done = {extract_number_from_filename(name) for name in names}
    return all(i in done for i in range(1, n))


def has_number_prefix(filename: str) -> bool:
    """True if the file name starts with three digits and a hyphen."""
    return _NUMBER_PREFIX.match(filename) is not None


def extract_number_from_filename(filename: str) -> int:
    """The three-digit NNN- prefix as a number, or -1 if there is none."""
    match = _NUMBER_PREFIX.match(filename)
    return int(match.group(1)) if match else -1


class PromptManager:
    """Prompt operations bound to a queue and a completed directory."""

    def __init__(
        self,
        queue_dir: PathLike,
        completed_dir: PathLike,
        mover: Optional[FileMover] = None,
    ) -> None:
        self.queue_dir = os.fspath(queue_dir)
        self.completed_dir = os.fspath(completed_dir)
        self.mover = mover if mover is not None else RenameMover()

    def reset_executing(self) -> None:
        reset_executing(self.queue_dir)

    def reset_failed(self) -> None:
        reset_failed(self.queue_dir)

    def has_executing(self) -> bool:
        return has_executing(self.queue_dir)

    def list_queued(self) -> List[Prompt]:
        return list_queued(self.queue_dir)

    def read_frontmatter(self, path: PathLike) -> Frontmatter:
        return frontmatter.read_frontmatter(path)

    def set_status(self, path: PathLike, status: str) -> None:
        frontmatter.set_status(path, status)

    def set_container(self, path: PathLike, name: str) -> None:
        frontmatter.set_container(path, name)

    def set_version(self, path: PathLike, version: str) -> None:
        frontmatter.set_version(path, version)

    def content(self, path: PathLike) -> str:
        return frontmatter.content(path)

    def title(self, path: PathLike) -> str:
        return frontmatter.title(path)

    def move_to_completed(self, path: PathLike) -> None:
        move_to_completed(path, self.completed_dir, self.mover)

    def normalize_filenames(self, directory: PathLike) -> List[Rename]:
        return normalize_filenames(directory, self.completed_dir, self.mover)

    def all_previous_completed(self, n: int) -> bool:
        return all_previous_completed(self.completed_dir, n)