"""YAML frontmatter handling for prompt files."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, ClassVar, Optional, Tuple, Union

import yaml

PathLike = Union[str, "os.PathLike[str]"]

_OPEN = "---\n"
_CLOSE = "\n---\n"
_CLOSE_AT_EOF = "\n---"
_NULL_TAG = "tag:yaml.org,2002:null"
_HEADING = re.compile(r"#\s+(.+)$")


class Status(str):
    """State of a prompt; any string may be held, but only four are valid."""

    QUEUED: ClassVar["Status"]
    EXECUTING: ClassVar["Status"]
    COMPLETED: ClassVar["Status"]
    FAILED: ClassVar["Status"]

    def validate(self) -> "Status":
        """Return the status if it is one of the known values, else raise ValueError."""
        if self not in _VALID_STATUSES:
            raise ValueError(f"status({str(self)}) is invalid")
        return self


Status.QUEUED = Status("queued")
Status.EXECUTING = Status("executing")
Status.COMPLETED = Status("completed")
Status.FAILED = Status("failed")

_VALID_STATUSES = frozenset(
    {Status.QUEUED, Status.EXECUTING, Status.COMPLETED, Status.FAILED}
)


class EmptyPromptError(Exception):
    """Raised when a prompt file is empty or contains only whitespace."""

    def __init__(self, message: str = "prompt file is empty") -> None:
        super().__init__(message)


@dataclass
class Frontmatter:
    """The YAML frontmatter block of a prompt file."""

    status: str = ""
    container: str = ""
    dark_factory_version: str = ""
    created: str = ""
    queued: str = ""
    started: str = ""
    completed: str = ""

    @staticmethod
    def _key(attr: str) -> str:
        return attr.replace("_", "-")

    @classmethod
    def from_yaml(cls, text: str) -> "Frontmatter":
        """Parse frontmatter YAML; scalar values are kept as their literal text."""
        try:
            node = yaml.compose(text, Loader=yaml.SafeLoader)
        except yaml.YAMLError as exc:
            raise ValueError(f"parse frontmatter: {exc}") from exc
        if node is None:
            return cls()
        if not isinstance(node, yaml.MappingNode):
            raise ValueError("parse frontmatter: document is not a mapping")

        attrs = {cls._key(f.name): f.name for f in fields(cls)}
        values = {}
        for key_node, value_node in node.value:
            if not isinstance(key_node, yaml.ScalarNode):
                continue
            attr = attrs.get(key_node.value)
            if attr is None:
                continue
            if not isinstance(value_node, yaml.ScalarNode):
                raise ValueError(
                    f"parse frontmatter: {key_node.value} must be a scalar"
                )
            values[attr] = "" if value_node.tag == _NULL_TAG else value_node.value
        return cls(**values)

    def to_yaml(self) -> str:
        """Render as YAML; status is always written, other fields only when set."""
        data = {"status": self.status}
        for f in fields(self):
            if f.name == "status":
                continue
            value = getattr(self, f.name)
            if value:
                data[self._key(f.name)] = value
        return yaml.safe_dump(
            data, sort_keys=False, allow_unicode=True, width=10**9
        )


def _read(path: PathLike) -> str:
    with open(path, encoding="utf-8", newline="") as handle:
        return handle.read()


def _write(path: PathLike, text: str) -> None:
    Path(path).write_text(text, encoding="utf-8", newline="")


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def split_frontmatter(content: str) -> Tuple[Optional[str], str]:
    """Split text into (frontmatter YAML, body).

    The YAML part is None when the text has no frontmatter, in which case
    the body is the whole text. Frontmatter must open with "---" on the
    first line and close with "---" on a line of its own.
    """
    if not content.startswith(_OPEN):
        return None, content
    rest = content[len(_OPEN):]
    idx = rest.find(_CLOSE)
    if idx >= 0:
        return rest[:idx], rest[idx + 4:]
    if rest.endswith(_CLOSE_AT_EOF):
        return rest[: -len(_CLOSE_AT_EOF)], ""
    return None, content


def read_frontmatter(path: PathLike) -> Frontmatter:
    """Read a file's frontmatter; an empty one if the file has none."""
    yaml_text, _ = split_frontmatter(_read(path))
    if yaml_text is None:
        return Frontmatter()
    return Frontmatter.from_yaml(yaml_text)


def set_field(path: PathLike, setter: Callable[[Frontmatter], None]) -> None:
    """Apply setter to the file's frontmatter and write it back, adding a block if absent."""
    text = _read(path)
    yaml_text, body = split_frontmatter(text)
    fm = Frontmatter() if yaml_text is None else Frontmatter.from_yaml(yaml_text)
    setter(fm)
    _write(path, _OPEN + fm.to_yaml() + "---\n" + body)


def set_status(path: PathLike, status: str) -> None:
    """Set the status and the timestamp that goes with it."""
    now = _now()

    def apply(fm: Frontmatter) -> None:
        fm.status = str(status)
        if status == Status.QUEUED:
            if not fm.queued:
                fm.queued = now
        elif status == Status.EXECUTING:
            fm.started = now
        elif status in (Status.COMPLETED, Status.FAILED):
            fm.completed = now

    set_field(path, apply)


def set_container(path: PathLike, container: str) -> None:
    """Set the container name."""

    def apply(fm: Frontmatter) -> None:
        fm.container = container

    set_field(path, apply)


def set_version(path: PathLike, version: str) -> None:
    """Set the dark-factory-version field."""

    def apply(fm: Frontmatter) -> None:
        fm.dark_factory_version = version

    set_field(path, apply)


def ensure_created_timestamp(path: PathLike) -> None:
    """Set the created timestamp unless it is already present."""
    now = _now()

    def apply(fm: Frontmatter) -> None:
        if not fm.created:
            fm.created = now

    set_field(path, apply)


def strip_leading_empty_frontmatter(content: str) -> str:
    """Remove empty frontmatter blocks from the start of the text."""
    while True:
        trimmed = content.lstrip("\n\r \t")
        if trimmed.startswith("---\r\n"):
            line_ending = "\r\n"
        elif trimmed.startswith("---\n"):
            line_ending = "\n"
        else:
            return content

        empty_block = "---" + line_ending + "---"
        if trimmed.startswith(empty_block):
            remaining = trimmed[len(empty_block):]
            if remaining.startswith(line_ending):
                remaining = remaining[len(line_ending):]
        else:
            yaml_text, body = split_frontmatter(trimmed)
            if yaml_text is None or yaml_text.strip():
                return content
            remaining = body

        if not remaining.strip():
            return remaining
        content = remaining


def content(path: PathLike) -> str:
    """Return the prompt body without frontmatter.

    Raises EmptyPromptError if nothing but whitespace is left.
    """
    _, body = split_frontmatter(_read(path))
    result = strip_leading_empty_frontmatter(body)
    if not result.strip():
        raise EmptyPromptError()
    return result


def title(path: PathLike) -> str:
    """Return the first "# " heading, or the file name without .md if there is none."""
    _, body = split_frontmatter(_read(path))
    for line in body.split("\n"):
        if line.endswith("\r"):
            line = line[:-1]
        match = _HEADING.match(line)
        if match:
            return match.group(1).strip()
    name = os.path.basename(os.fspath(path))
    return name[:-3] if name.endswith(".md") else name