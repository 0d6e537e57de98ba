import re
from datetime import datetime, timedelta, timezone

import pytest

from darkfactory.frontmatter import (
    EmptyPromptError,
    Frontmatter,
    Status,
    content,
    ensure_created_timestamp,
    read_frontmatter,
    set_container,
    set_field,
    set_status,
    set_version,
    split_frontmatter,
    strip_leading_empty_frontmatter,
    title,
)

TIMESTAMP = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$")


def create_prompt_file(directory, filename, status):
    text = "---\n"
    if status:
        text += "status: " + status + "\n"
    text += "---\n\n# Test Prompt\n\nContent here.\n"
    path = directory / filename
    path.write_text(text)
    return path


def write(directory, filename, text):
    path = directory / filename
    path.write_text(text)
    return path


def parse_timestamp(text):
    assert TIMESTAMP.match(text), text
    return datetime.strptime(text, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)


def assert_recent(text, before, after):
    stamp = parse_timestamp(text)
    assert before.replace(microsecond=0) <= stamp <= after + timedelta(seconds=1)


# Status.validate


@pytest.mark.parametrize(
    "status", [Status.QUEUED, Status.EXECUTING, Status.COMPLETED, Status.FAILED]
)
def test_status_accepts_valid(status):
    assert status.validate() == status


def test_status_values():
    values = ["queued", "executing", "completed", "failed"]
    assert [Status(v).validate() for v in values] == [
        Status.QUEUED,
        Status.EXECUTING,
        Status.COMPLETED,
        Status.FAILED,
    ]


def test_status_rejects_unknown():
    with pytest.raises(ValueError, match=r"status\(invalid\) is invalid"):
        Status("invalid").validate()


def test_status_rejects_empty():
    with pytest.raises(ValueError, match=r"status\(\) is invalid"):
        Status("").validate()


# Frontmatter YAML


def test_to_yaml_writes_status_and_set_fields():
    fm = Frontmatter(status="queued", container="c", dark_factory_version="v1")
    assert fm.to_yaml() == "status: queued\ncontainer: c\ndark-factory-version: v1\n"


def test_yaml_round_trip():
    fm = Frontmatter(
        status="completed",
        container="dark-factory-001-test",
        dark_factory_version="v0.5.0",
        created="2024-01-02T03:04:05Z",
        queued="2024-01-02T03:04:06Z",
        started="2024-01-02T03:04:07Z",
        completed="2024-01-02T03:04:08Z",
    )
    assert Frontmatter.from_yaml(fm.to_yaml()) == fm


def test_from_yaml_ignores_unknown_keys():
    assert Frontmatter.from_yaml("author: alice\nstatus: queued\n") == Frontmatter(
        status="queued"
    )


def test_from_yaml_empty_document():
    assert Frontmatter.from_yaml("") == Frontmatter()


def test_from_yaml_rejects_non_mapping():
    with pytest.raises(ValueError):
        Frontmatter.from_yaml("invalid yaml content ][[")


def test_from_yaml_rejects_broken_yaml():
    with pytest.raises(ValueError):
        Frontmatter.from_yaml("status: [\n")


# split_frontmatter


def test_split_with_frontmatter():
    assert split_frontmatter("---\na: b\n---\nbody") == ("a: b", "\nbody")


def test_split_without_frontmatter():
    assert split_frontmatter("# Title\n") == (None, "# Title\n")


def test_split_closing_at_eof():
    assert split_frontmatter("---\na: b\n---") == ("a: b", "")


def test_split_unclosed():
    text = "---\nstatus: queued\n\n# x\n"
    assert split_frontmatter(text) == (None, text)


# read_frontmatter


def test_read_frontmatter_keeps_timestamp_text(tmp_path):
    path = write(
        tmp_path,
        "001-t.md",
        "---\nstatus: queued\ncreated: 2024-01-02T03:04:05Z\n---\n# T\n",
    )
    fm = read_frontmatter(path)
    assert fm.status == "queued"
    assert fm.created == "2024-01-02T03:04:05Z"


def test_read_frontmatter_none_present(tmp_path):
    path = write(tmp_path, "001-plain.md", "# Test Prompt\n")
    assert read_frontmatter(path) == Frontmatter()


def test_read_frontmatter_invalid(tmp_path):
    path = write(tmp_path, "002-invalid.md", "---\ninvalid yaml content ][[\n---\n# Test\n")
    with pytest.raises(ValueError):
        read_frontmatter(path)


def test_read_frontmatter_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_frontmatter(tmp_path / "missing.md")


# set_status


def test_set_status_updates_existing(tmp_path):
    path = create_prompt_file(tmp_path, "001-test.md", "queued")
    set_status(path, "executing")
    assert "status: executing" in path.read_text()


def test_set_status_adds_frontmatter(tmp_path):
    path = write(tmp_path, "001-plain.md", "# Test Prompt\n\nContent here.\n")
    set_status(path, "executing")
    text = path.read_text()
    assert text.startswith("---\n")
    assert "status: executing" in text
    assert "# Test Prompt" in text


def test_set_status_executing_sets_started(tmp_path):
    path = create_prompt_file(tmp_path, "001-test.md", "queued")
    set_status(path, Status.EXECUTING)
    fm = read_frontmatter(path)
    assert fm.status == "executing"
    assert TIMESTAMP.match(fm.started)


def test_set_status_completed_and_failed_set_completed(tmp_path):
    path = create_prompt_file(tmp_path, "001-test.md", "queued")
    set_status(path, "failed")
    assert TIMESTAMP.match(read_frontmatter(path).completed)
    set_status(path, "completed")
    fm = read_frontmatter(path)
    assert fm.status == "completed"
    assert TIMESTAMP.match(fm.completed)


def test_set_status_queued_preserves_existing_queued(tmp_path):
    path = write(
        tmp_path,
        "001-t.md",
        "---\nstatus: failed\nqueued: 2020-01-01T00:00:00Z\n---\n# T\n",
    )
    set_status(path, "queued")
    fm = read_frontmatter(path)
    assert fm.status == "queued"
    assert fm.queued == "2020-01-01T00:00:00Z"


def test_set_status_queued_sets_missing_queued(tmp_path):
    path = write(tmp_path, "001-t.md", "# T\n")
    before = datetime.now(timezone.utc)
    set_status(path, "queued")
    after = datetime.now(timezone.utc)
    fm = read_frontmatter(path)
    assert fm.status == "queued"
    assert_recent(fm.queued, before, after)


# set_container / set_version / set_field


def test_set_container_existing_frontmatter(tmp_path):
    path = create_prompt_file(tmp_path, "001-test.md", "queued")
    set_container(path, "dark-factory-001-test")
    fm = read_frontmatter(path)
    assert fm.container == "dark-factory-001-test"
    assert fm.status == "queued"


def test_set_container_without_frontmatter(tmp_path):
    path = write(tmp_path, "001-plain.md", "# Test Prompt\n\nContent here.\n")
    set_container(path, "dark-factory-001-plain")
    assert read_frontmatter(path).container == "dark-factory-001-plain"


def test_set_container_replaces_existing(tmp_path):
    path = write(
        tmp_path,
        "001-test.md",
        "---\nstatus: queued\ncontainer: old-container\n---\n\n# Test Prompt\n\nContent here.\n",
    )
    set_container(path, "new-container")
    fm = read_frontmatter(path)
    assert fm.container == "new-container"
    assert fm.status == "queued"


def test_set_version_existing_frontmatter(tmp_path):
    path = create_prompt_file(tmp_path, "001-test.md", "queued")
    set_version(path, "v0.2.37")
    fm = read_frontmatter(path)
    assert fm.dark_factory_version == "v0.2.37"
    assert fm.status == "queued"


def test_set_version_without_frontmatter(tmp_path):
    path = write(tmp_path, "001-plain.md", "# Test Prompt\n\nContent here.\n")
    set_version(path, "v0.1.0")
    assert read_frontmatter(path).dark_factory_version == "v0.1.0"


def test_set_version_replaces_existing(tmp_path):
    path = write(
        tmp_path,
        "001-test.md",
        "---\nstatus: queued\ndark-factory-version: v0.1.0\n---\n\n# Test Prompt\n\nContent here.\n",
    )
    set_version(path, "v0.2.0")
    fm = read_frontmatter(path)
    assert fm.dark_factory_version == "v0.2.0"
    assert fm.status == "queued"


def test_set_field_keeps_body(tmp_path):
    path = create_prompt_file(tmp_path, "001-test.md", "queued")

    def setter(fm):
        fm.container = "x"

    set_field(path, setter)
    assert content(path).strip() == "# Test Prompt\n\nContent here."


def test_set_field_preserves_timestamp_text(tmp_path):
    path = write(
        tmp_path,
        "001-t.md",
        "---\nstatus: queued\ncreated: 2024-01-02T03:04:05Z\n---\n# T\n",
    )
    set_container(path, "c")
    assert read_frontmatter(path).created == "2024-01-02T03:04:05Z"


# ensure_created_timestamp


def test_ensure_created_sets_when_missing(tmp_path):
    path = create_prompt_file(tmp_path, "001-test.md", "queued")
    before = datetime.now(timezone.utc)
    ensure_created_timestamp(path)
    after = datetime.now(timezone.utc)
    fm = read_frontmatter(path)
    assert fm.status == "queued"
    assert_recent(fm.created, before, after)


def test_ensure_created_never_overwrites(tmp_path):
    path = write(
        tmp_path, "001-t.md", "---\ncreated: 2019-05-05T05:05:05Z\n---\n# T\n"
    )
    ensure_created_timestamp(path)
    assert read_frontmatter(path).created == "2019-05-05T05:05:05Z"


# title


def test_title_with_frontmatter(tmp_path):
    path = write(
        tmp_path,
        "001-test.md",
        "---\nstatus: queued\n---\n\n# Implement Feature X\n\nThis is the content.\n",
    )
    assert title(path) == "Implement Feature X"


def test_title_without_frontmatter(tmp_path):
    path = write(tmp_path, "001-plain.md", "# Implement Feature Y\n\nThis is the content.\n")
    assert title(path) == "Implement Feature Y"


def test_title_without_heading(tmp_path):
    path = write(tmp_path, "004-test.md", "just some plain text without heading\n")
    assert title(path) == "004-test"


def test_title_ignores_subheadings(tmp_path):
    path = write(tmp_path, "001-t.md", "## Sub\n# Main  \n")
    assert title(path) == "Main"


# content


def test_content_strips_frontmatter(tmp_path):
    path = create_prompt_file(tmp_path, "001-test.md", "queued")
    result = content(path)
    assert "status: queued" not in result
    assert "# Test Prompt" in result


def test_content_empty_file(tmp_path):
    path = write(tmp_path, "empty.md", "")
    with pytest.raises(EmptyPromptError, match="prompt file is empty"):
        content(path)


def test_content_whitespace_only(tmp_path):
    path = write(tmp_path, "whitespace.md", "   \n\t\n  \n")
    with pytest.raises(EmptyPromptError):
        content(path)


def test_content_duplicate_empty_frontmatter(tmp_path):
    path = write(
        tmp_path,
        "001-duplicate.md",
        "---\nstatus: queued\n---\n\n\n\n---\n---\n\n# Actual prompt title\n\nPrompt content here.\n",
    )
    result = content(path)
    assert "status: queued" not in result
    assert not result.startswith("---")
    assert "# Actual prompt title" in result
    assert "Prompt content here." in result


def test_content_whitespace_only_frontmatter_block(tmp_path):
    path = write(
        tmp_path,
        "001-whitespace-fm.md",
        "---\nstatus: queued\n---\n\n---\n\n\n---\n\n# Test Prompt\n\nContent here.\n",
    )
    result = content(path)
    assert "status: queued" not in result
    assert not result.startswith("---")
    assert "# Test Prompt" in result


def test_content_multiple_empty_blocks(tmp_path):
    path = write(
        tmp_path,
        "001-multiple.md",
        "---\nstatus: queued\n---\n\n---\n---\n\n---\n---\n\n# Test Prompt\n\nContent here.\n",
    )
    result = content(path)
    assert "status: queued" not in result
    assert not result.startswith("---")
    assert "# Test Prompt" in result


def test_content_keeps_non_empty_second_block(tmp_path):
    path = write(
        tmp_path,
        "001-nonempty.md",
        "---\nstatus: queued\n---\n\n---\ntitle: Some Title\n---\n\n# Test Prompt\n\nContent here.\n",
    )
    result = content(path)
    assert "status: queued" not in result
    assert "---" in result
    assert "title: Some Title" in result
    assert "# Test Prompt" in result


def test_content_empty_block_at_eof(tmp_path):
    path = write(tmp_path, "001-eof.md", "---\nstatus: queued\n---\n\n---\n---")
    with pytest.raises(EmptyPromptError):
        content(path)


def test_inline_dashes_in_body(tmp_path):
    path = write(
        tmp_path,
        "001-inline.md",
        "---\nstatus: queued\n---\n\n# Test Prompt\n\n"
        "This content has --- inline which should not be confused with frontmatter.\n\n"
        "More content here.\n",
    )
    assert read_frontmatter(path).status == "queued"
    result = content(path)
    assert "# Test Prompt" in result
    assert "This content has --- inline" in result
    assert "status: queued" not in result


def test_closing_at_eof_without_newline(tmp_path):
    path = write(tmp_path, "002-eof.md", "---\nstatus: queued\n---")
    assert read_frontmatter(path).status == "queued"
    with pytest.raises(EmptyPromptError):
        content(path)


def test_unclosed_frontmatter_is_content(tmp_path):
    path = write(
        tmp_path,
        "003-unclosed.md",
        "---\nstatus: queued\n\n# This is not valid frontmatter\nContent here.\n",
    )
    assert read_frontmatter(path).status == ""
    result = content(path)
    assert "---" in result
    assert "status: queued" in result


# strip_leading_empty_frontmatter


def test_strip_single_empty_block():
    assert strip_leading_empty_frontmatter("---\n---\n# T") == "# T"


def test_strip_crlf_block():
    assert strip_leading_empty_frontmatter("---\r\n---\r\n# T") == "# T"


def test_strip_keeps_non_empty_block():
    text = "---\ntitle: x\n---\nbody"
    assert strip_leading_empty_frontmatter(text) == text


def test_strip_no_block():
    assert strip_leading_empty_frontmatter("\n# T\n") == "\n# T\n"


def test_strip_only_empty_block():
    assert strip_leading_empty_frontmatter("---\n---") == ""