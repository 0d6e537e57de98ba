# darkfactory

darkfactory works through a directory of markdown prompt files in order, one
at a time. Each prompt is named `NNN-slug.md`. Its state (queued, executing,
completed, failed) and its timestamps are kept in a YAML frontmatter block at
the top of the file. A finished prompt moves to a `completed/` directory, and
the result is then committed directly or pushed to a branch as a pull request.

The package runs on POSIX systems only, because the instance lock uses
`fcntl.flock`.

## Installation

```
pip install darkfactory
```

To run the tests:

```
pip install "darkfactory[test]"
pytest
```

## Prompt files

```markdown
---
status: queued
---

# Add container name tracking

Describe the change here.
```

### `darkfactory.frontmatter`

- `read_frontmatter(path)` returns a `Frontmatter` dataclass. Its fields are
  `status`, `container`, `dark_factory_version`, `created`, `queued`, `started`
  and `completed`. A file without frontmatter gives an empty one.
- `set_status(path, status)` writes the status together with the matching UTC
  timestamp. `queued` is set only if it is empty. `started` is set for
  executing. `completed` is set for both completed and failed. If the file has
  no frontmatter block, one is added.
- `set_container`, `set_version` and `ensure_created_timestamp` update one
  field each. `set_field(path, setter)` applies any change you like.
- `content(path)` returns the body without frontmatter and drops any empty
  frontmatter blocks left at its start. It raises `EmptyPromptError` if only
  whitespace remains.
- `title(path)` returns the first `# ` heading. If there is none, it returns
  the file name without `.md`.
- `Status` holds the four valid states (`Status.QUEUED`, `Status.EXECUTING`,
  `Status.COMPLETED`, `Status.FAILED`). `Status.validate()` raises `ValueError`
  for any other value.

### `darkfactory.prompts`

- `list_queued(directory)` returns `Prompt` objects sorted by file name. A file
  is included unless its status is executing, completed or failed. A file with
  no status counts as queued.
- `Prompt.validate()` and `Prompt.validate_for_execution()` raise
  `PromptValidationError`. `Prompt.number()` returns the `NNN-` prefix, or -1
  if there is none.
- `normalize_filenames(directory, completed_dir, mover)` gives every file a
  created timestamp. It zero-pads short numbers, and gives files that have no
  number, or a number already taken, the smallest free number. Numbers in
  `completed_dir` count as taken. It returns the `Rename`s it performed.
- `all_previous_completed(completed_dir, n)` reports whether prompts 1 to n-1
  are all in `completed_dir`.
- `move_to_completed(path, completed_dir, mover)` marks a prompt completed and
  moves it.
- `reset_executing`, `reset_failed` and `has_executing` work on a whole
  directory.
- `FileMover` is the interface for moving files. `RenameMover` implements it
  with `os.replace`.
- `PromptManager(queue_dir, completed_dir, mover=None)` provides all of these
  for one queue directory and one completed directory.

```python
from darkfactory.prompts import PromptManager, RenameMover

manager = PromptManager("prompts/queue", "prompts/completed", RenameMover())
for rename in manager.normalize_filenames("prompts/queue"):
    print(rename.old_path, "->", rename.new_path)
for prompt in manager.list_queued():
    print(prompt.number(), prompt.path, manager.title(prompt.path))
```

## Running the queue

### `darkfactory.lock`

`Locker(directory)` holds an exclusive `flock` on `.dark-factory.lock` in
`directory` and writes its PID into that file. `acquire()` raises `LockError`
if another instance already holds the lock; the message names that instance's
PID when it can be read. `release()` removes the file. A `Locker` can also be
used as a context manager.

### `darkfactory.processor`

`Processor` is asyncio based. `await processor.process()` first resets failed
prompts to queued. It then drains the queue on start, whenever its `ready`
event is set, and every `scan_interval` seconds (5 by default). It runs until
it is cancelled.

For each prompt that is queued and whose predecessors are all completed, it:

1. sets the container name (`dark-factory-<name>`), the version and the
   executing status;
2. runs the prompt body through the executor, with a log file in `log_dir`;
3. moves the prompt to `completed/` and commits it.

An empty prompt is moved to `completed/` without being run. If any step
fails, the prompt is marked failed and the exception is raised.

`Workflow.DIRECT` commits only, or, when the releaser reports a changelog,
releases with the `VersionBump` that `determine_bump(title)` picks.
`Workflow.PR` runs the prompt on a branch named `dark-factory/<name>`, pushes
it, opens a pull request and switches back to the original branch.
`sanitize_container_name` replaces unsafe characters with hyphens.

The collaborators are plain objects passed to the constructor, and their
methods are coroutines:

- executor: `execute(content, log_file, container_name)`
- releaser: `commit_completed_file(path)`, `commit_only(message)`,
  `has_changelog()`, `get_next_version(bump)`, `commit_and_release(title, bump)`
- brancher (PR workflow): `current_branch()`, `create_and_switch(name)`,
  `push(name)`, `switch(name)`
- pr creator (PR workflow): `create(title, body)`, which returns the URL

### `darkfactory.runner`

`await Runner(...).run()` does the following, in order:

1. acquires the locker;
2. creates the inbox, queue and completed directories;
3. resets prompts stuck in "executing";
4. normalizes file names in the queue, but not in the inbox.

It then runs the watcher's `watch()`, the processor's `process()` and, if one
is given, the server's `listen_and_serve()` side by side. It returns when all
of them finish or on SIGINT/SIGTERM. If one fails, the others are cancelled
and its exception is raised. The lock is released in every case.

## What is not included

The package contains no executor that actually runs prompts, for example in a
container. It has no git, release or pull-request implementation, no
directory watcher, no server and no command-line program. Supply these as
objects with the methods listed above.