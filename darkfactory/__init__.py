"""Numbered markdown prompts: frontmatter state, queue handling, locking, processing and running."""

__version__ = "0.1.0"