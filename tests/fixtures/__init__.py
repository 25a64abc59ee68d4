"""Test fixtures for firmkit tests.

This package provides reusable helpers and pytest fixtures:

- archives: In-memory tool archives with their checksums, and resolved
  tool specs pointing at them
- fakes: An in-process VcsBackend that never starts git, and an
  ArchiveExtractor that records calls instead of unpacking

Import them in your tests using:
    from tests.fixtures.archives import build_tar_gz, make_tool_spec
    from tests.fixtures.fakes import FakeVcs, FakeRemote
"""

__all__ = [
    "archives",
    "fakes",
]
