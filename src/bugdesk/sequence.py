"""Per-project bug sequence allocation.

Both allocators return ``count`` consecutive, strictly increasing
numbers for one project.  :class:`AtomicAllocator` reserves the block
through the store's transactional claim and is the default.
:class:`ReadMaxAllocator` reads the current maximum and adds to it; it
is only correct when a single writer touches the project at a time.
Any overlap it causes is rejected by the store's
``(project_id, bug_number)`` uniqueness constraint at insert time.

A block whose bugs were never inserted is handed back with
:meth:`SequenceAllocator.release`, so a failed or retried batch does not
leave a gap in the numbering.
"""

from __future__ import annotations

from typing import Any, Protocol

from bugdesk.store import BugStore


class SequenceAllocator(Protocol):
    """Produces collision-free bug numbers scoped to one project."""

    def allocate(self, project_id: str, count: int) -> range: ...

    def release(self, project_id: str, numbers: range) -> None: ...


class AtomicAllocator:
    """Claims a block through :meth:`BugStore.claim_bug_numbers`."""

    name = "atomic"

    def __init__(self, store: BugStore) -> None:
        self.store = store

    def allocate(self, project_id: str, count: int) -> range:
        if count < 1:
            raise ValueError(f"count must be >= 1, got {count}")
        first = self.store.claim_bug_numbers(project_id, count)
        return range(first, first + count)

    def release(self, project_id: str, numbers: range) -> None:
        if len(numbers):
            self.store.release_bug_numbers(project_id, numbers.start, len(numbers))


class ReadMaxAllocator:
    """``max(bug_number) + 1`` onwards, without reserving anything."""

    name = "read_max"

    def __init__(self, store: BugStore) -> None:
        self.store = store

    def allocate(self, project_id: str, count: int) -> range:
        if count < 1:
            raise ValueError(f"count must be >= 1, got {count}")
        first = self.store.max_bug_number(project_id) + 1
        return range(first, first + count)

    def release(self, project_id: str, numbers: range) -> None:
        # Nothing was reserved
        return None


def get_allocator(store: BugStore, config: dict[str, Any] | None = None) -> SequenceAllocator:
    """Return the allocator named by ``sequence_allocator`` in *config*."""
    name = (config or {}).get("sequence_allocator", "atomic")
    if name == "atomic":
        return AtomicAllocator(store)
    if name == "read_max":
        return ReadMaxAllocator(store)
    raise ValueError(f"Unknown sequence_allocator {name!r}")
