from __future__ import annotations

import sys
from collections.abc import Callable, Hashable, Iterable, Iterator, Mapping
from typing import Any, Generic, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


K = TypeVar("K")
V = TypeVar("V")
C = TypeVar("C")


class frozendict(Mapping[K, V]):  # noqa: N801
    """Immutable, hashable mapping.

    Records produced by the loaders keep their column values in frozendicts,
    so a record is a plain value: it can be compared, hashed and shared
    between threads without any reference to the query layer.

    The hash is computed on first use, which lets a frozendict hold
    unhashable values as long as nobody hashes it.

    Example:
        >>> fd = frozendict({"name": "alice"})
        >>> fd["name"]
        'alice'
        >>> fd.copy(city="Seoul")
        <frozendict {'name': 'alice', 'city': 'Seoul'}>
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash: int | None = None

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def copy(self, **add_or_replace: Any) -> Self:
        """Return a new frozendict with *add_or_replace* merged in."""
        return type(self)(self, **add_or_replace)

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(frozenset(self._dict.items()))

        return self._hash


class AssociationGroup(Mapping[K, tuple[C, ...]], Generic[K, C]):
    """Children grouped by parent id, one entry per requested parent.

    Keys follow the order of the parent ids the group was built from, and
    every requested id is present: parents without children map to ``()``.
    Children keep the order in which they were supplied.

    Build instances with :meth:`group`; the constructor takes an already
    grouped mapping and performs no checks.
    """

    __slots__ = ("_groups",)

    def __init__(self, groups: Mapping[K, tuple[C, ...]] | None = None) -> None:
        self._groups: dict[K, tuple[C, ...]] = dict(groups or {})

    @classmethod
    def group(
        cls,
        parent_ids: Iterable[K],
        children: Iterable[C],
        key: Callable[[C], K],
    ) -> AssociationGroup[K, C]:
        """Group *children* under *parent_ids* using ``key(child)``.

        Raises:
            ValueError: If a child belongs to a parent that was not requested.
        """
        buckets: dict[K, list[C]] = {pid: [] for pid in parent_ids}
        for child in children:
            parent_id = key(child)
            bucket = buckets.get(parent_id)
            if bucket is None:
                raise ValueError(f"Child {child!r} references unrequested parent {parent_id!r}")
            bucket.append(child)

        return cls({pid: tuple(bucket) for pid, bucket in buckets.items()})

    def __getitem__(self, key: K) -> tuple[C, ...]:
        return self._groups[key]

    def __iter__(self) -> Iterator[K]:
        return iter(self._groups)

    def __len__(self) -> int:
        return len(self._groups)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._groups!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, AssociationGroup):
            return self._groups == other._groups

        if isinstance(other, dict):
            return self._groups == other

        return NotImplemented

    def total(self) -> int:
        """Number of children across all parents."""
        return sum(len(children) for children in self._groups.values())


def unique_by(items: Iterable[V], key: Callable[[V], Hashable]) -> list[V]:
    """Keep the first item for every distinct ``key(item)``, preserving order."""
    seen: set[Hashable] = set()
    out: list[V] = []
    for item in items:
        marker = key(item)
        if marker in seen:
            continue
        seen.add(marker)
        out.append(item)

    return out
