from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import Any, Generic, TypeVar

from .datastructures import AssociationGroup, frozendict
from .records import ChildRecord, LoadResult, RootRecord


R = TypeVar("R")

Children = Mapping[str, tuple[ChildRecord, ...]]
Shape = Callable[[RootRecord, Children], R]


class Projector(Generic[R]):
    """Maps loaded roots and their children to output records.

    ``shape(root, children)`` receives the root and a mapping of relation key
    to that root's children, in the order the loader returned them. Roots
    are emitted in input order; nothing is re-sorted.

    Example::

        projector = Projector(lambda root, children: (root.id, len(children["posts"])))
        rows = projector.project_result(result)
    """

    __slots__ = ("shape",)

    def __init__(self, shape: Shape[R]) -> None:
        self.shape = shape

    def project(
        self,
        roots: Iterable[RootRecord],
        associations: Mapping[str, AssociationGroup[Any, ChildRecord]] | None = None,
    ) -> list[R]:
        """Project *roots* with their groups from *associations*.

        Raises:
            KeyError: If a group has no entry for one of the roots.
        """
        associations = associations or {}
        return [
            self.shape(
                root,
                frozendict({key: group[root.id] for key, group in associations.items()}),
            )
            for root in roots
        ]

    def project_result(self, result: LoadResult) -> list[R]:
        return self.project(result.roots, result.associations)
