from __future__ import annotations

from collections.abc import Mapping
from typing import ClassVar, final

from sqlalchemy import orm

from .datastructures import frozendict


RelationshipMap = Mapping[
    type[orm.DeclarativeBase], Mapping[str, orm.RelationshipProperty[orm.DeclarativeBase]]
]


@final
class Node:
    """Singleton holding the relationship graph of the mapped models.

    Load plans name associations by relationship key (``"member"``) or by
    dotted path (``"order_items.item"``); the graph is what turns those names
    into ``RelationshipProperty`` objects. It is built once at startup and
    only read afterwards, so concurrent pipeline runs can share it.
    """

    __instance: ClassVar[Node | None] = None
    _node: RelationshipMap

    def __new__(cls, node: RelationshipMap | None = None) -> Node:
        if cls.__instance is None:
            instance = super().__new__(cls)
            if node is not None:
                instance.set_node(node)

            cls.__instance = instance

        if not getattr(cls.__instance, "_node", None):
            raise RuntimeError("Node is not initialized or empty")

        return cls.__instance

    def get(
        self, model: type[orm.DeclarativeBase]
    ) -> Mapping[str, orm.RelationshipProperty[orm.DeclarativeBase]]:
        """Relationships of *model* keyed by name, empty if the model is unknown."""
        return self.node.get(model, frozendict())

    def relationship(
        self, model: type[orm.DeclarativeBase], key: str
    ) -> orm.RelationshipProperty[orm.DeclarativeBase]:
        """Look up relationship *key* on *model*.

        Raises:
            KeyError: If *model* has no relationship named *key*.
        """
        try:
            return self.node[model][key]
        except KeyError:
            raise KeyError(f"No relationship {key!r} on {model.__name__}") from None

    @property
    def node(self) -> RelationshipMap:
        """The underlying model-to-relationships mapping (read-only)."""
        return self._node

    def set_node(self, node: RelationshipMap) -> None:
        self._node = node

    @classmethod
    def reset(cls) -> None:
        """Destroy the singleton, allowing re-initialization (primarily for tests)."""
        cls._node = {}
        cls.__instance = None


def get_node(*bases: type[orm.DeclarativeBase]) -> RelationshipMap:
    """Collect the relationship graph of every model mapped by *bases*.

    Several declarative bases may be combined into one graph.

    Raises:
        AssertionError: If a base is not a direct subclass of ``orm.DeclarativeBase``.
    """
    graph: dict[
        type[orm.DeclarativeBase], Mapping[str, orm.RelationshipProperty[orm.DeclarativeBase]]
    ] = {}
    for base in bases:
        assert orm.DeclarativeBase in getattr(base, "__bases__", ()), (
            "base must be a subclass of orm.DeclarativeBase"
        )
        for mapper in base.registry.mappers:
            graph[mapper.class_] = frozendict(mapper.relationships.items())

    return frozendict(graph)


def init_node(node: RelationshipMap) -> None:
    """Initialize the global Node singleton; call once during startup.

    Example:
        >>> from sqla_batchloads.models import Base
        >>> init_node(get_node(Base))
    """
    Node(node)
