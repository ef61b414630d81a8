"""Aggregate loading for SQLAlchemy without N+1 queries.

sqla_batchloads loads root records together with their associations as
plain value records. Describe what to load with an ``AggregatePlan``,
initialize the ``Node`` singleton once at startup with your declarative
base, then call ``load_aggregates(session, plan, criteria)``: one root
query, one ``IN (...)`` query per to-many relation, no matter how many
roots come back.
"""

from ._version import __version__, __version_tuple__
from .core import cache_clear, cache_info
from .criteria import MAX_ROWS, QueryCriteria
from .datastructures import AssociationGroup, frozendict
from .descriptors import AggregatePlan, AssociationDescriptor, resolve_path
from .errors import QueryError, UnsupportedQueryError, ValidationError
from .loaders import (
    DEFAULT_STRATEGY,
    AssociationBatchLoader,
    JoinFetchExecutor,
    JoinFetchResult,
    NaiveLoader,
    QueryContext,
    RootQueryExecutor,
    Strategy,
    load_aggregates,
)
from .node import Node, get_node, init_node
from .pagination import can_pushdown_pagination, paginate
from .projection import Projector
from .records import ChildRecord, LoadResult, RootRecord
from .tools import get_primary_key, get_table_name


__all__ = (
    "DEFAULT_STRATEGY",
    "MAX_ROWS",
    "AggregatePlan",
    "AssociationBatchLoader",
    "AssociationDescriptor",
    "AssociationGroup",
    "ChildRecord",
    "JoinFetchExecutor",
    "JoinFetchResult",
    "LoadResult",
    "NaiveLoader",
    "Node",
    "Projector",
    "QueryContext",
    "QueryCriteria",
    "QueryError",
    "RootQueryExecutor",
    "RootRecord",
    "Strategy",
    "UnsupportedQueryError",
    "ValidationError",
    "__version__",
    "__version_tuple__",
    "cache_clear",
    "cache_info",
    "can_pushdown_pagination",
    "frozendict",
    "get_node",
    "get_primary_key",
    "get_table_name",
    "init_node",
    "load_aggregates",
    "paginate",
    "resolve_path",
)
