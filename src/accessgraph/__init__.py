"""accessgraph - hierarchical access control over a graph of securables.

Permissions are granted through roles assigned to principals at nodes and
inherited down parent/child edges unless a node blocks inheritance. A
materialized index of effective assignments answers permission checks
and restricts collection queries.
"""

from .assignments import AssignmentStore
from .config import AccessControlConfig, LogLevel, RestrictionStrategy, load_config_from_env
from .context import AuthContext
from .exceptions import (
    AccessControlError,
    ConfigurationError,
    CycleError,
    InvalidRoleAssignment,
    MissingPermissionDeclaration,
    NoGlobalNode,
    NotFoundError,
    ParentError,
    StorageError,
    StructuralError,
    Unauthorized,
    UnrecognizedSecurable,
)
from .graph import NodeGraph
from .logging import get_access_logger, setup_logging
from .manager import AccessManager
from .models import (
    ANONYMOUS_PRINCIPAL_ID,
    GLOBAL_NODE_ID,
    UNRESTRICTABLE_PRINCIPAL_ID,
    Assignment,
    EffectiveAssignment,
    Node,
    Principal,
    Role,
)
from .propagation import ConsistencyReport, RolePropagation
from .registry import PermissionRegistry, RoleRegistry
from .requirements import PermissionRequirements
from .resolver import PermissionResolver
from .restriction import (
    DenyAllRestriction,
    IdRestriction,
    NullRestriction,
    Restriction,
    SubqueryRestriction,
)
from .securable import GlobalRecord, Securable, SecurableProvider
from .store import MemoryStore, SqlStore, Store, create_store

__version__ = "0.1.0"

__all__ = [
    # Facade
    "AccessManager",
    "AuthContext",
    # Components
    "AssignmentStore",
    "NodeGraph",
    "PermissionRegistry",
    "PermissionRequirements",
    "PermissionResolver",
    "RolePropagation",
    "RoleRegistry",
    "ConsistencyReport",
    # Models
    "ANONYMOUS_PRINCIPAL_ID",
    "GLOBAL_NODE_ID",
    "UNRESTRICTABLE_PRINCIPAL_ID",
    "Assignment",
    "EffectiveAssignment",
    "Node",
    "Principal",
    "Role",
    # Securables
    "GlobalRecord",
    "Securable",
    "SecurableProvider",
    # Restrictions
    "DenyAllRestriction",
    "IdRestriction",
    "NullRestriction",
    "Restriction",
    "SubqueryRestriction",
    # Storage
    "MemoryStore",
    "SqlStore",
    "Store",
    "create_store",
    # Config & logging
    "AccessControlConfig",
    "LogLevel",
    "RestrictionStrategy",
    "get_access_logger",
    "load_config_from_env",
    "setup_logging",
    # Errors
    "AccessControlError",
    "ConfigurationError",
    "CycleError",
    "InvalidRoleAssignment",
    "MissingPermissionDeclaration",
    "NoGlobalNode",
    "NotFoundError",
    "ParentError",
    "StorageError",
    "StructuralError",
    "Unauthorized",
    "UnrecognizedSecurable",
]
