"""SQLAlchemy table layout for the access-control tables.

``ag_effective_assignments`` is a derived cache: it can be dropped and
rebuilt from the other tables at any time (see ``RolePropagation.rebuild``).
"""

from __future__ import annotations

import sqlalchemy as sa

metadata = sa.MetaData()

nodes = sa.Table(
    "ag_nodes",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("securable_type", sa.String(255), nullable=False),
    sa.Column("securable_id", sa.String(255), nullable=False),
    sa.Column("blocked", sa.Boolean, nullable=False, default=False),
    sa.UniqueConstraint("securable_type", "securable_id", name="ag_nodes_securable_uq"),
)

edges = sa.Table(
    "ag_edges",
    metadata,
    sa.Column("parent_id", sa.Integer, sa.ForeignKey("ag_nodes.id", ondelete="CASCADE"), nullable=False),
    sa.Column("child_id", sa.Integer, sa.ForeignKey("ag_nodes.id", ondelete="CASCADE"), nullable=False),
    sa.PrimaryKeyConstraint("parent_id", "child_id"),
    sa.Index("ag_edges_child_id_idx", "child_id"),
)

principals = sa.Table(
    "ag_principals",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("subject_type", sa.String(255), nullable=False),
    sa.Column("subject_id", sa.String(255), nullable=False),
    sa.UniqueConstraint("subject_type", "subject_id", name="ag_principals_subject_uq"),
)

roles = sa.Table(
    "ag_roles",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("name", sa.String(150), nullable=False, unique=True),
    sa.Column("local", sa.Boolean, nullable=False, default=True),
    sa.Column("global", sa.Boolean, nullable=False, default=False),
)

role_permissions = sa.Table(
    "ag_role_permissions",
    metadata,
    sa.Column("role_id", sa.Integer, sa.ForeignKey("ag_roles.id", ondelete="CASCADE"), nullable=False),
    sa.Column("permission_name", sa.String(120), nullable=False),
    sa.PrimaryKeyConstraint("role_id", "permission_name"),
)


def _assignment_table(name: str) -> sa.Table:
    return sa.Table(
        name,
        metadata,
        sa.Column("role_id", sa.Integer, sa.ForeignKey("ag_roles.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "principal_id", sa.Integer, sa.ForeignKey("ag_principals.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("node_id", sa.Integer, sa.ForeignKey("ag_nodes.id", ondelete="CASCADE"), nullable=False),
        sa.PrimaryKeyConstraint("role_id", "principal_id", "node_id"),
        sa.Index(f"{name}_node_id_idx", "node_id"),
        sa.Index(f"{name}_principal_id_idx", "principal_id"),
    )


assignments = _assignment_table("ag_assignments")
effective_assignments = _assignment_table("ag_effective_assignments")


__all__ = [
    "assignments",
    "edges",
    "effective_assignments",
    "metadata",
    "nodes",
    "principals",
    "role_permissions",
    "roles",
]
