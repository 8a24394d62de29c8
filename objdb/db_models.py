"""SQLAlchemy models for the entity arena."""
from sqlalchemy import Column, String, Integer, Text, DateTime, Index, text
from sqlalchemy.sql import func

from .database import Base


class Namespace(Base):
    """Registry of namespaces (isolated logical databases)."""
    __tablename__ = "namespaces"

    name = Column(String(15), primary_key=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Namespace(name={self.name})>"


class ArenaRow(Base):
    """
    One row of the entity arena.

    Types, requisites, objects and attribute values all share this shape:

    - type: ``up == 0``; ``t`` is the base type id, ``ord`` the unique flag
    - requisite: ``up`` is the owning type id; ``t`` a base id or a
      referenced type id; ``val`` the encoded modifier string
    - object: ``t`` is its type id; ``up`` its parent (1 for independent objects)
    - attribute value: ``up`` is the owning object id; ``t`` the requisite id
    """
    __tablename__ = "arena"

    namespace = Column(String(15), primary_key=True)
    id = Column(Integer, primary_key=True, autoincrement=False)
    up = Column(Integer, nullable=False, default=0)
    ord = Column(Integer, nullable=False, default=0)
    t = Column(Integer, nullable=False, default=0)
    val = Column(Text, nullable=False, default="")

    __table_args__ = (
        Index("idx_arena_type", "namespace", "t"),
        Index("idx_arena_parent", "namespace", "up"),
        # Dense order per (parent, type); type rows keep their unique flag in ord
        Index(
            "uq_arena_order",
            "namespace", "up", "t", "ord",
            unique=True,
            postgresql_where=text("up <> 0"),
            sqlite_where=text("up <> 0"),
        ),
    )

    def to_dict(self) -> dict:
        return {"id": self.id, "up": self.up, "ord": self.ord, "t": self.t, "val": self.val}

    def __repr__(self):
        return f"<ArenaRow(namespace={self.namespace}, id={self.id}, up={self.up}, t={self.t}, ord={self.ord})>"
