"""
SQLAlchemy models for build records and their event history.
"""
from sqlalchemy import Column, Text, Integer, Index, ForeignKey
from sqlalchemy.orm import relationship

from launchpad.db.database import Base


class Build(Base):
    """One submitted build and its current lifecycle state."""
    __tablename__ = "builds"

    id = Column(Text, primary_key=True, index=True)
    source_location = Column(Text, nullable=False)
    build_command = Column(Text, nullable=False)
    build_output_dir = Column(Text, nullable=False)
    state = Column(Text, nullable=False, index=True)
    log = Column(Text, nullable=False, default="")  # append-only
    image_ref = Column(Text, nullable=True)
    endpoint = Column(Text, nullable=True)  # set only while running
    created_at = Column(Text, nullable=False, index=True)  # ISO timestamp
    updated_at = Column(Text, nullable=False)

    events = relationship(
        "BuildEvent",
        back_populates="build",
        cascade="all, delete-orphan",
        order_by="BuildEvent.sequence",
    )

    __table_args__ = (
        Index("ix_builds_state_created", "state", "created_at"),
    )


class BuildEvent(Base):
    """Immutable record of one state transition."""
    __tablename__ = "build_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    build_id = Column(Text, ForeignKey("builds.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)  # 1-based, per build
    state = Column(Text, nullable=False)
    timestamp = Column(Text, nullable=False)  # ISO timestamp
    detail = Column(Text, nullable=True)

    build = relationship("Build", back_populates="events")

    __table_args__ = (
        Index("ix_build_events_build_seq", "build_id", "sequence", unique=True),
    )
