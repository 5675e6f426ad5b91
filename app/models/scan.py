"""ORM model for scans. Written by the scan lifecycle; read here for auto-resolution."""

from sqlalchemy import Column, DateTime, String, func

from app.models.base import Base


class Scan(Base):
    """
    One scan of a repository.

    status: 'queued', 'running', 'completed' or 'failed'. Only completed scans
    take part in auto-resolution.
    """

    __tablename__ = "scans"

    id = Column(String(64), primary_key=True)
    repository_id = Column(String(255), nullable=False, index=True)
    workspace_id = Column(String(255), nullable=False)
    status = Column(String(32), nullable=False, default="queued", index=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    completed_at = Column(DateTime(timezone=True), nullable=True)
