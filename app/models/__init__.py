"""SQLAlchemy ORM models."""

from app.models.base import Base
from app.models.scan import Scan
from app.models.vulnerability import UnifiedVulnerability, VulnerabilityInstance

__all__ = ["Base", "Scan", "UnifiedVulnerability", "VulnerabilityInstance"]
