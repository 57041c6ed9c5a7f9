from app.db.base import Base
from app.models.repository import RepositoryRecord
from app.models.analysis import AnalysisRecord

__all__ = ["Base", "RepositoryRecord", "AnalysisRecord"]
