from typing import Generic, Optional, TypeVar

from app.schemas.analysis import CamelModel

T = TypeVar("T")


class ApiResponse(CamelModel, Generic[T]):
    """Envelope of every JSON success response."""
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None
