"""
服务层异常到 HTTP 状态码的映射
"""
from fastapi import HTTPException, status

from app.services.exceptions import ConflictError, NotFoundError


def to_http_error(e: ValueError) -> HTTPException:
    """ConflictError → 409，NotFoundError → 404，其余 ValueError → 400"""
    if isinstance(e, ConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.to_dict())
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
