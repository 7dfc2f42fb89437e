"""
单独预订路由
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from app.database import get_db
from app.models.schemas import BookingCreate, BookingUpdate
from app.routers.errors import to_http_error
from app.services.booking_group_service import booking_detail
from app.services.booking_service import BookingService

router = APIRouter(prefix="/bookings", tags=["预订管理"])


@router.get("/{booking_id}")
def get_booking(
    booking_id: int,
    db: Session = Depends(get_db)
):
    """获取预订详情"""
    booking = BookingService(db).get_booking(booking_id)
    if not booking:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="预订不存在")
    return booking_detail(booking)


@router.post("", status_code=status.HTTP_201_CREATED)
def create_booking(
    data: BookingCreate,
    db: Session = Depends(get_db)
):
    """创建单独预订"""
    service = BookingService(db)
    try:
        return booking_detail(service.create_booking(data))
    except ValueError as e:
        raise to_http_error(e)


@router.put("/{booking_id}")
def update_booking(
    booking_id: int,
    data: BookingUpdate,
    db: Session = Depends(get_db)
):
    """修改单独预订"""
    service = BookingService(db)
    try:
        return booking_detail(service.update_booking(booking_id, data))
    except ValueError as e:
        raise to_http_error(e)


@router.post("/{booking_id}/cancel")
def cancel_booking(
    booking_id: int,
    db: Session = Depends(get_db)
):
    """取消预订"""
    service = BookingService(db)
    try:
        return booking_detail(service.cancel_booking(booking_id))
    except ValueError as e:
        raise to_http_error(e)
