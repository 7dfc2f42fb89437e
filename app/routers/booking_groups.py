"""
团体预订路由
"""
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from app.database import get_db
from app.models.schemas import (
    BookingGroupCreate, BookingGroupUpdate, GroupRoomIn, GroupRoomUpdate, to_selections
)
from app.routers.errors import to_http_error
from app.services.booking_group_service import BookingGroupService

router = APIRouter(prefix="/booking-groups", tags=["团体预订"])


@router.post("", status_code=status.HTTP_201_CREATED)
def create_group(
    data: BookingGroupCreate,
    db: Session = Depends(get_db)
):
    """创建团体预订"""
    service = BookingGroupService(db)
    try:
        group = service.create_group(data)
        return service.get_group_detail(group)
    except ValueError as e:
        raise to_http_error(e)


@router.get("/{group_id}")
def get_group(
    group_id: int,
    db: Session = Depends(get_db)
):
    """获取团体预订详情"""
    service = BookingGroupService(db)
    group = service.get_group(group_id)
    if not group:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="团体预订不存在")
    return service.get_group_detail(group)


@router.put("/{group_id}")
def update_group(
    group_id: int,
    data: BookingGroupUpdate,
    db: Session = Depends(get_db)
):
    """修改团体客人信息、入住区间或状态；区间变化时同步到全部成员并重算总价"""
    service = BookingGroupService(db)
    try:
        group = service.update_group(group_id, data)
        return service.get_group_detail(group)
    except ValueError as e:
        raise to_http_error(e)


@router.post("/{group_id}/cancel")
def cancel_group(
    group_id: int,
    db: Session = Depends(get_db)
):
    """取消团体预订，释放全部房间"""
    service = BookingGroupService(db)
    try:
        group = service.cancel_group(group_id)
        return service.get_group_detail(group)
    except ValueError as e:
        raise to_http_error(e)


@router.get("/{group_id}/pricing")
def get_group_pricing(
    group_id: int,
    db: Session = Depends(get_db)
):
    """团体价格汇总"""
    service = BookingGroupService(db)
    try:
        return service.get_group_pricing(group_id).to_dict()
    except ValueError as e:
        raise to_http_error(e)


@router.post("/{group_id}/rooms")
def add_room(
    group_id: int,
    data: GroupRoomIn,
    db: Session = Depends(get_db)
):
    """向团体添加房间"""
    service = BookingGroupService(db)
    try:
        totals = service.add_room(
            group_id, data.room_id, data.guest_count,
            to_selections(data.selected_additional_prices)
        )
        return totals.to_dict()
    except ValueError as e:
        raise to_http_error(e)


@router.put("/{group_id}/rooms")
def update_room(
    group_id: int,
    data: GroupRoomUpdate,
    db: Session = Depends(get_db)
):
    """修改团体内的房间、人数或附加费用"""
    service = BookingGroupService(db)
    selected = None
    if data.selected_additional_prices is not None:
        selected = to_selections(data.selected_additional_prices)
    try:
        totals = service.update_room(
            group_id,
            data.booking_id,
            room_id=data.room_id,
            guest_count=data.guest_count,
            selected=selected,
            fee_lines=data.additional_prices
        )
        return totals.to_dict()
    except ValueError as e:
        raise to_http_error(e)


@router.delete("/{group_id}/rooms")
def remove_room(
    group_id: int,
    booking_id: int = Query(..., alias="bookingId"),
    db: Session = Depends(get_db)
):
    """从团体移除房间；只剩一个房间时团体解散"""
    service = BookingGroupService(db)
    try:
        result = service.remove_room(group_id, booking_id)
        return {
            "dissolved": result['dissolved'],
            "standaloneBookingId": result['standalone_booking_id'],
            "roomTotal": result['room_total'],
            "groupTotal": result['group_total'],
        }
    except ValueError as e:
        raise to_http_error(e)


@router.post("/{group_id}/recalculate")
def recalculate_group(
    group_id: int,
    db: Session = Depends(get_db)
):
    """按当前规则重算团体内全部房间总价"""
    service = BookingGroupService(db)
    try:
        return service.recalculate_group(group_id).to_dict()
    except ValueError as e:
        raise to_http_error(e)
