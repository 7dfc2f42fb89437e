"""
计价路由
"""
from datetime import date, timedelta
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from app.database import get_db
from app.models.schemas import GroupQuoteRequest, RoomPricingRequest, to_selections
from app.routers.errors import to_http_error
from app.services.price_service import PriceService

router = APIRouter(prefix="/prices", tags=["计价"])


@router.post("/calculate")
def calculate_price(
    data: RoomPricingRequest,
    db: Session = Depends(get_db)
):
    """计算单个房间的房费与附加费用"""
    service = PriceService(db)
    try:
        result = service.calculate_room_pricing(
            data.room_id,
            data.check_in,
            data.check_out,
            data.guest_count,
            to_selections(data.selected_additional_prices)
        )
        return result.to_dict()
    except ValueError as e:
        raise to_http_error(e)


@router.post("/group-quote")
def quote_group(
    data: GroupQuoteRequest,
    db: Session = Depends(get_db)
):
    """创建团体前为多个房间报价（逐房明细 + 团体合计）"""
    service = PriceService(db)
    try:
        return service.quote_group(data.check_in, data.check_out, data.to_quote_requests()).to_dict()
    except ValueError as e:
        raise to_http_error(e)


@router.get("/room-types/{room_type_id}/calendar")
def get_price_calendar(
    room_type_id: int,
    start: date = Query(default_factory=date.today),
    end: date = Query(default_factory=lambda: date.today() + timedelta(days=30)),
    db: Session = Depends(get_db)
):
    """获取价格日历"""
    service = PriceService(db)
    try:
        return service.get_price_calendar(room_type_id, start, end)
    except ValueError as e:
        raise to_http_error(e)
