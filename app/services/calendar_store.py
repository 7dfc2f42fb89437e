"""
价格规则读取层 (Calendar Rule Store)

把房型的日期区间价格、单日覆盖、附加费用定义读成不可变读模型。
每次调用都重新查询数据库，不做跨请求缓存：规则可能在团体创建后被修改。
"""
from datetime import date
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from app.models.ontology import (
    Room, RoomType, DateRangePrice, CalendarOverride,
    BuildingAdditionalPrice, RoomTypeAdditionalPrice, FeeSourceType
)
from app.models.pricing import (
    DateRangeRule, CalendarOverrideRule, RateCalendar, FeeDefinition
)


def to_decimal(value) -> Decimal:
    """数据库数值统一转 Decimal（SQLite 下 Numeric 可能返回 float）"""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class CalendarRuleStore:
    """价格规则只读存储"""

    def __init__(self, db: Session):
        self.db = db

    def get_room(self, room_id: int) -> Optional[Room]:
        return self.db.query(Room).filter(Room.id == room_id).first()

    def get_room_type(self, room_type_id: int) -> Optional[RoomType]:
        return self.db.query(RoomType).filter(RoomType.id == room_type_id).first()

    def load_rate_calendar(self, room_type_id: int,
                           start: Optional[date] = None,
                           end: Optional[date] = None) -> RateCalendar:
        """
        读取房型价格规则

        Args:
            room_type_id: 房型 ID
            start: 可选，只读取与 [start, end] 相交的规则
            end: 可选，区间结束日期（包含）

        Returns:
            按创建顺序排列的 RateCalendar
        """
        ranges_query = self.db.query(DateRangePrice).filter(
            DateRangePrice.room_type_id == room_type_id
        )
        overrides_query = self.db.query(CalendarOverride).filter(
            CalendarOverride.room_type_id == room_type_id
        )
        if start is not None and end is not None:
            ranges_query = ranges_query.filter(
                DateRangePrice.start_date <= end,
                DateRangePrice.end_date >= start
            )
            overrides_query = overrides_query.filter(
                CalendarOverride.date >= start,
                CalendarOverride.date <= end
            )

        date_ranges = tuple(
            DateRangeRule(
                id=r.id,
                start_date=r.start_date,
                end_date=r.end_date,
                weekday_price=to_decimal(r.weekday_price),
                weekend_price=to_decimal(r.weekend_price),
                min_nights=r.min_nights or 1,
                is_inactive=bool(r.is_inactive),
            )
            for r in ranges_query.order_by(DateRangePrice.id).all()
        )
        overrides = tuple(
            CalendarOverrideRule(
                id=o.id,
                date=o.date,
                price=to_decimal(o.price) if o.price is not None else None,
                min_nights=o.min_nights,
                is_inactive=bool(o.is_inactive),
            )
            for o in overrides_query.order_by(CalendarOverride.id).all()
        )
        return RateCalendar(room_type_id=room_type_id, date_ranges=date_ranges, overrides=overrides)

    def load_fee_definitions(self, room_type: RoomType) -> List[FeeDefinition]:
        """
        读取房间可用的附加费用定义：先建筑级，后房型级，各自按 order 排序
        """
        building_prices = self.db.query(BuildingAdditionalPrice).filter(
            BuildingAdditionalPrice.building_id == room_type.building_id
        ).order_by(BuildingAdditionalPrice.order, BuildingAdditionalPrice.id).all()

        room_type_prices = self.db.query(RoomTypeAdditionalPrice).filter(
            RoomTypeAdditionalPrice.room_type_id == room_type.id
        ).order_by(RoomTypeAdditionalPrice.order, RoomTypeAdditionalPrice.id).all()

        definitions = [
            self._to_definition(p, FeeSourceType.BUILDING) for p in building_prices
        ]
        definitions.extend(
            self._to_definition(p, FeeSourceType.ROOM_TYPE) for p in room_type_prices
        )
        return definitions

    @staticmethod
    def _to_definition(price, source_type: FeeSourceType) -> FeeDefinition:
        return FeeDefinition(
            source_id=price.id,
            source_type=source_type,
            title=price.title,
            unit_price=to_decimal(price.price_eur),
            mandatory=bool(price.mandatory),
            per_night=bool(price.per_night),
            per_guest=bool(price.per_guest),
        )
