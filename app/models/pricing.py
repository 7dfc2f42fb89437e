"""
计价读模型与结果模型

读模型（不可变、从不持久化）：DateRangeRule / CalendarOverrideRule / RateCalendar /
FeeDefinition / FeeSelection。附加费用的持久化快照是 ORM 的 BookingAdditionalPrice，
两者刻意分开：团体汇总只读快照，从不读实时定义。
"""
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from app.models.ontology import FeeSourceType


# ============== 价格规则读模型 ==============

@dataclass(frozen=True)
class DateRangeRule:
    """日期区间价格规则（两端包含）"""
    id: int
    start_date: date
    end_date: date
    weekday_price: Decimal
    weekend_price: Decimal
    min_nights: int = 1
    is_inactive: bool = False

    def covers(self, night: date) -> bool:
        return self.start_date <= night <= self.end_date


@dataclass(frozen=True)
class CalendarOverrideRule:
    """单日覆盖规则"""
    id: int
    date: date
    price: Optional[Decimal] = None
    min_nights: Optional[int] = None
    is_inactive: bool = False


@dataclass(frozen=True)
class RateCalendar:
    """
    某房型的全部价格规则，按创建顺序排列

    规则可能重叠（CRUD 层负责避免），查找时按存储顺序取第一个匹配项
    """
    room_type_id: int
    date_ranges: Tuple[DateRangeRule, ...] = ()
    overrides: Tuple[CalendarOverrideRule, ...] = ()

    def find_override(self, night: date) -> Optional[CalendarOverrideRule]:
        """当日第一条带价格的覆盖规则"""
        for override in self.overrides:
            if override.date == night and override.price is not None:
                return override
        return None

    def find_date_range(self, night: date) -> Optional[DateRangeRule]:
        """覆盖当日且未停用的第一条区间规则"""
        for rule in self.date_ranges:
            if rule.covers(night) and not rule.is_inactive:
                return rule
        return None

    def overrides_on(self, night: date) -> List[CalendarOverrideRule]:
        return [o for o in self.overrides if o.date == night]


# ============== 附加费用读模型 ==============

@dataclass(frozen=True)
class FeeSelection:
    """客户选择的可选附加费用标识"""
    source_id: int
    source_type: FeeSourceType


@dataclass(frozen=True)
class FeeDefinition:
    """附加费用定义（建筑级或房型级）"""
    source_id: int
    source_type: FeeSourceType
    title: str
    unit_price: Decimal
    mandatory: bool = False
    per_night: bool = False
    per_guest: bool = False

    @property
    def key(self) -> FeeSelection:
        return FeeSelection(self.source_id, self.source_type)


# ============== 计价结果 ==============

@dataclass
class NightlyPrice:
    """单晚房费"""
    date: date
    price: Decimal
    source: str          # override / dateRange / none
    is_weekend: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "price": self.price,
            "source": self.source,
            "isWeekend": self.is_weekend,
        }


@dataclass
class CalculatedAdditionalPrice:
    """一条已计算数量与小计的附加费用"""
    source_id: int
    source_type: FeeSourceType
    title: str
    unit_price: Decimal
    quantity: int
    total: Decimal
    mandatory: bool
    per_night: bool
    per_guest: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sourceId": self.source_id,
            "sourceType": self.source_type.value,
            "title": self.title,
            "unitPrice": self.unit_price,
            "quantity": self.quantity,
            "total": self.total,
            "mandatory": self.mandatory,
            "perNight": self.per_night,
            "perGuest": self.per_guest,
        }


@dataclass
class RoomPricingResult:
    """单个房间的完整价格明细"""
    nights: int
    nightly_prices: List[NightlyPrice]
    accommodation_total: Decimal
    additional_prices: List[CalculatedAdditionalPrice]
    additional_prices_total: Decimal
    grand_total: Decimal
    min_nights: int = 1
    unavailable_dates: List[date] = field(default_factory=list)

    @property
    def unpriced_dates(self) -> List[date]:
        """缺少价格配置（source=none）的日期"""
        return [n.date for n in self.nightly_prices if n.source == "none"]

    @property
    def has_incomplete_pricing(self) -> bool:
        return bool(self.unpriced_dates)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nights": self.nights,
            "nightlyPrices": [n.to_dict() for n in self.nightly_prices],
            "accommodationTotal": self.accommodation_total,
            "additionalPrices": [p.to_dict() for p in self.additional_prices],
            "additionalPricesTotal": self.additional_prices_total,
            "grandTotal": self.grand_total,
            "minNights": self.min_nights,
            "unavailableDates": [d.isoformat() for d in self.unavailable_dates],
            "unpricedDates": [d.isoformat() for d in self.unpriced_dates],
            "hasIncompletePricing": self.has_incomplete_pricing,
        }


@dataclass
class GroupRoomPricing:
    """团体中一个房间的汇总"""
    booking_id: int
    room_id: int
    room_name: str
    guest_count: int
    accommodation_total: Decimal
    additional_prices_total: Decimal
    room_total: Decimal
    unpriced_dates: List[date] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bookingId": self.booking_id,
            "roomId": self.room_id,
            "roomName": self.room_name,
            "guestCount": self.guest_count,
            "accommodationTotal": self.accommodation_total,
            "additionalPricesTotal": self.additional_prices_total,
            "roomTotal": self.room_total,
            "unpricedDates": [d.isoformat() for d in self.unpriced_dates],
        }


@dataclass
class GroupPricingResult:
    """团体预订价格汇总"""
    group_id: int
    nights: int
    rooms: List[GroupRoomPricing]
    group_accommodation_total: Decimal
    group_additional_prices_total: Decimal
    group_grand_total: Decimal

    @property
    def has_incomplete_pricing(self) -> bool:
        return any(r.unpriced_dates for r in self.rooms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "groupId": self.group_id,
            "nights": self.nights,
            "perRoom": [r.to_dict() for r in self.rooms],
            "groupAccommodationTotal": self.group_accommodation_total,
            "groupAdditionalPricesTotal": self.group_additional_prices_total,
            "groupGrandTotal": self.group_grand_total,
            "hasIncompletePricing": self.has_incomplete_pricing,
        }


@dataclass(frozen=True)
class RoomQuoteRequest:
    """团体报价中的一个房间"""
    room_id: int
    guest_count: int = 1
    selected: Tuple[FeeSelection, ...] = ()


@dataclass
class GroupRoomQuote:
    """尚未创建的团体中一个房间的报价"""
    room_id: int
    room_name: str
    room_type_name: str
    building_name: str
    guest_count: int
    pricing: RoomPricingResult

    def to_dict(self) -> Dict[str, Any]:
        return {
            "roomId": self.room_id,
            "roomName": self.room_name,
            "roomTypeName": self.room_type_name,
            "buildingName": self.building_name,
            "guestCount": self.guest_count,
            **self.pricing.to_dict(),
        }


@dataclass
class GroupQuoteResult:
    """团体报价：逐房明细 + 团体合计"""
    nights: int
    rooms: List[GroupRoomQuote]
    group_accommodation_total: Decimal
    group_additional_prices_total: Decimal
    group_grand_total: Decimal

    @property
    def has_incomplete_pricing(self) -> bool:
        return any(r.pricing.has_incomplete_pricing for r in self.rooms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nights": self.nights,
            "rooms": [r.to_dict() for r in self.rooms],
            "groupAccommodationTotal": self.group_accommodation_total,
            "groupAdditionalPricesTotal": self.group_additional_prices_total,
            "groupGrandTotal": self.group_grand_total,
            "hasIncompletePricing": self.has_incomplete_pricing,
        }


@dataclass
class TotalsResult:
    """写操作后返回给调用方的房间总价与团体总价"""
    room_total: Decimal
    group_total: Optional[Decimal] = None
    booking_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bookingId": self.booking_id,
            "roomTotal": self.room_total,
            "groupTotal": self.group_total,
        }
