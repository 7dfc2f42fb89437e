"""
价格服务 - 统一计价入口
所有房价与附加费用计算都必须经过这里，路由和其他服务不得自行累加总价

- 每晚房价：按固定顺序的解析策略求值（单日覆盖 → 日期区间 → 无配置），第一个非空结果生效
- 附加费用：建筑级 + 房型级定义，必选项总是计入，可选项需客户选择
- 房间汇总 / 团体汇总：团体汇总读取预订上的附加费用快照，不重新解析定义
"""
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from app.config import settings
from app.models.ontology import Room, Booking, BookingGroup, BookingAdditionalPrice
from app.models.pricing import (
    RateCalendar, FeeDefinition, FeeSelection,
    NightlyPrice, CalculatedAdditionalPrice, RoomPricingResult,
    GroupRoomPricing, GroupPricingResult,
    RoomQuoteRequest, GroupRoomQuote, GroupQuoteResult
)
from app.services.calendar_store import CalendarRuleStore, to_decimal
from app.services.exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# 周五(4)、周六(5) 晚按周末价
WEEKEND_WEEKDAYS = (4, 5)

UNPRICED_SOURCE = "none"


# ==================== 日期工具 ====================

def normalize_date(value) -> date:
    """去掉时间部分，只保留日历日期"""
    if isinstance(value, datetime):
        return value.date()
    return value


def calculate_nights(check_in: date, check_out: date) -> int:
    """入住晚数，最少 1 晚"""
    return max(1, (normalize_date(check_out) - normalize_date(check_in)).days)


def is_weekend_night(night: date) -> bool:
    return night.weekday() in WEEKEND_WEEKDAYS


def validate_stay(check_in: date, check_out: date) -> Tuple[date, date]:
    check_in, check_out = normalize_date(check_in), normalize_date(check_out)
    if check_in is None or check_out is None:
        raise ValidationError("入住日期和离店日期不能为空")
    if check_out <= check_in:
        raise ValidationError("离店日期必须晚于入住日期")
    return check_in, check_out


def iter_nights(check_in: date, check_out: date) -> Iterable[date]:
    """[check_in, check_out) 内的每一晚，离店当天不计"""
    current = check_in
    while current < check_out:
        yield current
        current += timedelta(days=1)


# ==================== 每晚房价解析策略 ====================

class NightlyPriceStrategy(ABC):
    """
    Nightly price lookup step.

    Strategies are evaluated in a fixed order; the first one returning a
    price wins and its `source` is recorded on the NightlyPrice.
    """

    source: str = ""

    @abstractmethod
    def resolve(self, calendar: RateCalendar, night: date, is_weekend: bool) -> Optional[Decimal]:
        """
        Resolve the price for one night.

        Returns:
            The price, or None when this strategy has no opinion.
        """
        raise NotImplementedError


class OverridePriceStrategy(NightlyPriceStrategy):
    """Single-day override with an explicit price."""

    source = "override"

    def resolve(self, calendar: RateCalendar, night: date, is_weekend: bool) -> Optional[Decimal]:
        override = calendar.find_override(night)
        return override.price if override else None


class DateRangePriceStrategy(NightlyPriceStrategy):
    """Active date range covering the night, split by weekday/weekend."""

    source = "dateRange"

    def resolve(self, calendar: RateCalendar, night: date, is_weekend: bool) -> Optional[Decimal]:
        rule = calendar.find_date_range(night)
        if rule is None:
            return None
        return rule.weekend_price if is_weekend else rule.weekday_price


NIGHTLY_PRICE_STRATEGIES: Tuple[NightlyPriceStrategy, ...] = (
    OverridePriceStrategy(),
    DateRangePriceStrategy(),
)


def resolve_nightly_price(calendar: RateCalendar, night: date,
                          strategies: Sequence[NightlyPriceStrategy] = NIGHTLY_PRICE_STRATEGIES
                          ) -> NightlyPrice:
    """解析单晚房价；所有策略都无结果时价格为 0、来源为 none"""
    is_weekend = is_weekend_night(night)
    for strategy in strategies:
        price = strategy.resolve(calendar, night, is_weekend)
        if price is not None:
            return NightlyPrice(date=night, price=price, source=strategy.source, is_weekend=is_weekend)
    return NightlyPrice(date=night, price=Decimal("0"), source=UNPRICED_SOURCE, is_weekend=is_weekend)


def resolve_nightly_prices(calendar: RateCalendar, check_in: date, check_out: date,
                           strategies: Sequence[NightlyPriceStrategy] = NIGHTLY_PRICE_STRATEGIES
                           ) -> List[NightlyPrice]:
    """
    解析入住区间内每晚房价（纯函数）

    Args:
        calendar: 房型价格规则
        check_in: 入住日期
        check_out: 离店日期（不计价）

    Returns:
        按日期排列的 NightlyPrice 列表
    """
    check_in, check_out = validate_stay(check_in, check_out)
    return [resolve_nightly_price(calendar, night, strategies) for night in iter_nights(check_in, check_out)]


def sum_nightly_prices(nightly_prices: Iterable[NightlyPrice]) -> Decimal:
    return sum((n.price for n in nightly_prices), Decimal("0"))


def stay_restrictions(calendar: RateCalendar, check_in: date, check_out: date) -> Tuple[int, List[date]]:
    """
    入住区间的最少晚数要求与不可预订日期（仅供提示，不影响计价）

    Returns:
        (min_nights, unavailable_dates)
    """
    min_nights = 1
    unavailable: List[date] = []
    for night in iter_nights(check_in, check_out):
        overrides = calendar.overrides_on(night)
        covering = [r for r in calendar.date_ranges if r.covers(night)]

        override_min = [o.min_nights for o in overrides if o.min_nights is not None]
        if override_min:
            min_nights = max(min_nights, override_min[0])
        elif covering and not covering[0].is_inactive:
            min_nights = max(min_nights, covering[0].min_nights or 1)

        if any(o.is_inactive for o in overrides) or (covering and covering[0].is_inactive):
            unavailable.append(night)
    return min_nights, unavailable


# ==================== 附加费用 ====================

def fee_quantity(definition: FeeDefinition, nights: int, guest_count: int) -> int:
    """数量从 1 开始；按晚乘晚数，按人乘人数，两者可叠加"""
    quantity = 1
    if definition.per_night:
        quantity *= nights
    if definition.per_guest:
        quantity *= guest_count
    return quantity


def resolve_additional_prices(definitions: Sequence[FeeDefinition], nights: int, guest_count: int,
                              selected: Optional[Iterable[FeeSelection]] = None
                              ) -> List[CalculatedAdditionalPrice]:
    """
    解析适用的附加费用（纯函数）

    必选项总是计入；可选项仅在 selected 中出现时计入。
    selected 中找不到对应定义的项（定义已删除）记录警告后跳过。
    """
    selected_keys = set(selected or ())
    known_keys = {d.key for d in definitions}
    for missing in sorted(selected_keys - known_keys, key=lambda s: (s.source_type.value, s.source_id)):
        logger.warning(
            f"Selected additional price {missing.source_type.value}:{missing.source_id} "
            f"not found, skipped"
        )

    result = []
    for definition in definitions:
        if not (definition.mandatory or definition.key in selected_keys):
            continue
        quantity = fee_quantity(definition, nights, guest_count)
        result.append(CalculatedAdditionalPrice(
            source_id=definition.source_id,
            source_type=definition.source_type,
            title=definition.title,
            unit_price=definition.unit_price,
            quantity=quantity,
            total=definition.unit_price * quantity,
            mandatory=definition.mandatory,
            per_night=definition.per_night,
            per_guest=definition.per_guest,
        ))
    return result


def sum_additional_prices(prices: Iterable[CalculatedAdditionalPrice]) -> Decimal:
    return sum((p.total for p in prices), Decimal("0"))


def build_fee_snapshot(prices: Iterable[CalculatedAdditionalPrice]) -> List[BookingAdditionalPrice]:
    """把计算结果复制成预订附加费用快照行（未持久化）"""
    return [
        BookingAdditionalPrice(title=p.title, price_eur=p.unit_price, quantity=p.quantity)
        for p in prices
    ]


def fee_lines_total(lines: Iterable[BookingAdditionalPrice]) -> Decimal:
    """快照行合计：sum(单价 × 数量)"""
    return sum((to_decimal(line.price_eur) * (line.quantity or 0) for line in lines), Decimal("0"))


# ==================== 价格服务 ====================

class PriceService:
    """价格服务"""

    def __init__(self, db: Session):
        self.db = db
        self.store = CalendarRuleStore(db)

    def get_bookable_room(self, room_id: int) -> Room:
        """获取可预订房间，不存在或已停用时抛出 ValidationError"""
        room = self.store.get_room(room_id)
        if not room:
            raise NotFoundError(f"房间 {room_id} 不存在")
        if not room.is_active:
            raise ValidationError(f"房间 {room.name} 已停用，不可预订")
        return room

    def check_guest_count(self, room: Room, guest_count: int) -> None:
        """写操作前校验入住人数：至少 1 人，且不超过房型容量（可配置关闭）"""
        if guest_count is None or guest_count < 1:
            raise ValidationError("入住人数至少为 1")
        capacity = room.room_type.capacity
        if settings.ENFORCE_GUEST_CAPACITY and capacity and guest_count > capacity:
            raise ValidationError(f"房间 {room.name} 最多入住 {capacity} 人")

    def resolve_fee_snapshot(self, room: Room, check_in: date, check_out: date, guest_count: int,
                             selected: Optional[Iterable[FeeSelection]]) -> List[BookingAdditionalPrice]:
        """按房间当前的附加费用定义生成快照行（未持久化）"""
        definitions = self.store.load_fee_definitions(room.room_type)
        nights = calculate_nights(check_in, check_out)
        return build_fee_snapshot(resolve_additional_prices(definitions, nights, guest_count, selected))

    def current_selection(self, booking: Booking) -> List[FeeSelection]:
        """
        从已有快照推断当前选中的可选费用

        快照只保存 title，按 title 匹配 booking.room 当前的可选定义；
        换房时须先把 booking.room 指向新房间再调用
        """
        titles = {line.title for line in booking.additional_prices}
        definitions = self.store.load_fee_definitions(booking.room.room_type)
        return [d.key for d in definitions if not d.mandatory and d.title in titles]

    def calculate_accommodation(self, room: Room, check_in: date, check_out: date) -> List[NightlyPrice]:
        """按当前规则实时计算房间每晚房价"""
        check_in, check_out = validate_stay(check_in, check_out)
        calendar = self.store.load_rate_calendar(
            room.room_type_id, check_in, check_out - timedelta(days=1)
        )
        return resolve_nightly_prices(calendar, check_in, check_out)

    def calculate_room_pricing(self, room_id: int, check_in: date, check_out: date,
                               guest_count: int = 1,
                               selected: Optional[Iterable[FeeSelection]] = None) -> RoomPricingResult:
        """计算单个房间的完整价格明细"""
        room = self.get_bookable_room(room_id)
        return self.price_room(room, check_in, check_out, guest_count, selected)

    def price_room(self, room: Room, check_in: date, check_out: date,
                   guest_count: int = 1,
                   selected: Optional[Iterable[FeeSelection]] = None) -> RoomPricingResult:
        """
        房间计价：房费 + 附加费用

        Args:
            room: 房间
            check_in: 入住日期
            check_out: 离店日期
            guest_count: 入住人数
            selected: 客户选择的可选附加费用

        Returns:
            RoomPricingResult
        """
        if not room.is_active:
            raise ValidationError(f"房间 {room.name} 已停用，不可预订")
        check_in, check_out = validate_stay(check_in, check_out)
        nights = calculate_nights(check_in, check_out)

        calendar = self.store.load_rate_calendar(
            room.room_type_id, check_in, check_out - timedelta(days=1)
        )
        nightly_prices = resolve_nightly_prices(calendar, check_in, check_out)
        accommodation_total = sum_nightly_prices(nightly_prices)
        min_nights, unavailable_dates = stay_restrictions(calendar, check_in, check_out)

        definitions = self.store.load_fee_definitions(room.room_type)
        additional_prices = resolve_additional_prices(definitions, nights, guest_count, selected)
        additional_prices_total = sum_additional_prices(additional_prices)

        result = RoomPricingResult(
            nights=nights,
            nightly_prices=nightly_prices,
            accommodation_total=accommodation_total,
            additional_prices=additional_prices,
            additional_prices_total=additional_prices_total,
            grand_total=accommodation_total + additional_prices_total,
            min_nights=min_nights,
            unavailable_dates=unavailable_dates,
        )
        if result.has_incomplete_pricing:
            logger.warning(
                f"Room {room.id} has no price configured for "
                f"{', '.join(d.isoformat() for d in result.unpriced_dates)}"
            )
        return result

    def quote_group(self, check_in: date, check_out: date,
                    rooms: Sequence[RoomQuoteRequest]) -> GroupQuoteResult:
        """
        为尚未创建的团体报价

        每个房间按 price_room 计价（含客户选择的可选费用），不写库、不做占用检查

        Args:
            check_in: 入住日期
            check_out: 离店日期
            rooms: 房间、人数与可选费用

        Returns:
            GroupQuoteResult
        """
        check_in, check_out = validate_stay(check_in, check_out)
        if not rooms:
            raise ValidationError("至少需要一个房间")
        room_ids = [r.room_id for r in rooms]
        if len(set(room_ids)) != len(room_ids):
            raise ValidationError("同一房间不能重复报价")

        quotes: List[GroupRoomQuote] = []
        for request in rooms:
            if request.guest_count < 1:
                raise ValidationError("入住人数至少为 1")
            room = self.get_bookable_room(request.room_id)
            pricing = self.price_room(room, check_in, check_out, request.guest_count, request.selected)
            quotes.append(GroupRoomQuote(
                room_id=room.id,
                room_name=room.name,
                room_type_name=room.room_type.name,
                building_name=room.room_type.building.name,
                guest_count=request.guest_count,
                pricing=pricing,
            ))

        accommodation_sum = sum((q.pricing.accommodation_total for q in quotes), Decimal("0"))
        additional_sum = sum((q.pricing.additional_prices_total for q in quotes), Decimal("0"))
        return GroupQuoteResult(
            nights=calculate_nights(check_in, check_out),
            rooms=quotes,
            group_accommodation_total=accommodation_sum,
            group_additional_prices_total=additional_sum,
            group_grand_total=accommodation_sum + additional_sum,
        )

    def calculate_group_pricing(self, group_id: int) -> GroupPricingResult:
        """计算团体预订价格汇总"""
        group = self.db.query(BookingGroup).filter(BookingGroup.id == group_id).first()
        if not group:
            raise NotFoundError(f"团体预订 {group_id} 不存在")
        return self.price_group(group)

    def price_group(self, group: BookingGroup) -> GroupPricingResult:
        """
        团体汇总

        所有成员使用团体的统一入住区间；房费按当前规则实时计算，
        附加费用只读取各预订已保存的快照行
        """
        check_in, check_out = validate_stay(group.check_in, group.check_out)
        rooms: List[GroupRoomPricing] = []
        accommodation_sum = Decimal("0")
        additional_sum = Decimal("0")

        for booking in group.bookings:
            nightly_prices = self.calculate_accommodation(booking.room, check_in, check_out)
            accommodation_total = sum_nightly_prices(nightly_prices)
            additional_total = fee_lines_total(booking.additional_prices)
            rooms.append(GroupRoomPricing(
                booking_id=booking.id,
                room_id=booking.room_id,
                room_name=booking.room.name,
                guest_count=booking.guest_count,
                accommodation_total=accommodation_total,
                additional_prices_total=additional_total,
                room_total=accommodation_total + additional_total,
                unpriced_dates=[n.date for n in nightly_prices if n.source == UNPRICED_SOURCE],
            ))
            accommodation_sum += accommodation_total
            additional_sum += additional_total

        return GroupPricingResult(
            group_id=group.id,
            nights=calculate_nights(check_in, check_out),
            rooms=rooms,
            group_accommodation_total=accommodation_sum,
            group_additional_prices_total=additional_sum,
            group_grand_total=accommodation_sum + additional_sum,
        )

    def get_price_calendar(self, room_type_id: int, start_date: date, end_date: date) -> List[dict]:
        """获取价格日历（start_date 与 end_date 均包含）"""
        if not self.store.get_room_type(room_type_id):
            raise NotFoundError("房型不存在")
        if end_date < start_date:
            raise ValidationError("结束日期不能早于开始日期")

        calendar = self.store.load_rate_calendar(room_type_id, start_date, end_date)
        result = []
        for night in iter_nights(start_date, end_date + timedelta(days=1)):
            nightly = resolve_nightly_price(calendar, night)
            overrides = calendar.overrides_on(night)
            covering = next((r for r in calendar.date_ranges if r.covers(night)), None)
            min_nights = next((o.min_nights for o in overrides if o.min_nights is not None), None)
            if min_nights is None and covering is not None:
                min_nights = covering.min_nights
            result.append({
                'date': night,
                'price': nightly.price,
                'source': nightly.source,
                'is_weekend': nightly.is_weekend,
                'min_nights': min_nights or 1,
                'is_inactive': any(o.is_inactive for o in overrides) or bool(covering and covering.is_inactive),
            })
        return result
