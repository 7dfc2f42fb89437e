"""
团体预订服务 - BookingGroup 聚合根的一致性维护

所有成员变更（加房、换房、改人数、改附加费用、移除房间、改入住区间、取消）都经过这里：
同一团体的变更在进程内串行执行，涉及占用检查的变更再按房间加锁；
在同一事务中锁定团体行与房间行、替换快照、重算房间总价与团体总价后一起提交，
任何一步失败整体回滚。
"""
import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Iterable, Iterator, List, Optional, Sequence

from sqlalchemy.orm import Session

from app.config import settings
from app.database import transaction
from app.models.ontology import (
    Booking, BookingGroup, BookingAdditionalPrice, BookingStatus, PaymentStatus, Room
)
from app.models.pricing import FeeSelection, GroupPricingResult, TotalsResult
from app.models.schemas import BookingGroupCreate, BookingGroupUpdate, FeeLineIn
from app.services.availability_service import AvailabilityService
from app.services.exceptions import InvariantViolation, NotFoundError, ValidationError
from app.services.locks import group_locks, room_locks
from app.services.price_service import PriceService, validate_stay

logger = logging.getLogger(__name__)

# 解散团体时复制到剩余预订的跟踪字段
GROUP_TRACKING_FIELDS = (
    "has_custom_huf_price", "custom_huf_price", "invoice_sent", "guest_registered", "cleaned",
)

# 修改团体时同步到每个成员的字段
MEMBER_SHARED_FIELDS = (
    "guest_name", "guest_email", "guest_phone", "arrival_time", "status",
)


def unset_if_zero(amount: Decimal) -> Optional[Decimal]:
    """总价为 0 时存 NULL（表示尚未定价）"""
    return amount if amount > 0 else None


class BookingGroupService:
    """团体预订服务"""

    def __init__(self, db: Session):
        self.db = db
        self.price_service = PriceService(db)
        self.availability = AvailabilityService(db)

    # ==================== 查询 ====================

    def get_group(self, group_id: int) -> Optional[BookingGroup]:
        """获取团体预订"""
        return self.db.query(BookingGroup).filter(BookingGroup.id == group_id).first()

    def get_group_pricing(self, group_id: int) -> GroupPricingResult:
        return self.price_service.calculate_group_pricing(group_id)

    def get_group_detail(self, group: BookingGroup) -> dict:
        """团体详情（含成员与快照行）"""
        return {
            'id': group.id,
            'guest_name': group.guest_name,
            'guest_email': group.guest_email,
            'guest_phone': group.guest_phone,
            'source': group.source,
            'check_in': group.check_in,
            'check_out': group.check_out,
            'status': group.status,
            'payment_status': group.payment_status,
            'total_amount': group.total_amount,
            'bookings': [booking_detail(b) for b in group.bookings],
        }

    # ==================== 内部工具 ====================

    @contextmanager
    def _mutating(self, group_id: int, room_ids: Iterable[Optional[int]] = (),
                  lock_members: bool = False) -> Iterator[BookingGroup]:
        """
        串行化同一团体的变更，并在单个事务中执行

        先取团体锁，再按 ID 升序取房间锁（room_ids，lock_members 时加上全部成员房间），
        事务内锁定团体行与房间行
        """
        with group_locks.hold(group_id):
            room_ids = set(room_ids)
            if lock_members:
                room_ids.update(self._member_room_ids(group_id))
            with room_locks.hold(*room_ids):
                with transaction(self.db):
                    group = self._lock_group(group_id)
                    self.availability.lock_rooms(room_ids)
                    yield group

    def _member_room_ids(self, group_id: int) -> List[int]:
        rows = self.db.query(Booking.room_id).filter(Booking.group_id == group_id).all()
        return [room_id for (room_id,) in rows]

    def _lock_group(self, group_id: int) -> BookingGroup:
        group = self.db.query(BookingGroup).filter(
            BookingGroup.id == group_id
        ).with_for_update().populate_existing().first()
        if not group:
            raise NotFoundError(f"团体预订 {group_id} 不存在")
        return group

    def _require_active(self, group: BookingGroup) -> None:
        if group.status == BookingStatus.CANCELLED:
            raise ValidationError(f"团体预订 {group.id} 已取消，不可修改")

    def _find_member(self, group: BookingGroup, booking_id: int) -> Booking:
        booking = next((b for b in group.bookings if b.id == booking_id), None)
        if not booking:
            raise NotFoundError(f"预订 {booking_id} 不属于该团体")
        return booking

    def _replace_fee_lines(self, booking: Booking, lines: List[BookingAdditionalPrice]) -> None:
        """整体替换快照：先删除旧行，再创建新行"""
        booking.additional_prices.clear()
        self.db.flush()
        booking.additional_prices.extend(lines)
        self.db.flush()

    def _persist_totals(self, booking: Booking, group: BookingGroup) -> TotalsResult:
        """
        在当前事务内重算并写入房间总价与团体总价

        房费按最新规则实时计算；附加费用取快照行
        """
        pricing = self._persist_group_total(group)
        room = next(r for r in pricing.rooms if r.booking_id == booking.id)
        return TotalsResult(
            room_total=room.room_total,
            group_total=pricing.group_grand_total,
            booking_id=booking.id,
        )

    def _persist_group_total(self, group: BookingGroup) -> GroupPricingResult:
        """重新汇总团体，写回每个成员的房间总价和团体总价"""
        self.db.flush()
        self.db.expire(group, ["bookings"])
        pricing = self.price_service.price_group(group)
        by_booking = {r.booking_id: r for r in pricing.rooms}
        for member in group.bookings:
            member.total_amount = unset_if_zero(by_booking[member.id].room_total)
        group.total_amount = unset_if_zero(pricing.group_grand_total)
        return pricing

    # ==================== 创建 ====================

    def create_group(self, data: BookingGroupCreate) -> BookingGroup:
        """
        创建团体预订

        每个房间：存在且启用、人数不超限、日期无冲突；
        附加费用按创建时的定义生成快照，总价随后统一计算
        """
        check_in, check_out = validate_stay(data.check_in, data.check_out)
        if len(data.rooms) < settings.GROUP_MIN_ROOMS:
            raise ValidationError(f"团体预订至少需要 {settings.GROUP_MIN_ROOMS} 个房间")

        room_ids = [r.room_id for r in data.rooms]
        if len(set(room_ids)) != len(room_ids):
            raise ValidationError("同一房间不能重复加入团体")

        with room_locks.hold(*room_ids), transaction(self.db):
            self.availability.lock_rooms(room_ids)
            group = BookingGroup(
                guest_name=data.guest_name,
                guest_email=data.guest_email,
                guest_phone=data.guest_phone,
                source=data.source,
                check_in=check_in,
                check_out=check_out,
                arrival_time=data.arrival_time,
                notes=data.notes,
                status=data.status,
                payment_status=data.payment_status,
                has_custom_huf_price=data.has_custom_huf_price,
                custom_huf_price=data.custom_huf_price,
                invoice_sent=data.invoice_sent,
                guest_registered=data.guest_registered,
                cleaned=data.cleaned,
            )
            self.db.add(group)

            members = []
            for room_data in data.rooms:
                room = self.price_service.get_bookable_room(room_data.room_id)
                self.price_service.check_guest_count(room, room_data.guest_count)
                self.availability.ensure_available(room, check_in, check_out)

                selected = [s.to_selection() for s in room_data.selected_additional_prices]
                booking = self._new_member(group, room, room_data.guest_count)
                booking.additional_prices = self.price_service.resolve_fee_snapshot(
                    room, check_in, check_out, room_data.guest_count, selected
                )
                self.db.add(booking)
                members.append(booking)

            group_total = self._persist_group_total(group).group_grand_total

        self.db.refresh(group)
        logger.info(
            f"Booking group {group.id} created with {len(members)} rooms, total {group_total}"
        )
        return group

    def _new_member(self, group: BookingGroup, room: Room, guest_count: int) -> Booking:
        """以团体共享信息创建成员预订"""
        return Booking(
            room=room,
            group=group,
            guest_count=guest_count,
            guest_name=group.guest_name,
            guest_email=group.guest_email,
            guest_phone=group.guest_phone,
            source=group.source,
            check_in=group.check_in,
            check_out=group.check_out,
            arrival_time=group.arrival_time,
            status=group.status,
            payment_status=PaymentStatus.PENDING,
        )

    # ==================== 成员变更 ====================

    def add_room(self, group_id: int, room_id: int, guest_count: int = 1,
                 selected: Optional[Sequence[FeeSelection]] = None) -> TotalsResult:
        """
        向团体添加房间（roomAdded）

        Returns:
            新成员的房间总价与团体新总价
        """
        with self._mutating(group_id, room_ids=[room_id]) as group:
            self._require_active(group)
            room = self.price_service.get_bookable_room(room_id)
            if any(b.room_id == room.id for b in group.bookings):
                raise ValidationError(f"房间 {room.name} 已在该团体中")
            self.price_service.check_guest_count(room, guest_count)
            self.availability.ensure_available(room, group.check_in, group.check_out)

            booking = self._new_member(group, room, guest_count)
            booking.additional_prices = self.price_service.resolve_fee_snapshot(
                room, group.check_in, group.check_out, guest_count, selected
            )
            self.db.add(booking)
            totals = self._persist_totals(booking, group)

        logger.info(
            f"Room {room_id} added to group {group_id}: room total {totals.room_total}, "
            f"group total {totals.group_total}"
        )
        return totals

    def update_room(self, group_id: int, booking_id: int,
                    room_id: Optional[int] = None,
                    guest_count: Optional[int] = None,
                    selected: Optional[Sequence[FeeSelection]] = None,
                    fee_lines: Optional[Sequence[FeeLineIn]] = None) -> TotalsResult:
        """
        修改团体内的房间（roomChanged / guestCountChanged / feeSelectionsChanged）

        Args:
            group_id: 团体 ID
            booking_id: 成员预订 ID
            room_id: 新房间；与当前相同则忽略
            guest_count: 新人数；人数变化时按新人数重算附加费用数量
            selected: 新的可选附加费用选择；None 表示沿用当前选择
            fee_lines: 直接给定的快照行，与 selected 二选一

        Returns:
            房间总价与团体总价
        """
        if selected is not None and fee_lines is not None:
            raise ValidationError("附加费用选择与附加费用行不能同时提供")

        with self._mutating(group_id, room_ids=[room_id]) as group:
            self._require_active(group)
            booking = self._find_member(group, booking_id)

            if room_id is not None and room_id != booking.room_id:
                room = self.price_service.get_bookable_room(room_id)
                if any(b.room_id == room.id and b.id != booking.id for b in group.bookings):
                    raise ValidationError(f"房间 {room.name} 已在该团体中")
                self.availability.ensure_available(
                    room, group.check_in, group.check_out, exclude_booking_id=booking.id
                )
                logger.info(f"Booking {booking.id} moved from room {booking.room_id} to {room.id}")
                booking.room = room

            new_count = guest_count if guest_count is not None else booking.guest_count
            self.price_service.check_guest_count(booking.room, new_count)

            if fee_lines is not None:
                lines = [
                    BookingAdditionalPrice(title=f.title, price_eur=f.price_eur, quantity=f.quantity)
                    for f in fee_lines
                ]
            elif selected is not None or new_count != booking.guest_count:
                if selected is None:
                    selected = self.price_service.current_selection(booking)
                lines = self.price_service.resolve_fee_snapshot(
                    booking.room, group.check_in, group.check_out, new_count, selected
                )
            else:
                lines = None

            booking.guest_count = new_count
            if lines is not None:
                self._replace_fee_lines(booking, lines)

            totals = self._persist_totals(booking, group)

        logger.info(
            f"Booking {booking_id} in group {group_id} updated: room total {totals.room_total}, "
            f"group total {totals.group_total}"
        )
        return totals

    def remove_room(self, group_id: int, booking_id: int) -> dict:
        """
        从团体移除房间（roomRemoved）

        剩余成员不少于最小房间数：删除预订并重算团体总价；
        剩余 1 个：解散团体，剩余预订转为单独预订并接收团体的支付与跟踪字段；
        剩余 0 个：不变量被破坏
        """
        with self._mutating(group_id) as group:
            booking = self._find_member(group, booking_id)
            remaining = [b for b in group.bookings if b.id != booking.id]

            if not remaining:
                logger.error(
                    f"Booking group {group_id} would be left without members "
                    f"after removing booking {booking_id}"
                )
                raise InvariantViolation(f"团体预订 {group_id} 成员数将降为 0")

            if len(remaining) < settings.GROUP_MIN_ROOMS:
                survivor = remaining[0]
                self._dissolve(group, booking, survivor)
                result = {
                    'dissolved': True,
                    'standalone_booking_id': survivor.id,
                    'room_total': survivor.total_amount,
                    'group_total': None,
                }
            else:
                self._move_payments(booking, to_group=group)
                self.db.delete(booking)
                group_total = self._persist_group_total(group).group_grand_total
                result = {
                    'dissolved': False,
                    'standalone_booking_id': None,
                    'room_total': None,
                    'group_total': group_total,
                }

        logger.info(f"Booking {booking_id} removed from group {group_id}: {result}")
        return result

    def _dissolve(self, group: BookingGroup, removed: Booking, survivor: Booking) -> None:
        """解散团体：剩余预订保留自身总价，继承团体支付和跟踪字段"""
        for payment in list(group.payments):
            payment.group = None
            payment.booking = survivor

        for field_name in GROUP_TRACKING_FIELDS:
            setattr(survivor, field_name, getattr(group, field_name))
        survivor.payment_status = group.payment_status
        if not survivor.notes:
            survivor.notes = group.notes
        survivor.group = None

        self._move_payments(removed, to_booking=survivor)
        self.db.delete(removed)
        self.db.flush()
        self.db.expire(group, ["bookings", "payments"])
        self.db.delete(group)
        self.db.flush()
        logger.info(f"Booking group {group.id} dissolved, booking {survivor.id} is now standalone")

    def _move_payments(self, booking: Booking, to_group: Optional[BookingGroup] = None,
                       to_booking: Optional[Booking] = None) -> None:
        """被删除预订上的支付转移到团体或剩余预订"""
        for payment in list(booking.payments):
            if to_booking is not None:
                payment.booking = to_booking
            else:
                payment.booking = None
                payment.group = to_group
        self.db.flush()

    # ==================== 团体变更 ====================

    def update_group(self, group_id: int, data: BookingGroupUpdate) -> BookingGroup:
        """
        修改团体共享信息（客人信息、入住区间、状态与跟踪字段）

        入住区间变化时：逐个成员重新做占用检查（排除成员自身），新区间写到全部成员，
        各成员按新晚数重建附加费用快照（沿用当前可选费用），随后重算全部总价。
        客人信息与状态同步到每个成员。
        """
        update_data = data.model_dump(exclude_unset=True)
        if 'guest_name' in update_data and not update_data['guest_name']:
            raise ValidationError("客人姓名不能为空")

        with self._mutating(group_id, lock_members=True) as group:
            self._require_active(group)
            check_in, check_out = validate_stay(
                update_data.pop('check_in', group.check_in),
                update_data.pop('check_out', group.check_out)
            )
            dates_changed = (check_in, check_out) != (group.check_in, group.check_out)
            if dates_changed:
                for member in group.bookings:
                    self.availability.ensure_available(
                        member.room, check_in, check_out, exclude_booking_id=member.id
                    )

            for key, value in update_data.items():
                setattr(group, key, value)
            group.check_in, group.check_out = check_in, check_out

            for member in group.bookings:
                for field_name in MEMBER_SHARED_FIELDS:
                    if field_name in update_data:
                        setattr(member, field_name, update_data[field_name])
                if dates_changed:
                    selected = self.price_service.current_selection(member)
                    member.check_in, member.check_out = check_in, check_out
                    self._replace_fee_lines(member, self.price_service.resolve_fee_snapshot(
                        member.room, check_in, check_out, member.guest_count, selected
                    ))

            group_total = self._persist_group_total(group).group_grand_total

        self.db.refresh(group)
        logger.info(
            f"Booking group {group_id} updated ({', '.join(sorted(data.model_fields_set))}), "
            f"total {group_total}"
        )
        return group

    def cancel_group(self, group_id: int) -> BookingGroup:
        """取消团体：团体与全部成员置为已取消并释放房间，快照与总价保留"""
        with self._mutating(group_id) as group:
            if group.status == BookingStatus.CANCELLED:
                raise ValidationError("团体预订已取消")
            if any(b.status in (BookingStatus.CHECKED_IN, BookingStatus.CHECKED_OUT)
                   for b in group.bookings):
                raise ValidationError("团体中已有入住或离店的预订，不可取消")
            group.status = BookingStatus.CANCELLED
            for member in group.bookings:
                member.status = BookingStatus.CANCELLED

        self.db.refresh(group)
        logger.info(f"Booking group {group_id} cancelled, {len(group.bookings)} rooms released")
        return group

    # ==================== 重算 ====================

    def recalculate_and_persist_room_total(self, booking_id: int, group_id: int) -> TotalsResult:
        """
        重算并保存团体内某个房间的总价和团体总价

        附加费用取快照，房费按当前规则实时计算
        """
        with self._mutating(group_id) as group:
            booking = self._find_member(group, booking_id)
            totals = self._persist_totals(booking, group)
        return totals

    def recalculate_group(self, group_id: int) -> GroupPricingResult:
        """重算团体全部成员的房间总价与团体总价"""
        with self._mutating(group_id) as group:
            pricing = self._persist_group_total(group)
        logger.info(f"Booking group {group_id} recalculated, total {pricing.group_grand_total}")
        return pricing


def booking_detail(booking: Booking) -> dict:
    """预订详情（含快照行）"""
    return {
        'id': booking.id,
        'room_id': booking.room_id,
        'room_name': booking.room.name if booking.room else None,
        'group_id': booking.group_id,
        'guest_name': booking.guest_name,
        'guest_count': booking.guest_count,
        'check_in': booking.check_in,
        'check_out': booking.check_out,
        'status': booking.status,
        'payment_status': booking.payment_status,
        'total_amount': booking.total_amount,
        'additional_prices': [
            {'title': line.title, 'price_eur': line.price_eur, 'quantity': line.quantity}
            for line in booking.additional_prices
        ],
    }
