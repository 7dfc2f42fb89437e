"""
预订服务 - 单独预订（不属于团体）的创建、修改与取消

团体成员只能通过 BookingGroupService 变更，这里一律拒绝，
避免绕过团体总价与成员数的维护流程
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from app.database import transaction
from app.models.ontology import Booking, BookingAdditionalPrice, BookingStatus
from app.models.schemas import BookingCreate, BookingUpdate
from app.services.availability_service import AvailabilityService
from app.services.booking_group_service import unset_if_zero
from app.services.exceptions import NotFoundError, ValidationError
from app.services.locks import room_locks
from app.services.price_service import (
    PriceService, fee_lines_total, sum_nightly_prices, validate_stay
)

logger = logging.getLogger(__name__)


class BookingService:
    """预订服务"""

    def __init__(self, db: Session):
        self.db = db
        self.price_service = PriceService(db)
        self.availability = AvailabilityService(db)

    def get_booking(self, booking_id: int) -> Optional[Booking]:
        """获取单个预订"""
        return self.db.query(Booking).filter(Booking.id == booking_id).first()

    def _require_standalone(self, booking_id: int, action: str) -> Booking:
        booking = self.get_booking(booking_id)
        if not booking:
            raise NotFoundError(f"预订 {booking_id} 不存在")
        if booking.group_id is not None:
            raise ValidationError(
                f"预订 {booking_id} 属于团体 {booking.group_id}，请通过团体预订{action}"
            )
        return booking

    def _persist_total(self, booking: Booking) -> None:
        self.db.flush()
        nightly = self.price_service.calculate_accommodation(
            booking.room, booking.check_in, booking.check_out
        )
        booking.total_amount = unset_if_zero(
            sum_nightly_prices(nightly) + fee_lines_total(booking.additional_prices)
        )

    def create_booking(self, data: BookingCreate) -> Booking:
        """创建单独预订；占用检查与写入对同一房间串行执行"""
        check_in, check_out = validate_stay(data.check_in, data.check_out)
        room = self.price_service.get_bookable_room(data.room_id)
        self.price_service.check_guest_count(room, data.guest_count)

        with room_locks.hold(room.id), transaction(self.db):
            self.availability.lock_rooms([room.id])
            self.availability.ensure_available(room, check_in, check_out)
            booking = Booking(
                room=room,
                guest_name=data.guest_name,
                guest_email=data.guest_email,
                guest_phone=data.guest_phone,
                guest_count=data.guest_count,
                source=data.source,
                check_in=check_in,
                check_out=check_out,
                arrival_time=data.arrival_time,
                notes=data.notes,
                status=data.status,
            )
            self.db.add(booking)
            booking.additional_prices = self.price_service.resolve_fee_snapshot(
                room, check_in, check_out, data.guest_count,
                [s.to_selection() for s in data.selected_additional_prices]
            )
            self._persist_total(booking)

        self.db.refresh(booking)
        logger.info(f"Booking {booking.id} created for room {room.id}, total {booking.total_amount}")
        return booking

    def update_booking(self, booking_id: int, data: BookingUpdate) -> Booking:
        """
        修改单独预订

        换房或改日期时重新做占用检查（排除自身）；人数、日期或可选费用变化时
        整体重建附加费用快照；最后按当前规则重算总价
        """
        target_room_id = data.room_id
        if target_room_id is None:
            existing = self.get_booking(booking_id)
            target_room_id = existing.room_id if existing else None

        with room_locks.hold(target_room_id), transaction(self.db):
            self.availability.lock_rooms([target_room_id])
            booking = self._require_standalone(booking_id, "修改")
            if booking.status == BookingStatus.CANCELLED:
                raise ValidationError("已取消的预订不可修改")

            room = booking.room
            if data.room_id is not None and data.room_id != booking.room_id:
                room = self.price_service.get_bookable_room(data.room_id)

            check_in, check_out = validate_stay(
                data.check_in or booking.check_in, data.check_out or booking.check_out
            )
            guest_count = data.guest_count if data.guest_count is not None else booking.guest_count
            self.price_service.check_guest_count(room, guest_count)

            moved = room.id != booking.room_id
            dates_changed = (check_in, check_out) != (booking.check_in, booking.check_out)
            if moved or dates_changed:
                self.availability.ensure_available(
                    room, check_in, check_out, exclude_booking_id=booking.id
                )
            requantify = dates_changed or guest_count != booking.guest_count

            booking.room = room
            booking.check_in = check_in
            booking.check_out = check_out
            booking.guest_count = guest_count

            if data.additional_prices is not None:
                lines = [
                    BookingAdditionalPrice(title=f.title, price_eur=f.price_eur, quantity=f.quantity)
                    for f in data.additional_prices
                ]
            elif data.selected_additional_prices is not None or requantify:
                if data.selected_additional_prices is not None:
                    selected = [s.to_selection() for s in data.selected_additional_prices]
                else:
                    # 按新房间的定义匹配
                    selected = self.price_service.current_selection(booking)
                lines = self.price_service.resolve_fee_snapshot(
                    room, check_in, check_out, guest_count, selected
                )
            else:
                lines = None

            if lines is not None:
                booking.additional_prices.clear()
                self.db.flush()
                booking.additional_prices.extend(lines)

            self._persist_total(booking)

        self.db.refresh(booking)
        logger.info(f"Booking {booking.id} updated, total {booking.total_amount}")
        return booking

    def cancel_booking(self, booking_id: int) -> Booking:
        """取消单独预订；已取消的预订不再占用房间"""
        with transaction(self.db):
            booking = self._require_standalone(booking_id, "取消")
            if booking.status == BookingStatus.CANCELLED:
                raise ValidationError("预订已取消")
            if booking.status in (BookingStatus.CHECKED_IN, BookingStatus.CHECKED_OUT):
                raise ValidationError(f"状态为 {booking.status.value} 的预订不可取消")
            booking.status = BookingStatus.CANCELLED

        self.db.refresh(booking)
        logger.info(f"Booking {booking.id} cancelled")
        return booking
