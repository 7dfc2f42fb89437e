"""
房间可用性检查 - 防止同一房间日期重叠的重复预订

两段入住重叠当且仅当 existing.check_in < new_check_out 且 existing.check_out > new_check_in；
同一天一走一来（背靠背）不算重叠。已取消的预订不参与检查。
"""
import logging
from datetime import date
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from app.models.ontology import Booking, BookingStatus, Room
from app.services.exceptions import ConflictError

logger = logging.getLogger(__name__)


class AvailabilityService:
    """可用性服务"""

    def __init__(self, db: Session):
        self.db = db

    def lock_rooms(self, room_ids: Iterable[Optional[int]]) -> List[Room]:
        """
        在当前事务内按 ID 升序锁定房间行（SELECT ... FOR UPDATE）

        与进程内的 room_locks 配合：占用检查和随后的写入对同一房间串行执行，
        多进程部署时由数据库行锁保证
        """
        ids = sorted({i for i in room_ids if i is not None})
        if not ids:
            return []
        return self.db.query(Room).filter(
            Room.id.in_(ids)
        ).order_by(Room.id).with_for_update().all()

    def find_overlap(self, room_id: int, check_in: date, check_out: date,
                     exclude_booking_id: Optional[int] = None) -> Optional[Booking]:
        """查找与给定区间重叠的第一条未取消预订"""
        query = self.db.query(Booking).filter(
            Booking.room_id == room_id,
            Booking.status != BookingStatus.CANCELLED,
            Booking.check_in < check_out,
            Booking.check_out > check_in
        )
        if exclude_booking_id is not None:
            query = query.filter(Booking.id != exclude_booking_id)
        return query.order_by(Booking.check_in, Booking.id).first()

    def has_overlap(self, room_id: int, check_in: date, check_out: date,
                    exclude_booking_id: Optional[int] = None) -> bool:
        return self.find_overlap(room_id, check_in, check_out, exclude_booking_id) is not None

    def ensure_available(self, room: Room, check_in: date, check_out: date,
                         exclude_booking_id: Optional[int] = None) -> None:
        """
        房间已被占用时抛出 ConflictError

        Args:
            room: 目标房间
            check_in: 入住日期
            check_out: 离店日期
            exclude_booking_id: 移动中的预订自身，不参与检查
        """
        conflict = self.find_overlap(room.id, check_in, check_out, exclude_booking_id)
        if conflict is None:
            return
        logger.info(
            f"Room {room.name} unavailable {check_in}..{check_out}: "
            f"overlaps booking {conflict.id} ({conflict.check_in}..{conflict.check_out})"
        )
        raise ConflictError(
            f"房间 {room.name} 在 {check_in.isoformat()} 至 {check_out.isoformat()} 期间已被预订",
            room_id=room.id,
            room_name=room.name,
            check_in=conflict.check_in,
            check_out=conflict.check_out,
            conflicting_booking_id=conflict.id,
        )
