"""
计价与预订一致性异常

ValidationError / ConflictError 继承 ValueError，沿用路由层 `except ValueError` 的处理方式；
InvariantViolation 表示调用方绕过了团体维护流程，属于内部错误
"""
from datetime import date
from typing import Optional


class ValidationError(ValueError):
    """输入校验失败（日期顺序、停用房间、人数超限、重复房间、房间不存在等）"""


class NotFoundError(ValidationError):
    """引用的房间/预订/团体不存在"""


class ConflictError(ValueError):
    """房间在目标日期内已被占用"""

    def __init__(self, message: str, room_id: int, room_name: str,
                 check_in: date, check_out: date,
                 conflicting_booking_id: Optional[int] = None):
        self.room_id = room_id
        self.room_name = room_name
        self.check_in = check_in
        self.check_out = check_out
        self.conflicting_booking_id = conflicting_booking_id
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": str(self),
            "roomId": self.room_id,
            "roomName": self.room_name,
            "checkIn": self.check_in.isoformat(),
            "checkOut": self.check_out.isoformat(),
            "conflictingBookingId": self.conflicting_booking_id,
        }


class InvariantViolation(RuntimeError):
    """领域不变量被破坏（如团体成员数将降为 0）"""

    PUBLIC_MESSAGE = "internal error, please contact support"
