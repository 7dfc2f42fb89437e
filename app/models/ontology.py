"""
本体对象定义 (Ontology Objects)
建筑 / 房型 / 房间 / 价格规则 / 附加费用 / 预订 / 团体预订 / 支付
价格规则与附加费用定义由外部 CRUD 层维护，计价核心只读；
预订上的附加费用行 (BookingAdditionalPrice) 是写入时的快照，不随定义变化
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, Integer, String, DateTime, Date,
    ForeignKey, Text, Enum as SQLEnum, Boolean, Numeric
)
from sqlalchemy.orm import relationship
from app.database import Base


# ============== 枚举定义 ==============

class BookingStatus(str, Enum):
    """预订状态枚举"""
    INCOMING = "incoming"        # 新预订
    CONFIRMED = "confirmed"      # 已确认
    CHECKED_IN = "checked_in"    # 已入住
    CHECKED_OUT = "checked_out"  # 已离店
    CANCELLED = "cancelled"      # 已取消


class PaymentStatus(str, Enum):
    """付款状态枚举"""
    PENDING = "pending"              # 待付款
    DEPOSIT_PAID = "deposit_paid"    # 已付定金
    FULLY_PAID = "fully_paid"        # 已付清
    REFUNDED = "refunded"            # 已退款


class BookingSource(str, Enum):
    """预订来源"""
    MANUAL = "manual"
    WEBSITE = "website"
    BOOKING_COM = "booking_com"
    SZALLAS_HU = "szallas_hu"
    AIRBNB = "airbnb"


class PaymentMethod(str, Enum):
    """支付方式"""
    CASH = "cash"                # 现金
    TRANSFER = "transfer"        # 转账
    CREDIT_CARD = "credit_card"  # 信用卡


class PaymentCurrency(str, Enum):
    """支付币种"""
    EUR = "EUR"
    HUF = "HUF"


class FeeSourceType(str, Enum):
    """附加费用定义的来源"""
    BUILDING = "building"
    ROOM_TYPE = "roomType"


# ============== 本体对象定义 ==============

class Building(Base):
    """
    建筑对象
    拥有建筑级附加费用定义
    """
    __tablename__ = "buildings"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)           # 建筑名称
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # 链接
    room_types = relationship("RoomType", back_populates="building")
    additional_prices = relationship(
        "BuildingAdditionalPrice", back_populates="building",
        order_by="[BuildingAdditionalPrice.order, BuildingAdditionalPrice.id]"
    )


class RoomType(Base):
    """
    房型对象
    拥有日期区间价格、单日覆盖价格和房型级附加费用定义
    """
    __tablename__ = "room_types"

    id = Column(Integer, primary_key=True, index=True)
    building_id = Column(Integer, ForeignKey("buildings.id"), nullable=False)
    name = Column(String(100), nullable=False)           # 房型名称
    capacity = Column(Integer, nullable=False, default=2)  # 最大入住人数
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # 链接
    building = relationship("Building", back_populates="room_types")
    rooms = relationship("Room", back_populates="room_type")
    date_range_prices = relationship(
        "DateRangePrice", back_populates="room_type", order_by="DateRangePrice.id"
    )
    calendar_overrides = relationship(
        "CalendarOverride", back_populates="room_type", order_by="CalendarOverride.id"
    )
    additional_prices = relationship(
        "RoomTypeAdditionalPrice", back_populates="room_type",
        order_by="[RoomTypeAdditionalPrice.order, RoomTypeAdditionalPrice.id]"
    )


class Room(Base):
    """
    房间对象
    停用的房间不可预订
    """
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True, index=True)
    room_type_id = Column(Integer, ForeignKey("room_types.id"), nullable=False)
    name = Column(String(50), nullable=False)            # 房间名称/房号
    is_active = Column(Boolean, default=True)            # 是否启用
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # 链接
    room_type = relationship("RoomType", back_populates="rooms")
    bookings = relationship("Booking", back_populates="room")


class DateRangePrice(Base):
    """
    日期区间价格规则
    [start_date, end_date] 两端均包含；区分平日价与周末价（周五、周六晚）
    """
    __tablename__ = "date_range_prices"

    id = Column(Integer, primary_key=True, index=True)
    room_type_id = Column(Integer, ForeignKey("room_types.id"), nullable=False)
    start_date = Column(Date, nullable=False)            # 开始日期
    end_date = Column(Date, nullable=False)              # 结束日期
    weekday_price = Column(Numeric(10, 2), nullable=False)  # 平日价
    weekend_price = Column(Numeric(10, 2), nullable=False)  # 周末价
    min_nights = Column(Integer, default=1)              # 最少入住晚数
    is_inactive = Column(Boolean, default=False)         # 整个区间不可预订
    created_at = Column(DateTime, default=datetime.utcnow)

    # 链接
    room_type = relationship("RoomType", back_populates="date_range_prices")


class CalendarOverride(Base):
    """
    单日覆盖规则
    price 非空时优先于日期区间价格
    """
    __tablename__ = "calendar_overrides"

    id = Column(Integer, primary_key=True, index=True)
    room_type_id = Column(Integer, ForeignKey("room_types.id"), nullable=False)
    date = Column(Date, nullable=False, index=True)      # 日期
    price = Column(Numeric(10, 2), nullable=True)        # 覆盖价格
    min_nights = Column(Integer, nullable=True)          # 覆盖最少入住晚数
    is_inactive = Column(Boolean, default=False)         # 当日不可预订
    created_at = Column(DateTime, default=datetime.utcnow)

    # 链接
    room_type = relationship("RoomType", back_populates="calendar_overrides")


class BuildingAdditionalPrice(Base):
    """建筑级附加费用定义"""
    __tablename__ = "building_additional_prices"

    id = Column(Integer, primary_key=True, index=True)
    building_id = Column(Integer, ForeignKey("buildings.id"), nullable=False)
    title = Column(String(200), nullable=False)          # 名称
    price_eur = Column(Numeric(10, 2), nullable=False)   # 单价
    mandatory = Column(Boolean, default=False)           # 必选
    per_night = Column(Boolean, default=False)           # 按晚计
    per_guest = Column(Boolean, default=False)           # 按人计
    order = Column(Integer, default=0)                   # 排序

    # 链接
    building = relationship("Building", back_populates="additional_prices")


class RoomTypeAdditionalPrice(Base):
    """房型级附加费用定义"""
    __tablename__ = "room_type_additional_prices"

    id = Column(Integer, primary_key=True, index=True)
    room_type_id = Column(Integer, ForeignKey("room_types.id"), nullable=False)
    title = Column(String(200), nullable=False)
    price_eur = Column(Numeric(10, 2), nullable=False)
    mandatory = Column(Boolean, default=False)
    per_night = Column(Boolean, default=False)
    per_guest = Column(Boolean, default=False)
    order = Column(Integer, default=0)

    # 链接
    room_type = relationship("RoomType", back_populates="additional_prices")


class BookingGroup(Base):
    """
    团体预订 - 聚合根
    共享客人信息与入住区间；total_amount = 各成员房间总价之和（为 0 时存 NULL）
    至少 2 个成员预订，不足时解散
    """
    __tablename__ = "booking_groups"

    id = Column(Integer, primary_key=True, index=True)
    guest_name = Column(String(100), nullable=False)     # 客人姓名
    guest_email = Column(String(100))
    guest_phone = Column(String(30))
    source = Column(SQLEnum(BookingSource), default=BookingSource.MANUAL)
    check_in = Column(Date, nullable=False)              # 入住日期
    check_out = Column(Date, nullable=False)             # 离店日期
    arrival_time = Column(String(10))                    # 预计到店时间
    notes = Column(Text)
    status = Column(SQLEnum(BookingStatus), default=BookingStatus.INCOMING)
    payment_status = Column(SQLEnum(PaymentStatus), default=PaymentStatus.PENDING)
    total_amount = Column(Numeric(10, 2), nullable=True)  # 团体总价
    has_custom_huf_price = Column(Boolean, default=False)  # 自定义福林价格
    custom_huf_price = Column(Numeric(12, 2), nullable=True)
    invoice_sent = Column(Boolean, default=False)        # 已开发票
    guest_registered = Column(Boolean, default=False)    # 已在客人登记系统登记
    cleaned = Column(Boolean, default=False)             # 已清洁
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # 链接
    bookings = relationship("Booking", back_populates="group", order_by="Booking.id")
    payments = relationship("Payment", back_populates="group")


class Booking(Base):
    """
    预订对象 - 单个房间的一次入住
    total_amount 为派生值，每次房间/人数/附加费用变化后重算（为 0 时存 NULL）
    """
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)
    room_id = Column(Integer, ForeignKey("rooms.id"), nullable=False)
    group_id = Column(Integer, ForeignKey("booking_groups.id"), nullable=True)
    guest_name = Column(String(100), nullable=False)
    guest_email = Column(String(100))
    guest_phone = Column(String(30))
    guest_count = Column(Integer, nullable=False, default=1)  # 入住人数
    source = Column(SQLEnum(BookingSource), default=BookingSource.MANUAL)
    check_in = Column(Date, nullable=False)
    check_out = Column(Date, nullable=False)
    arrival_time = Column(String(10))
    notes = Column(Text)
    status = Column(SQLEnum(BookingStatus), default=BookingStatus.INCOMING)
    payment_status = Column(SQLEnum(PaymentStatus), default=PaymentStatus.PENDING)
    total_amount = Column(Numeric(10, 2), nullable=True)  # 房间总价
    has_custom_huf_price = Column(Boolean, default=False)
    custom_huf_price = Column(Numeric(12, 2), nullable=True)
    invoice_sent = Column(Boolean, default=False)
    guest_registered = Column(Boolean, default=False)
    cleaned = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # 链接
    room = relationship("Room", back_populates="bookings")
    group = relationship("BookingGroup", back_populates="bookings")
    additional_prices = relationship(
        "BookingAdditionalPrice", back_populates="booking",
        cascade="all, delete-orphan", order_by="BookingAdditionalPrice.id"
    )
    payments = relationship("Payment", back_populates="booking")


class BookingAdditionalPrice(Base):
    """
    预订附加费用行 - 快照
    写入时从定义复制 title/单价/数量，之后与定义解耦
    """
    __tablename__ = "booking_additional_prices"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False)
    title = Column(String(200), nullable=False)
    price_eur = Column(Numeric(10, 2), nullable=False)   # 单价
    quantity = Column(Integer, nullable=False, default=1)  # 数量

    # 链接
    booking = relationship("Booking", back_populates="additional_prices")


class Payment(Base):
    """
    支付记录
    属于单个预订或团体预订（二选一）；团体解散时转移到剩余预订
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=True)
    group_id = Column(Integer, ForeignKey("booking_groups.id"), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)      # 支付金额
    currency = Column(SQLEnum(PaymentCurrency), default=PaymentCurrency.EUR)
    method = Column(SQLEnum(PaymentMethod), nullable=False)
    date = Column(Date, nullable=False)                  # 支付日期
    note = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)

    # 链接
    booking = relationship("Booking", back_populates="payments")
    group = relationship("BookingGroup", back_populates="payments")
