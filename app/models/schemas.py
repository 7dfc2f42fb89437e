"""
Pydantic 模式定义
用于 API 请求验证；字段同时接受 snake_case 与 camelCase
"""
from datetime import date
from decimal import Decimal
from typing import Optional, List
from pydantic import BaseModel, Field, ConfigDict, model_validator
from pydantic.alias_generators import to_camel
from app.models.ontology import (
    BookingSource, BookingStatus, PaymentStatus, FeeSourceType
)
from app.models.pricing import FeeSelection, RoomQuoteRequest


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============== 附加费用 Schemas ==============

class FeeSelectionIn(CamelModel):
    """可选附加费用选择"""
    source_id: int
    source_type: FeeSourceType

    def to_selection(self) -> FeeSelection:
        return FeeSelection(source_id=self.source_id, source_type=self.source_type)


class FeeLineIn(CamelModel):
    """直接给定的附加费用行"""
    title: str = Field(..., max_length=200)
    price_eur: Decimal = Field(..., ge=0)
    quantity: int = Field(default=1, ge=1)


def to_selections(items: Optional[List[FeeSelectionIn]]) -> List[FeeSelection]:
    return [item.to_selection() for item in items or []]


# ============== 计价 Schemas ==============

class RoomPricingRequest(CamelModel):
    room_id: int
    check_in: date
    check_out: date
    guest_count: int = Field(default=1, ge=1)
    selected_additional_prices: List[FeeSelectionIn] = Field(default_factory=list)


# ============== 团体预订 Schemas ==============

class GroupRoomIn(CamelModel):
    room_id: int
    guest_count: int = Field(default=1, ge=1)
    selected_additional_prices: List[FeeSelectionIn] = Field(default_factory=list)


class GroupQuoteRequest(CamelModel):
    """创建团体前的报价请求"""
    check_in: date
    check_out: date
    rooms: List[GroupRoomIn]

    def to_quote_requests(self) -> List[RoomQuoteRequest]:
        return [
            RoomQuoteRequest(
                room_id=r.room_id,
                guest_count=r.guest_count,
                selected=tuple(to_selections(r.selected_additional_prices)),
            )
            for r in self.rooms
        ]


class BookingGroupCreate(CamelModel):
    guest_name: str = Field(..., max_length=100)
    guest_email: Optional[str] = Field(None, max_length=100)
    guest_phone: Optional[str] = Field(None, max_length=30)
    source: BookingSource = BookingSource.MANUAL
    check_in: date
    check_out: date
    arrival_time: Optional[str] = Field(None, max_length=10)
    notes: Optional[str] = None
    status: BookingStatus = BookingStatus.INCOMING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    has_custom_huf_price: bool = False
    custom_huf_price: Optional[Decimal] = Field(None, ge=0)
    invoice_sent: bool = False
    guest_registered: bool = False
    cleaned: bool = False
    rooms: List[GroupRoomIn]


class BookingGroupUpdate(CamelModel):
    """团体共享信息修改；只处理请求中出现的字段"""
    guest_name: Optional[str] = Field(None, max_length=100)
    guest_email: Optional[str] = Field(None, max_length=100)
    guest_phone: Optional[str] = Field(None, max_length=30)
    source: Optional[BookingSource] = None
    check_in: Optional[date] = None
    check_out: Optional[date] = None
    arrival_time: Optional[str] = Field(None, max_length=10)
    notes: Optional[str] = None
    status: Optional[BookingStatus] = None
    payment_status: Optional[PaymentStatus] = None
    has_custom_huf_price: Optional[bool] = None
    custom_huf_price: Optional[Decimal] = Field(None, ge=0)
    invoice_sent: Optional[bool] = None
    guest_registered: Optional[bool] = None
    cleaned: Optional[bool] = None


class GroupRoomUpdate(CamelModel):
    """
    团体内单个房间的修改
    selected_additional_prices 与 additional_prices 二选一，均会整体替换快照
    """
    booking_id: int
    room_id: Optional[int] = None
    guest_count: Optional[int] = Field(None, ge=1)
    selected_additional_prices: Optional[List[FeeSelectionIn]] = None
    additional_prices: Optional[List[FeeLineIn]] = None

    @model_validator(mode="after")
    def _one_fee_source(self):
        if self.selected_additional_prices is not None and self.additional_prices is not None:
            raise ValueError("selectedAdditionalPrices 与 additionalPrices 不能同时提供")
        return self


# ============== 单独预订 Schemas ==============

class BookingCreate(CamelModel):
    room_id: int
    guest_name: str = Field(..., max_length=100)
    guest_email: Optional[str] = Field(None, max_length=100)
    guest_phone: Optional[str] = Field(None, max_length=30)
    guest_count: int = Field(default=1, ge=1)
    source: BookingSource = BookingSource.MANUAL
    check_in: date
    check_out: date
    arrival_time: Optional[str] = Field(None, max_length=10)
    notes: Optional[str] = None
    status: BookingStatus = BookingStatus.INCOMING
    selected_additional_prices: List[FeeSelectionIn] = Field(default_factory=list)


class BookingUpdate(CamelModel):
    room_id: Optional[int] = None
    check_in: Optional[date] = None
    check_out: Optional[date] = None
    guest_count: Optional[int] = Field(None, ge=1)
    selected_additional_prices: Optional[List[FeeSelectionIn]] = None
    additional_prices: Optional[List[FeeLineIn]] = None

    @model_validator(mode="after")
    def _one_fee_source(self):
        if self.selected_additional_prices is not None and self.additional_prices is not None:
            raise ValueError("selectedAdditionalPrices 与 additionalPrices 不能同时提供")
        return self
