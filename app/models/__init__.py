# Ontology Models
from app.models.ontology import (
    Building, RoomType, Room, DateRangePrice, CalendarOverride,
    BuildingAdditionalPrice, RoomTypeAdditionalPrice,
    BookingGroup, Booking, BookingAdditionalPrice, Payment
)

__all__ = [
    'Building', 'RoomType', 'Room', 'DateRangePrice', 'CalendarOverride',
    'BuildingAdditionalPrice', 'RoomTypeAdditionalPrice',
    'BookingGroup', 'Booking', 'BookingAdditionalPrice', 'Payment'
]
