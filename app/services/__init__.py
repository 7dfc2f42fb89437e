# Business Services
from app.services.price_service import PriceService
from app.services.availability_service import AvailabilityService
from app.services.booking_group_service import BookingGroupService
from app.services.booking_service import BookingService

__all__ = [
    'PriceService', 'AvailabilityService', 'BookingGroupService', 'BookingService'
]
