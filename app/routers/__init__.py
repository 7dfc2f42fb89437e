# API Routers
from app.routers import prices, booking_groups, bookings

__all__ = ['prices', 'booking_groups', 'bookings']
