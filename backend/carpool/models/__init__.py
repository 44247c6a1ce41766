from carpool.models.user import User, DriverStatus
from carpool.models.vehicle import Vehicle, VehicleStatus
from carpool.models.ride import Ride, PickupPoint, RideStatus
from carpool.models.booking import Booking, BookingStatus, CancellationSource
from carpool.models.rating import Rating, RatingType
from carpool.models.change_record import ChangeRecord

__all__ = [
    "User", "DriverStatus",
    "Vehicle", "VehicleStatus",
    "Ride", "PickupPoint", "RideStatus",
    "Booking", "BookingStatus", "CancellationSource",
    "Rating", "RatingType",
    "ChangeRecord",
]
