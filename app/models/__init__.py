from app.models.department import Department
from app.models.user import User, UserRead
from app.models.travel_request import TravelRequest
from app.models.notification import Notification, NotificationPriority

__all__ = [
    "Department",
    "User", "UserRead",
    "TravelRequest",
    "Notification", "NotificationPriority",
]
