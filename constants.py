from enum import Enum


class Role(str, Enum):
    CUSTOMER = "customer"
    PROVIDER = "provider"
    ADMIN = "admin"


class BookingStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    UPI = "upi"
    WALLET = "wallet"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    FAILED = "failed"


# Service titles a provider may list; also served to the frontend forms
PREDEFINED_SERVICES = [
    "cleaning",
    "plumbing",
    "Electrician",
    "gardening",
    "Painting",
    "Carpentry",
    "Pest Control",
    "Appliance Repair",
]

DEFAULT_AVATAR = "/uploads/default-avatar.png"
EARTH_RADIUS_MILES = 3963.2
MAX_BOOKING_IMAGES = 5
MAX_PORTFOLIO_IMAGES = 5
