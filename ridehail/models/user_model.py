"""
User Model - Represents passengers, drivers and admins
Includes authentication fields and role-based access
"""

from mongoengine import (
    Document,
    StringField,
    EmailField,
    BooleanField,
    DateTimeField,
    FloatField,
    IntField,
)
from passlib.context import CryptContext

from ridehail.utils.helpers import isoformat, utcnow

# Password hashing context
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ROLES = ("passenger", "driver", "admin")


class User(Document):
    """
    User model for passengers, drivers and admins
    Role determines access level: 'passenger', 'driver', 'admin'
    """

    meta = {
        "collection": "users",
        "indexes": ["email", "phone", "role"],
        "strict": False,
    }

    # Basic Information
    full_name = StringField(required=True, max_length=100)
    email = EmailField(required=True, unique=True)
    phone = StringField(max_length=20)
    password_hash = StringField(required=True)

    # Role and Status
    role = StringField(required=True, choices=ROLES, default="passenger")
    is_active = BooleanField(default=True)

    # Rating given by drivers (passenger side of the symmetric rating)
    rating = FloatField(default=5.0)
    total_ratings = IntField(default=0)

    # Timestamps
    created_at = DateTimeField(default=utcnow)
    updated_at = DateTimeField(default=utcnow)

    def set_password(self, password: str):
        """Hash and set user password"""
        self.password_hash = pwd_context.hash(password)

    def verify_password(self, password: str) -> bool:
        """Verify password against hash"""
        return pwd_context.verify(password, self.password_hash)

    @property
    def display_name(self) -> str:
        return self.full_name or self.email.split("@")[0]

    def to_dict(self):
        """Convert user to dictionary (exclude sensitive data)"""
        return {
            "id": str(self.id),
            "full_name": self.full_name,
            "email": self.email,
            "phone": self.phone,
            "role": self.role,
            "is_active": self.is_active,
            "rating": round(self.rating, 2) if self.rating is not None else None,
            "total_ratings": self.total_ratings,
            "created_at": isoformat(self.created_at),
        }

    def __str__(self):
        return f"User({self.full_name}, {self.role})"
