"""
Authentication Routes
Handles user registration, login, profile and notification history
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, EmailStr, Field

from ridehail.models.driver_model import Driver, Vehicle
from ridehail.models.notification_model import Notification
from ridehail.models.user_model import User
from ridehail.utils.jwt_utils import create_access_token, get_current_user

router = APIRouter()
logger = logging.getLogger(__name__)


# Pydantic models for request validation
class RegisterRequest(BaseModel):
    full_name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    phone: str = Field(..., min_length=8, max_length=20)
    password: str = Field(..., min_length=6)
    role: str = Field(default="passenger", pattern="^(passenger|driver)$")

    # Driver-specific fields (optional, required before accepting rides)
    driver_license: Optional[str] = Field(default=None, max_length=50)
    vehicle_model: Optional[str] = Field(default=None, max_length=50)
    vehicle_plate: Optional[str] = Field(default=None, max_length=20)
    vehicle_color: Optional[str] = Field(default=None, max_length=30)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class LoginResponse(BaseModel):
    success: bool
    message: str
    token: str
    user: dict


def _token_for(user: User) -> str:
    return create_access_token({"user_id": str(user.id), "role": user.role})


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(data: RegisterRequest):
    """
    Register a new passenger or driver
    Drivers start in `pending` status until an admin approves them
    """
    try:
        if User.objects(email=data.email).first():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Email already registered",
            )

        if User.objects(phone=data.phone).first():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Phone number already registered",
            )

        user = User(
            full_name=data.full_name, email=data.email, phone=data.phone, role=data.role
        )
        user.set_password(data.password)
        user.save()

        response = {
            "success": True,
            "message": "Registration successful",
            "token": _token_for(user),
            "user": user.to_dict(),
        }

        if data.role == "driver":
            driver = Driver(
                user_id=str(user.id),
                name=user.full_name,
                phone=user.phone,
                driver_license=data.driver_license,
                vehicle=Vehicle(
                    model=data.vehicle_model,
                    plate=data.vehicle_plate,
                    color=data.vehicle_color,
                ),
            )
            driver.save()
            response["driver"] = driver.to_dict()
            response["missing_vehicle_fields"] = driver.vehicle.missing_fields()

        logger.info(f"New user registered: {user.email} ({user.role})")
        return response

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Registration error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Registration failed: {str(e)}",
        )


@router.post("/login", response_model=LoginResponse)
async def login(data: LoginRequest):
    """
    Login user with email and password
    Returns JWT token on success
    """
    try:
        user = User.objects(email=data.email).first()

        if not user or not user.verify_password(data.password):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid email or password",
            )

        if not user.is_active:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN, detail="Account is deactivated"
            )

        logger.info(f"User logged in: {user.email}")

        return {
            "success": True,
            "message": "Login successful",
            "token": _token_for(user),
            "user": user.to_dict(),
        }

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Login error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Login failed: {str(e)}",
        )


@router.get("/me")
async def get_current_user_profile(current_user: User = Depends(get_current_user)):
    """
    Get current authenticated user's profile
    Drivers also get their driver record
    """
    response = {"success": True, "user": current_user.to_dict()}
    if current_user.role == "driver":
        driver = Driver.objects(pk=str(current_user.id)).first()
        response["driver"] = driver.to_dict() if driver else None
    return response


@router.get("/me/notifications")
async def get_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
):
    """Notification history, newest first"""
    query = {"user_id": str(current_user.id)}
    if unread_only:
        query["read"] = False

    notifications = Notification.objects(**query).order_by("-created_at").limit(limit)
    return {
        "success": True,
        "count": notifications.count(with_limit_and_skip=True),
        "notifications": [n.to_dict() for n in notifications],
    }


@router.post("/me/notifications/read")
async def mark_notifications_read(current_user: User = Depends(get_current_user)):
    updated = Notification.objects(user_id=str(current_user.id), read=False).update(
        set__read=True
    )
    return {"success": True, "updated": updated}
