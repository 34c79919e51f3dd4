"""
Ride Management Routes
Handles quotes, ride requests, the driver-side lifecycle, ratings and history
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, model_validator

from ridehail.models.location_model import LocationUpdate, PlaceInput
from ridehail.models.ride_model import Place
from ridehail.models.user_model import User
from ridehail.routes.deps import get_services
from ridehail.services import RideServices
from ridehail.utils.helpers import get_ride_status_message
from ridehail.utils.jwt_utils import actor_of, get_current_user, require_driver, require_passenger

router = APIRouter()
logger = logging.getLogger(__name__)


# Pydantic models for request validation
class QuoteRequest(BaseModel):
    origin: LocationUpdate
    destination: LocationUpdate
    category_id: str = Field(..., min_length=1)


class RideRequest(BaseModel):
    origin: PlaceInput
    destination: PlaceInput
    category_id: str = Field(..., min_length=1)
    payment_method: str = Field(default="cash", max_length=30)
    notes: Optional[str] = Field(default=None, max_length=500)


class RejectRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=200)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class CompleteRequest(BaseModel):
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)

    @model_validator(mode="after")
    def both_or_neither(self):
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("latitude and longitude must be given together")
        return self

    @property
    def final_location(self):
        if self.latitude is None:
            return None
        return (self.latitude, self.longitude)


class RatingRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=500)


def _to_place(data: PlaceInput) -> Place:
    return Place(
        place=data.place or data.address,
        address=data.address,
        latitude=data.latitude,
        longitude=data.longitude,
    )


def _ride_response(ride, message: str, where: Optional[str] = None) -> dict:
    response = {
        "success": True,
        "message": message,
        "ride": ride.to_dict(),
        "status_message": get_ride_status_message(ride.status, ride.driver_arrived),
    }
    if where is not None:
        response["location"] = where
    return response


# -----------------------------------------------------------------------------
# Catalog & quotes
# -----------------------------------------------------------------------------


@router.get("/categories")
async def list_categories(services: RideServices = Depends(get_services)):
    categories = await services.dispatch.list_categories()
    return {"success": True, "categories": [c.to_dict() for c in categories]}


@router.post("/quote")
async def quote_ride(
    data: QuoteRequest,
    current_user: User = Depends(get_current_user),
    services: RideServices = Depends(get_services),
):
    """Price estimate for a trip in a category"""
    quote = await services.dispatch.quote(
        data.origin.coordinates, data.destination.coordinates, data.category_id
    )
    return {"success": True, "quote": quote.model_dump()}


# -----------------------------------------------------------------------------
# Passenger
# -----------------------------------------------------------------------------


@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_ride_request(
    data: RideRequest,
    current_user: User = Depends(require_passenger),
    services: RideServices = Depends(get_services),
):
    """
    Create a new ride request
    Nearby eligible drivers are notified; otherwise a driver search runs in the background
    """
    ride = await services.dispatch.request_ride(
        current_user,
        _to_place(data.origin),
        _to_place(data.destination),
        data.category_id,
        payment_method=data.payment_method,
        notes=data.notes,
    )
    response = _ride_response(ride, "Ride requested")
    response["searching"] = services.dispatch.is_searching(ride.ride_id)
    return response


@router.post("/{ride_id}/cancel")
async def cancel_ride(
    ride_id: str,
    data: Optional[CancelRequest] = None,
    current_user: User = Depends(get_current_user),
    services: RideServices = Depends(get_services),
):
    """Passenger, assigned driver or admin cancels a pending/accepted ride"""
    ride = await services.dispatch.cancel(
        ride_id, actor_of(current_user), reason=data.reason if data else None
    )
    return _ride_response(ride, "Ride cancelled", "cancelled")


@router.post("/{ride_id}/rate")
async def rate_ride(
    ride_id: str,
    data: RatingRequest,
    current_user: User = Depends(get_current_user),
    services: RideServices = Depends(get_services),
):
    """Each party rates the other once, after completion"""
    user_id = str(current_user.id)
    if current_user.role == "driver":
        ride = await services.state_machine.rate_by_driver(
            ride_id, user_id, data.rating, data.comment
        )
    elif current_user.role == "passenger":
        ride = await services.state_machine.rate_by_passenger(
            ride_id, user_id, data.rating, data.comment
        )
    else:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only ride participants can rate",
        )
    return _ride_response(ride, "Thanks for your rating", "completed")


@router.get("/history")
async def ride_history(
    status_filter: Optional[str] = Query(
        None, alias="status", pattern="^(completed|cancelled)$"
    ),
    current_user: User = Depends(get_current_user),
    services: RideServices = Depends(get_services),
):
    """Completed and cancelled rides of the current user, newest first"""
    rides = await services.store.history_for(
        str(current_user.id), current_user.role, status=status_filter
    )
    return {"success": True, "count": len(rides), "rides": [r.to_dict() for r in rides]}


# -----------------------------------------------------------------------------
# Driver
# -----------------------------------------------------------------------------


@router.get("/available")
async def available_rides(
    current_user: User = Depends(require_driver),
    services: RideServices = Depends(get_services),
):
    """Pending rides this driver can still accept"""
    rides = await services.dispatch.available_rides(str(current_user.id))
    return {"success": True, "count": len(rides), "rides": [r.to_dict() for r in rides]}


@router.post("/{ride_id}/accept")
async def accept_ride(
    ride_id: str,
    current_user: User = Depends(require_driver),
    services: RideServices = Depends(get_services),
):
    """First driver to accept wins; everyone else gets 409 no_longer_available"""
    ride = await services.dispatch.accept(ride_id, str(current_user.id))
    return _ride_response(ride, "Ride accepted successfully")


@router.post("/{ride_id}/reject")
async def reject_ride(
    ride_id: str,
    data: Optional[RejectRequest] = None,
    current_user: User = Depends(require_driver),
    services: RideServices = Depends(get_services),
):
    ride = await services.dispatch.reject(
        ride_id, str(current_user.id), reason=data.reason if data else None
    )
    return {
        "success": True,
        "message": "Ride rejected",
        "policy": services.settings.reject_policy,
        "ride_id": ride.ride_id,
    }


@router.post("/{ride_id}/arrived")
async def mark_arrived(
    ride_id: str,
    current_user: User = Depends(require_driver),
    services: RideServices = Depends(get_services),
):
    ride = await services.state_machine.mark_arrived(ride_id, str(current_user.id))
    return _ride_response(ride, "Passenger notified of your arrival")


@router.post("/{ride_id}/start")
async def start_ride(
    ride_id: str,
    current_user: User = Depends(require_driver),
    services: RideServices = Depends(get_services),
):
    ride = await services.state_machine.start(ride_id, str(current_user.id))
    return _ride_response(ride, "Ride started successfully")


@router.post("/{ride_id}/complete")
async def complete_ride(
    ride_id: str,
    data: Optional[CompleteRequest] = None,
    current_user: User = Depends(require_driver),
    services: RideServices = Depends(get_services),
):
    ride = await services.state_machine.complete(
        ride_id, str(current_user.id), final_location=data.final_location if data else None
    )
    return _ride_response(ride, "Ride completed successfully", "completed")


# -----------------------------------------------------------------------------
# Details
# -----------------------------------------------------------------------------


@router.get("/{ride_id}")
async def get_ride(
    ride_id: str,
    current_user: User = Depends(get_current_user),
    services: RideServices = Depends(get_services),
):
    """Live ride, or its historical record once completed/cancelled"""
    ride, where = await services.state_machine.get_ride(ride_id, actor_of(current_user))
    return _ride_response(ride, "Ride found", where)
