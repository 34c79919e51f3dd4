"""
Driver Routes
Vehicle profile, online/offline toggle, location reports and the
passengers' nearby-drivers view
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ridehail.errors import RideError
from ridehail.models.driver_model import Driver, Vehicle
from ridehail.models.location_model import LocationUpdate
from ridehail.models.user_model import User
from ridehail.routes.deps import get_services
from ridehail.services import RideServices
from ridehail.utils.jwt_utils import get_current_user, require_driver

router = APIRouter()
logger = logging.getLogger(__name__)


class VehicleUpdate(BaseModel):
    model: str = Field(..., min_length=1, max_length=50)
    plate: str = Field(..., min_length=1, max_length=20)
    color: str = Field(..., min_length=1, max_length=30)


def _driver_or_404(user: User) -> Driver:
    driver = Driver.objects(pk=str(user.id)).first()
    if driver is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Driver profile not found"
        )
    return driver


@router.get("/me")
async def get_driver_profile(current_user: User = Depends(require_driver)):
    driver = _driver_or_404(current_user)
    return {
        "success": True,
        "driver": driver.to_dict(),
        "missing_vehicle_fields": (driver.vehicle or Vehicle()).missing_fields(),
    }


@router.put("/me/vehicle")
async def update_vehicle(data: VehicleUpdate, current_user: User = Depends(require_driver)):
    """Vehicle details are required before accepting rides; plate stored upper case"""
    try:
        driver = _driver_or_404(current_user)
        driver.vehicle = Vehicle(
            model=data.model.strip(),
            plate=data.plate.strip().upper(),
            color=data.color.strip(),
        )
        driver.save()

        logger.info(f"Driver {driver.user_id} updated vehicle {driver.vehicle.plate}")
        return {"success": True, "message": "Vehicle updated", "driver": driver.to_dict()}

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Update vehicle error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to update vehicle: {str(e)}",
        )


@router.post("/me/online")
async def go_online(
    location: LocationUpdate,
    current_user: User = Depends(require_driver),
    services: RideServices = Depends(get_services),
):
    """Become available for dispatch at the given location"""
    driver = await services.presence.go_online(str(current_user.id), location.coordinates)
    response = {"success": True, "message": "You are online", "driver": driver.to_dict()}
    if driver.status != "approved":
        response["message"] = "You are online, but your account is awaiting approval"
    return response


@router.post("/me/offline")
async def go_offline(
    current_user: User = Depends(require_driver),
    services: RideServices = Depends(get_services),
):
    changed = await services.presence.go_offline(str(current_user.id))
    return {"success": True, "message": "You are offline", "changed": changed}


@router.put("/me/location")
async def update_location(
    location: LocationUpdate,
    current_user: User = Depends(require_driver),
    services: RideServices = Depends(get_services),
):
    """
    Store the latest location sample
    `stored` is False when throttled or offline
    """
    stored = await services.presence.report_location(
        str(current_user.id), location.coordinates
    )
    return {
        "success": True,
        "stored": stored,
        "data": {"latitude": location.latitude, "longitude": location.longitude},
    }


@router.get("/nearby")
async def get_nearby_drivers(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    radius_km: float = Query(5.0, ge=0.1, le=50),
    limit: int = Query(10, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    services: RideServices = Depends(get_services),
):
    """Online approved drivers with a recent location, closest first"""
    try:
        drivers = await services.presence.nearby_drivers(
            (latitude, longitude), radius_km=radius_km, limit=limit
        )
        return {"success": True, "count": len(drivers), "drivers": drivers}

    except RideError:
        raise
    except Exception as e:
        logger.error(f"Nearby drivers error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to find nearby drivers: {str(e)}",
        )
