"""
Admin Routes
Driver approval, ride reconciliation and platform statistics
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ridehail.errors import RideError
from ridehail.models.driver_model import DRIVER_STATUSES, Driver
from ridehail.models.ride_model import CompletedRide
from ridehail.models.user_model import User
from ridehail.routes.deps import get_services
from ridehail.services import RideServices
from ridehail.utils.helpers import utcnow
from ridehail.utils.jwt_utils import actor_of, require_admin

router = APIRouter()
logger = logging.getLogger(__name__)


class ReconcileRequest(BaseModel):
    outcome: str = Field(..., pattern="^(completed|cancelled)$")
    note: Optional[str] = Field(default=None, max_length=500)


@router.get("/drivers")
async def get_all_drivers(
    status_filter: Optional[str] = Query(None, alias="status", description="Filter by status"),
    online_only: bool = Query(False, description="Show only online drivers"),
    current_user: User = Depends(require_admin),
):
    """
    Get all drivers with status/online filters
    Admin only
    """
    query = {}
    if status_filter:
        if status_filter not in DRIVER_STATUSES:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unknown driver status: {status_filter}",
            )
        query["status"] = status_filter
    if online_only:
        query["is_online"] = True

    drivers = Driver.objects(**query).order_by("-created_at")
    return {
        "success": True,
        "count": drivers.count(),
        "drivers": [driver.to_dict() for driver in drivers],
    }


async def _set_driver_status(driver_id: str, new_status: str, admin: User) -> dict:
    updated = Driver.objects(pk=driver_id).update_one(set__status=new_status)
    if not updated:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Driver not found"
        )
    logger.info(f"Driver {driver_id} {new_status} by admin {admin.email}")
    return {
        "success": True,
        "message": f"Driver {new_status}",
        "driver": Driver.objects(pk=driver_id).first().to_dict(),
    }


@router.post("/drivers/{driver_id}/approve")
async def approve_driver(driver_id: str, current_user: User = Depends(require_admin)):
    return await _set_driver_status(driver_id, "approved", current_user)


@router.post("/drivers/{driver_id}/reject")
async def reject_driver(driver_id: str, current_user: User = Depends(require_admin)):
    """Rejected drivers never become matching-eligible"""
    return await _set_driver_status(driver_id, "rejected", current_user)


@router.post("/rides/{ride_id}/reconcile")
async def reconcile_ride(
    ride_id: str,
    data: ReconcileRequest,
    current_user: User = Depends(require_admin),
    services: RideServices = Depends(get_services),
):
    """Close an in-progress ride out of band"""
    ride = await services.state_machine.reconcile(
        ride_id, actor_of(current_user), data.outcome, data.note
    )
    return {
        "success": True,
        "message": f"Ride reconciled as {data.outcome}",
        "ride": ride.to_dict(),
    }


@router.get("/stats")
async def get_platform_stats(
    current_user: User = Depends(require_admin),
    services: RideServices = Depends(get_services),
):
    """
    Get aggregated platform statistics
    Admin only
    """
    try:
        rides = await services.store.counts()
        eligible = await services.presence.eligible_drivers()

        today_start = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        completed_today = CompletedRide.objects(completed_at__gte=today_start).count()
        total_revenue = CompletedRide.objects.sum("price")

        return {
            "success": True,
            "stats": {
                "users": {
                    "total": User.objects.count(),
                    "passengers": User.objects(role="passenger").count(),
                    "drivers": Driver.objects.count(),
                    "pending_approval": Driver.objects(status="pending").count(),
                    "online_drivers": Driver.objects(is_online=True).count(),
                    "eligible_drivers": len(eligible),
                },
                "rides": dict(rides, completed_today=completed_today),
                "revenue": {
                    "total": round(total_revenue or 0, 2),
                    "average_fare": (
                        round(total_revenue / rides["completed"], 2)
                        if rides["completed"]
                        else 0
                    ),
                },
            },
        }

    except RideError:
        raise
    except Exception as e:
        logger.error(f"Stats error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to compute stats: {str(e)}",
        )
