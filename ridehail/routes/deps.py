"""
Shared route dependencies
"""

from fastapi import Request

from ridehail.services import RideServices


def get_services(request: Request) -> RideServices:
    """Service graph wired by create_app()"""
    return request.app.state.services
