from pydantic import BaseModel, Field


class LocationUpdate(BaseModel):
    """Model for location updates"""

    latitude: float = Field(..., ge=-90, le=90, description="Latitude coordinate")
    longitude: float = Field(..., ge=-180, le=180, description="Longitude coordinate")

    @property
    def coordinates(self):
        return (self.latitude, self.longitude)


class PlaceInput(LocationUpdate):
    """A named place picked by the passenger"""

    address: str = Field(..., min_length=3, max_length=300)
    place: str = Field(default="", max_length=200)
