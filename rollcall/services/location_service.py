"""GPS verification service."""
import math
from typing import Dict, Optional

EARTH_RADIUS_METERS = 6371000

class LocationService:
    """Service for checking a reported position against a meeting's location."""

    @staticmethod
    def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
        """Calculate distance between two GPS points in meters."""
        lat1_rad = math.radians(lat1)
        lat2_rad = math.radians(lat2)
        delta_lat = math.radians(lat2 - lat1)
        delta_lon = math.radians(lon2 - lon1)

        a = (math.sin(delta_lat/2) ** 2 +
             math.cos(lat1_rad) * math.cos(lat2_rad) *
             math.sin(delta_lon/2) ** 2)
        c = 2 * math.atan2(math.sqrt(a), math.sqrt(1-a))

        return EARTH_RADIUS_METERS * c

    @staticmethod
    def verify_location(location: Optional[Dict], meeting) -> Dict:
        """Check whether ``location`` ({lat, lng, accuracy?}) is inside the meeting radius.

        Reported GPS accuracy is credited against the distance, so a fix whose
        error circle overlaps the allowed radius is accepted. The credit never
        exceeds the radius itself.
        """
        if meeting.latitude is None or meeting.longitude is None:
            return {'is_inside': False, 'distance': None, 'reason': 'Meeting has no reference location'}

        if not location or location.get('lat') is None or location.get('lng') is None:
            return {'is_inside': False, 'distance': None, 'reason': 'Location is required for this session'}

        distance = LocationService.calculate_distance(
            location['lat'], location['lng'],
            meeting.latitude, meeting.longitude
        )
        accuracy = min(location.get('accuracy') or 0, meeting.allowed_location_radius)

        is_inside = distance - accuracy <= meeting.allowed_location_radius

        return {
            'is_inside': is_inside,
            'distance': round(distance, 2),
            'allowed_radius': meeting.allowed_location_radius,
            'reason': None if is_inside else 'You are outside the allowed area for this session'
        }
