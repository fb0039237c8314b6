# autocheckin/services/location_engine.py
import math
import random
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Dict, Optional, Tuple

from autocheckin.constants import AppConstants
from autocheckin.logger_setup import LoggerInterface, LogLevel
from autocheckin.config.models import Location

# 坐标按 6 位小数输出，量化误差最多约 0.08 米
_QUANTIZATION_SLACK_METERS = 0.1


class LocationEngine:
    """Generates jittered sign-in coordinates around a task's stored location."""

    def __init__(self, logger: LoggerInterface, rng: Optional[random.Random] = None):
        self.logger = logger
        self._rng = rng or random.SystemRandom()
        self._quantum = Decimal(1).scaleb(-AppConstants.COORDINATE_DECIMAL_PLACES)

    def jitter(self, location: Location) -> Dict[str, str]:
        """
        在 accuracy_radius 范围内随机偏移坐标，每次调用独立抽样。

        坐标不合法时抛出 ConfigError。
        """
        lat, lng, radius = location.to_decimals()
        max_offset = max(float(radius) - _QUANTIZATION_SLACK_METERS, 0.0)
        new_lat, new_lng = self._add_random_offset(float(lat), float(lng), max_offset)
        coords = {
            "lat": self._format(new_lat),
            "lng": self._format(new_lng),
            "acc": location.accuracy_radius,
        }
        offset = distance_meters(float(lat), float(lng), float(coords["lat"]), float(coords["lng"]))
        self.logger.log(f"应用随机偏移 {offset:.1f}m (上限 {max_offset:.1f}m)，最终坐标: ({coords['lat']}, {coords['lng']})", LogLevel.DEBUG)
        return coords

    def _format(self, value: float) -> str:
        return str(Decimal(repr(value)).quantize(self._quantum, rounding=ROUND_HALF_EVEN))

    def _add_random_offset(self, lat_deg: float, lng_deg: float, max_offset_meters: float) -> Tuple[float, float]:
        """Applies a random offset to coordinates using a simplified spherical model."""
        if max_offset_meters <= 0:
            return lat_deg, lng_deg

        # sqrt 使点在圆盘内按面积均匀分布
        offset_meters = max_offset_meters * math.sqrt(self._rng.random())
        bearing_rad = self._rng.uniform(0, 2 * math.pi)

        lat_rad = math.radians(lat_deg)
        lng_rad = math.radians(lng_deg)
        angular_distance = offset_meters / AppConstants.EARTH_RADIUS_METERS

        new_lat_rad = math.asin(math.sin(lat_rad) * math.cos(angular_distance) +
                                math.cos(lat_rad) * math.sin(angular_distance) * math.cos(bearing_rad))
        new_lng_rad = lng_rad + math.atan2(math.sin(bearing_rad) * math.sin(angular_distance) * math.cos(lat_rad),
                                           math.cos(angular_distance) - math.sin(lat_rad) * math.sin(new_lat_rad))

        new_lat_deg = math.degrees(new_lat_rad)
        new_lng_deg = (math.degrees(new_lng_rad) + 540.0) % 360.0 - 180.0
        return new_lat_deg, new_lng_deg


def distance_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Haversine distance between two points."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = phi2 - phi1
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * AppConstants.EARTH_RADIUS_METERS * math.asin(math.sqrt(a))
