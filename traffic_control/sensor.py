"""
sensor.py - Simulated intersection camera.

Produces the metrics an edge node would compute locally from its camera feed.
"""

import logging
import random

from . import config
from .message import CameraMetrics, CongestionLevel

logger = logging.getLogger(__name__)


def congestion_score(vehicle_count, wait_time):
    # 0.6 * count + 0.4 * wait, in tenths so integer readings on a band edge stay exact.
    return (6 * vehicle_count + 4 * wait_time) / 10


def classify_congestion(vehicle_count, wait_time) -> CongestionLevel:
    """Classify traffic density; boundary scores belong to the higher band."""
    score = congestion_score(vehicle_count, wait_time)
    if score < 20:
        return CongestionLevel.LOW
    if score < 40:
        return CongestionLevel.MEDIUM
    if score < 60:
        return CongestionLevel.HIGH
    return CongestionLevel.CRITICAL


def build_metrics(vehicle_count, average_wait_time, queue_length, timestamp) -> CameraMetrics:
    """Metrics with the congestion level derived from the readings."""
    return CameraMetrics(
        vehicle_count=vehicle_count,
        average_wait_time=average_wait_time,
        congestion_level=classify_congestion(vehicle_count, average_wait_time),
        queue_length=queue_length,
        timestamp=timestamp,
    )


class TrafficSensor:
    def __init__(self, base_traffic=config.BASE_TRAFFIC, variability=config.TRAFFIC_VARIABILITY,
                 rng=None):
        """
        Args:
            base_traffic (float): Typical number of vehicles per capture.
            variability (float): Relative spread of the vehicle count (0.3 = +/-30%).
            rng (random.Random): Random source (optional).
        """
        if base_traffic < 0:
            raise ValueError(f"base_traffic must be non-negative, got {base_traffic}")
        self.base_traffic = base_traffic
        self.variability = variability
        self.rush_hour_multiplier = 1.0
        self._rng = rng or random.Random()

    def capture(self, timestamp) -> CameraMetrics:
        factor = 1 + (self._rng.random() - 0.5) * self.variability * 2
        vehicle_count = max(0, round(self.base_traffic * self.rush_hour_multiplier * factor))
        average_wait_time = round(vehicle_count * 2.5 + self._rng.random() * 10)
        queue_length = min(vehicle_count, round(vehicle_count * 0.7))
        return build_metrics(vehicle_count, average_wait_time, queue_length, timestamp)

    def set_rush_hour(self, enabled, multiplier=config.RUSH_HOUR_MULTIPLIER):
        self.rush_hour_multiplier = multiplier if enabled else 1.0
        logger.debug(f"Sensor rush hour multiplier set to {self.rush_hour_multiplier}")

    def set_base_traffic(self, level):
        if level < 0:
            raise ValueError(f"base traffic level must be non-negative, got {level}")
        self.base_traffic = level
