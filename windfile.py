"""
WindForecast class for loading and sampling gridded wind forecasts.

A forecast is a stack of time slices, each holding wind speed (m/s) and the
direction the wind blows from (degrees from north) at a fixed set of pressure
levels. Missing values are stored as NaN and skipped during interpolation.
Sampling picks the time slice in effect at the requested instant (no
interpolation across time) and blends the two pressure levels that bracket
the balloon altitude.
"""
import hashlib
import json
import logging
import math
from datetime import datetime, timezone
from io import BytesIO
from pathlib import Path
from typing import Union

import numpy as np

from atmosphere import alt_to_hpa

logger = logging.getLogger(__name__)

PRESSURE_LEVELS = (
    1000, 975, 950, 925, 900, 850, 800, 750, 700, 650, 600, 550, 500, 450, 400,
    350, 300, 250, 200, 150, 100, 70, 50, 30, 20, 10, 7, 5, 3, 2, 1,
)

KMH_TO_MS = 1.0 / 3.6


def to_timestamp(value):
    """Epoch seconds from a datetime (naive = UTC), ISO string or number."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, str):
        return to_timestamp(datetime.fromisoformat(value.replace('Z', '+00:00')))
    return float(value)


def wrap_angle(angle):
    """Wrap an angle difference into [-180, 180]."""
    angle = angle % 360.0
    if angle > 180.0:
        angle -= 360.0
    return angle


class WindForecast:
    def __init__(self, timestamps, levels, data):
        """
        Args:
            timestamps: Forecast instants (epoch seconds, datetimes or ISO strings),
                non-decreasing.
            levels: Pressure levels in hPa, one per column of `data`.
            data: Array of shape (len(timestamps), len(levels), 2) holding
                (speed m/s, direction deg). NaN marks an absent value.
        """
        self.timestamps = np.array([to_timestamp(t) for t in timestamps], dtype=np.float64)
        self.levels = np.array(levels, dtype=np.float64)
        self.data = np.array(data, dtype=np.float64)

        if self.timestamps.size == 0:
            raise ValueError("WindForecast needs at least one forecast instant")
        if np.any(np.diff(self.timestamps) < 0):
            raise ValueError("WindForecast instants must be non-decreasing in time")
        if self.data.shape != (self.timestamps.size, self.levels.size, 2):
            raise ValueError(
                f"Invalid wind data shape: expected {(self.timestamps.size, self.levels.size, 2)}, "
                f"got {self.data.shape}")

        # A level is usable only when both speed and direction are present
        self._valid = ~np.isnan(self.data).any(axis=2)
        self._warned_empty = False

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------
    @classmethod
    def constant(cls, speed, direction, start=0.0, hours=48, levels=PRESSURE_LEVELS):
        """Uniform wind field (same speed/direction at every level and instant)."""
        start = to_timestamp(start)
        timestamps = [start + 3600.0 * h for h in range(hours + 1)]
        data = np.empty((len(timestamps), len(levels), 2))
        data[..., 0] = speed
        data[..., 1] = direction
        return cls(timestamps, levels, data)

    @classmethod
    def from_hourly(cls, hourly, levels=PRESSURE_LEVELS, speed_unit="ms"):
        """
        Build a forecast from an Open-Meteo style hourly mapping.

        Expects `time` plus `windspeed_{p}hPa` / `winddirection_{p}hPa` lists.
        Levels missing from the mapping and None entries become NaN.
        """
        if "hourly" in hourly:
            hourly = hourly["hourly"]
        times = hourly.get("time")
        if not times:
            raise ValueError("Hourly forecast has no 'time' entries")

        scale = KMH_TO_MS if speed_unit == "kmh" else 1.0
        data = np.full((len(times), len(levels), 2), np.nan)
        for j, p in enumerate(levels):
            speeds = hourly.get(f"windspeed_{p}hPa")
            directions = hourly.get(f"winddirection_{p}hPa")
            if speeds is None or directions is None:
                continue
            for i in range(min(len(times), len(speeds), len(directions))):
                if speeds[i] is not None:
                    data[i, j, 0] = float(speeds[i]) * scale
                if directions[i] is not None:
                    data[i, j, 1] = float(directions[i])
        return cls(times, levels, data)

    @classmethod
    def load(cls, path: Union[BytesIO, str, Path]):
        """Load a forecast from an .npz archive or an hourly .json mapping."""
        if isinstance(path, (str, Path)):
            path = Path(path)
            if path.suffix == '.json':
                with open(path) as f:
                    return cls.from_hourly(json.load(f))
        npz = np.load(path)
        try:
            for key in ('timestamps', 'levels', 'data'):
                if key not in npz:
                    raise ValueError(f"Forecast archive {path} is missing '{key}' key")
            return cls(npz['timestamps'], npz['levels'], npz['data'])
        finally:
            npz.close()

    def save(self, path):
        np.savez(path, timestamps=self.timestamps, levels=self.levels, data=self.data)

    def fingerprint(self):
        """Short content hash used for prediction cache keys."""
        h = hashlib.md5()
        for array in (self.timestamps, self.levels, self.data):
            h.update(np.ascontiguousarray(array).tobytes())
        return h.hexdigest()[:16]

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------
    def time_index(self, timestamp):
        """Index of the latest instant not after `timestamp`, clamped to the forecast."""
        i = int(np.searchsorted(self.timestamps, timestamp, side='right')) - 1
        return min(max(i, 0), self.timestamps.size - 1)

    def _nearest_populated(self, index):
        """Closest instant (in time) holding data at any level, or None."""
        populated = np.flatnonzero(self._valid.any(axis=1))
        if populated.size == 0:
            return None
        distance = np.abs(self.timestamps[populated] - self.timestamps[index])
        return int(populated[np.argmin(distance)])

    def get(self, altitude, elapsed, launch_time):
        """
        Wind (speed m/s, direction deg) at `altitude` metres, `elapsed` seconds after launch.

        Levels bracketing the altitude's pressure are blended linearly in pressure;
        direction follows the shortest arc. With only one bracket available its
        value is returned unchanged (no extrapolation).
        """
        timestamp = to_timestamp(launch_time) + elapsed
        index = self.time_index(timestamp)
        if not self._valid[index].any():
            nearest = self._nearest_populated(index)
            if nearest is None:
                if not self._warned_empty:
                    logger.warning("Wind forecast holds no usable level; assuming calm air")
                    self._warned_empty = True
                return 0.0, 0.0
            index = nearest

        pressure = alt_to_hpa(altitude)
        valid = self._valid[index]
        levels = self.levels

        # lower = closest level at or below the balloon (higher pressure)
        # upper = closest level at or above the balloon (lower pressure)
        below = np.flatnonzero(valid & (levels >= pressure))
        above = np.flatnonzero(valid & (levels <= pressure))
        lower = below[np.argmin(levels[below])] if below.size else None
        upper = above[np.argmax(levels[above])] if above.size else None

        if upper is None:
            return self._value(index, lower)
        if lower is None or lower == upper:
            return self._value(index, upper)

        p_lower, p_upper = levels[lower], levels[upper]
        weight = (pressure - p_upper) / (p_lower - p_upper)
        speed_upper, dir_upper = self.data[index, upper]
        speed_lower, dir_lower = self.data[index, lower]

        speed = speed_upper * (1 - weight) + speed_lower * weight
        direction = (dir_upper + wrap_angle(dir_lower - dir_upper) * weight) % 360.0
        return float(speed), float(direction)

    def _value(self, index, level):
        speed, direction = self.data[index, level]
        return float(speed), float(direction) % 360.0

    def uv(self, altitude, elapsed, launch_time):
        """Eastward/northward air velocity (m/s); the air moves towards direction + 180."""
        speed, direction = self.get(altitude, elapsed, launch_time)
        bearing = math.radians(direction)
        return -speed * math.sin(bearing), -speed * math.cos(bearing)

    def __repr__(self):
        return (f"WindForecast(instants={self.timestamps.size}, levels={self.levels.size}, "
                f"start={self.timestamps[0]:.0f})")
