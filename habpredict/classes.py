"""
Core balloon prediction classes.

Provides Location (geographic coordinates with haversine distance),
FlightPoint (one integration step), Trajectory (path container),
LaunchParameters / PredictionResult (simulation input and output),
Balloon (state tracking) and Simulator (fixed-step ascent/burst/descent
integrator). Used by simulate.py for trajectory calculations.
"""
import math
from bisect import bisect_left
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

import numpy as np

from windfile import to_timestamp

__all__ = [
    "EARTH_RADIUS", "DEFAULT_STEP_SIZE", "DEFAULT_MAX_STEPS", "haversine", "bearing", "fold_pole",
    "Location", "FlightPoint", "Trajectory", "LaunchParameters", "PredictionResult",
    "Balloon", "Simulator",
]

# Earth radius in meters (used for coordinate transformations)
EARTH_RADIUS = float(6.371e6)

# Default integration step in seconds
DEFAULT_STEP_SIZE = 10.0
DEFAULT_MAX_STEPS = 100000

# Altitude residual (m) below which a step is taken to have reached its target
ALTITUDE_TOLERANCE = 1e-6


def haversine(lat1, lon1, lat2, lon2):
    """
    Great circle distance in metres between two points.

    Formula: a = sin²(Δlat/2) + cos(lat1) × cos(lat2) × sin²(Δlon/2)
             c = 2 × atan2(√a, √(1-a))
             distance = R × c
    """
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = math.sin(dlat/2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon/2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS * c


def bearing(lat1, lon1, lat2, lon2):
    """Initial great circle bearing from point 1 to point 2, degrees in [0, 360)."""
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])
    dlon = lon2 - lon1
    y = math.sin(dlon) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(dlon)
    return (math.degrees(math.atan2(y, x)) + 360) % 360


def fold_pole(lat, lon):
    """
    Normalise a position that may have crossed a pole or the antimeridian.

    Crossing a pole continues down the opposite meridian (lon + 180).
    Returns (lat in [-90, 90], lon in [-180, 180)).
    """
    if lat > 90.0:
        lat, lon = 180.0 - lat, lon + 180.0
    elif lat < -90.0:
        lat, lon = -180.0 - lat, lon + 180.0
    return lat, ((lon + 180.0) % 360.0) - 180.0


class Location(tuple):
    """
    Geographic location as immutable tuple (lat, lon).

    Provides distance calculation using haversine formula for great circle
    distance (accounts for Earth's curvature, accurate for long distances).
    """
    def __new__(cls, lat, lon):
        return tuple.__new__(cls, (lat, lon))

    def getLon(self):
        return self[1]

    def getLat(self):
        return self[0]

    def distance(self, other):
        """Great circle distance to another location in metres."""
        return haversine(self[0], self[1], other[0], other[1])

    def bearing(self, other):
        return bearing(self[0], self[1], other[0], other[1])


class FlightPoint(tuple):
    """Immutable (time, lat, lon, alt) sample; time is seconds since launch."""
    def __new__(cls, time, lat, lon, alt):
        return tuple.__new__(cls, (float(time), float(lat), float(lon), float(alt)))

    @property
    def time(self):
        return self[0]

    @property
    def lat(self):
        return self[1]

    @property
    def lon(self):
        return self[2]

    @property
    def alt(self):
        return self[3]

    @property
    def location(self):
        return Location(self[1], self[2])

    def to_dict(self):
        return {"time": self[0], "lat": self[1], "lon": self[2], "altitude": self[3]}


class Trajectory(list):
    def duration(self):
        """Returns duration in seconds."""
        if len(self) < 2:
            return 0.0
        return self[-1].time - self[0].time

    def length(self):
        """Distance travelled by trajectory in metres."""
        return sum(i.location.distance(j.location) for i, j in zip(self[:-1], self[1:]))

    def max_altitude(self):
        return max((p.alt for p in self), default=0.0)

    def times(self):
        return np.array([p.time for p in self], dtype=np.float64)

    def closest(self, time):
        """Point whose elapsed time is nearest to `time` (earlier point wins ties)."""
        if not self:
            raise ValueError("Trajectory is empty")
        times = [p.time for p in self]
        i = bisect_left(times, time)
        if i == 0:
            return self[0]
        if i == len(self):
            return self[-1]
        before, after = self[i - 1], self[i]
        return before if time - before.time <= after.time - time else after

    def interpolate(self, time):
        """Linearly interpolated point at elapsed `time`, clamped to the path ends."""
        if not self:
            raise ValueError("Trajectory is empty")
        times = self.times()
        lat = np.interp(time, times, [p.lat for p in self])
        lon = np.interp(time, times, [p.lon for p in self])
        alt = np.interp(time, times, [p.alt for p in self])
        return FlightPoint(min(max(time, times[0]), times[-1]), lat, lon, alt)


@dataclass(frozen=True)
class LaunchParameters:
    """
    Launch configuration for one simulation run.

    Attributes:
        lat, lon: Launch position in decimal degrees.
        launch_time: Launch instant (datetime; naive values are treated as UTC).
        launch_altitude: Launch altitude in metres.
        ascent_rate: Ascent rate in m/s (> 0).
        burst_altitude: Burst altitude in metres (> launch_altitude).
        descent_rate: Descent rate in m/s (> 0).
    """
    lat: float
    lon: float
    launch_time: datetime
    launch_altitude: float
    ascent_rate: float
    burst_altitude: float
    descent_rate: float

    @property
    def timestamp(self):
        return to_timestamp(self.launch_time)

    def validate(self):
        """Raise ValueError for inputs the integrator cannot handle."""
        for name in ('lat', 'lon', 'launch_altitude', 'ascent_rate', 'burst_altitude', 'descent_rate'):
            if not math.isfinite(getattr(self, name)):
                raise ValueError(f"Parameter {name} is not a finite number")
        if not -90 <= self.lat <= 90:
            raise ValueError("Latitude must be between -90 and 90")
        if not -180 <= self.lon <= 360:
            raise ValueError("Longitude must be between -180 and 360")
        if self.ascent_rate <= 0:
            raise ValueError("Ascent rate must be positive")
        if self.descent_rate <= 0:
            raise ValueError("Descent rate must be positive")
        if self.burst_altitude <= self.launch_altitude:
            raise ValueError("Burst altitude must be above launch altitude")
        return self

    def replace(self, **changes):
        return replace(self, **changes)

    def to_dict(self):
        launch_time = self.launch_time
        if isinstance(launch_time, datetime):
            if launch_time.tzinfo is None:
                launch_time = launch_time.replace(tzinfo=timezone.utc)
            launch_time = launch_time.isoformat()
        return {
            "lat": self.lat, "lon": self.lon, "launch_time": launch_time,
            "launch_altitude": self.launch_altitude, "ascent_rate": self.ascent_rate,
            "burst_altitude": self.burst_altitude, "descent_rate": self.descent_rate,
        }


@dataclass(frozen=True)
class PredictionResult:
    """Output of one simulation run. Treated as immutable once built."""
    path: Trajectory
    launch_point: FlightPoint
    burst_point: FlightPoint
    landing_point: FlightPoint
    total_time: float
    max_altitude: float
    distance: float
    burst_index: int = field(default=0, compare=False)

    @classmethod
    def from_path(cls, path, burst_index):
        path = Trajectory(path)
        return cls(
            path=path,
            launch_point=path[0],
            burst_point=path[burst_index],
            landing_point=path[-1],
            total_time=path[-1].time,
            max_altitude=path.max_altitude(),
            distance=path.length(),
            burst_index=burst_index,
        )

    def ascent(self):
        """Launch point up to and including the burst point."""
        return Trajectory(self.path[:self.burst_index + 1])

    def descent(self):
        """Burst point down to the landing point."""
        return Trajectory(self.path[self.burst_index:])

    @property
    def burst_time(self):
        return self.burst_point.time

    def to_dict(self):
        return {
            "path": [p.to_dict() for p in self.path],
            "launch_point": self.launch_point.to_dict(),
            "burst_point": self.burst_point.to_dict(),
            "landing_point": self.landing_point.to_dict(),
            "total_time": self.total_time,
            "max_altitude": self.max_altitude,
            "distance": self.distance,
        }


class Balloon:
    """
    Balloon state tracking with trajectory history.

    Uses history-based state: current state is always the last FlightPoint in history.
    This allows tracking full trajectory while maintaining simple attribute access
    (balloon.alt, balloon.lat, balloon.time always refer to current state).
    """
    def __init__(self, launch_time, location, alt=0.0, time=0.0):
        self.launch_time = launch_time
        self.history = Trajectory([FlightPoint(time, location[0], location[1], alt)])

    def update(self, time, location, alt):
        """Add new state to trajectory history; it becomes the current state."""
        self.history.append(FlightPoint(time, location[0], location[1], alt))
        return self.history[-1]

    def __getattr__(self, name):
        """
        Delegate attribute access to current state (last point in history).

        This allows balloon.alt, balloon.location, etc. to work naturally
        while state is actually stored in history list.
        """
        if name in ("history", "launch_time"):
            raise AttributeError(name)
        return getattr(self.history[-1], name)


class Simulator:
    """
    Fixed-step integrator for balloon ascent, burst and descent.

    Each step moves the balloon vertically at the phase rate, samples the
    wind at the new altitude and time, and drifts the position with the air
    for one step. Altitude is clamped to the burst altitude on the way up and
    to the ground (0 m) on the way down.
    """
    def __init__(self, wind_file, step_size=DEFAULT_STEP_SIZE, max_steps=DEFAULT_MAX_STEPS):
        if step_size <= 0:
            raise ValueError("step size must be positive")
        self.wind_file = wind_file
        self.step_size = float(step_size)
        self.max_steps = int(max_steps)

    def step(self, balloon, step_size, rate, target_alt):
        """
        Advance `balloon` by one step of `step_size` seconds at vertical `rate` (m/s).

        The new altitude never passes `target_alt`. Returns the new FlightPoint.
        """
        h = float(step_size)
        newAlt = balloon.alt + rate * h
        if (rate > 0 and newAlt > target_alt) or (rate < 0 and newAlt < target_alt):
            newAlt = target_alt
        elif math.isclose(newAlt, target_alt, abs_tol=ALTITUDE_TOLERANCE):
            # Inexact rates leave a float residual short of the target
            newAlt = target_alt
        newTime = balloon.time + h

        # Wind at the new altitude/time drives the horizontal drift for this step
        u, v = self.wind_file.uv(newAlt, newTime, balloon.launch_time)
        dlat_dt, dlon_dt = self.lin_to_angular_velocities(balloon.lat, balloon.lon, u, v)
        newLat, newLon = fold_pole(balloon.lat + h * dlat_dt, balloon.lon + h * dlon_dt)

        return balloon.update(time=newTime, location=(newLat, newLon), alt=newAlt)

    def lin_to_angular_velocities(self, lat, lon, u, v):
        """
        Convert linear velocities (m/s) to angular velocities (deg/s).

        Accounts for Earth's curvature: longitude velocity depends on latitude
        (lines of longitude get closer together near poles).

        Formula:
            dlat/dt = v / R (degrees per second)
            dlon/dt = u / (R * cos(lat)) (degrees per second)
        """
        dlat = math.degrees(v / EARTH_RADIUS)
        dlon = math.degrees(u / (EARTH_RADIUS * math.cos(math.radians(lat))))
        return dlat, dlon

    def simulate(self, balloon, ascent_rate, burst_altitude, descent_rate):
        """
        Run ascent then descent until the balloon reaches the ground.

        Rates must be positive and finite; they are not checked here. A balloon
        already at or above `burst_altitude` skips the ascent phase.

        Returns:
            PredictionResult whose burst point is the last ascent point.
        """
        steps = 0
        while balloon.alt < burst_altitude:
            self.step(balloon, self.step_size, ascent_rate, burst_altitude)
            steps = self._count(steps)
        burst_index = len(balloon.history) - 1

        while balloon.alt > 0:
            self.step(balloon, self.step_size, -descent_rate, 0.0)
            steps = self._count(steps)

        return PredictionResult.from_path(balloon.history, burst_index)

    def _count(self, steps):
        steps += 1
        if steps > self.max_steps:
            raise RuntimeError(
                f"Trajectory simulation exceeded {self.max_steps} steps - check ascent/descent rates")
        return steps
