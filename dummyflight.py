"""
Simulated beacon feed for exercising live flight analysis.

A DummyFlight replays a nominal prediction as a stream of ObservedPositions,
bent by a named scenario (early burst, wind shear, ...) and GPS-like noise.
Scenarios are registered with the @perturbation decorator. All randomness
comes from one numpy Generator seeded from the config, recreated on every
call, so the same config always produces the same flight.
"""
import logging
import math
from dataclasses import dataclass, field

import numpy as np

from habpredict.classes import EARTH_RADIUS, FlightPoint, haversine, bearing
from habpredict.live import ObservedPosition

logger = logging.getLogger(__name__)

PERTURBATIONS = {}

JET_STREAM_ALTITUDE = 10000.0  # m
GROUND_NOISE_FACTOR = 0.3
MAX_ALTITUDE = 50000.0
MIN_BEACON_INTERVAL = 1.0  # s
MAX_BEACONS = 5000


def perturbation(tag):
    """Register `fn(point, ctx) -> FlightPoint` as the scenario named `tag`."""
    def register(fn):
        PERTURBATIONS[tag] = fn
        return fn
    return register


def offset_position(lat, lon, north, east):
    """Shift (lat, lon) by `north`/`east` metres."""
    dlat = math.degrees(north / EARTH_RADIUS)
    dlon = math.degrees(east / (EARTH_RADIUS * math.cos(math.radians(lat))))
    return lat + dlat, ((lon + dlon + 180.0) % 360.0) - 180.0


@dataclass
class DummyFlightConfig:
    scenario: str = "standard"
    beacon_interval: float = 120.0   # s
    noise_level: float = 0.3         # 0..1 scale of GPS/altitude noise
    seed: int = 0
    loss_altitude: float = 1000.0    # m below which beacons may drop out
    loss_probability: float = 0.1    # drop-out chance per beacon at ground level


@dataclass
class FlightContext:
    """Per-flight state handed to every perturbation."""
    rng: np.random.Generator
    config: DummyFlightConfig
    launch_params: object
    prediction: object
    draws: dict = field(default_factory=dict)

    def nominal_at(self, elapsed):
        """Predicted point at `elapsed` seconds; the payload rests at the landing point afterwards."""
        point = self.prediction.path.interpolate(elapsed)
        return FlightPoint(elapsed, point.lat, point.lon, point.alt)

    @property
    def burst_time(self):
        return self.prediction.burst_time


def _with_altitude(point, altitude):
    return FlightPoint(point.time, point.lat, point.lon, min(max(altitude, 0.0), MAX_ALTITUDE))


@perturbation("standard")
def standard(point, ctx):
    """Nominal flight with small gusts and a gentle float wobble near burst."""
    gust = ctx.rng.normal(0.0, 2.0, size=2)
    lat, lon = offset_position(point.lat, point.lon, gust[0], gust[1])
    altitude = point.alt + ctx.rng.normal(0.0, 10.0)
    if point.time <= ctx.burst_time and point.alt > 0.9 * ctx.launch_params.burst_altitude:
        altitude += 100.0 * math.sin(point.time / 1800.0)
    return FlightPoint(point.time, lat, lon, max(altitude, 0.0))


@perturbation("early_burst")
def early_burst(point, ctx):
    """Burst at 75-85 % of the predicted altitude, then descend with oscillating rate."""
    params = ctx.launch_params
    burst_alt = params.launch_altitude + ctx.draws["burst_fraction"] * (params.burst_altitude - params.launch_altitude)
    burst_time = (burst_alt - params.launch_altitude) / params.ascent_rate
    if point.time <= burst_time:
        return point
    fall = point.time - burst_time
    # Descent rate swings +/-30 % on a ~12 minute period
    dropped = params.descent_rate * (fall + 0.3 * 120.0 * (1 - math.cos(fall / 120.0)))
    return _with_altitude(ctx.nominal_at(point.time), burst_alt - dropped)


@perturbation("wind_shear")
def wind_shear(point, ctx):
    """Strong lateral push around the jet stream with occasional sudden drops."""
    proximity = math.exp(-((point.alt - JET_STREAM_ALTITUDE) / 2500.0) ** 2)
    push = 25.0 * proximity * min(point.time, 3600.0)
    heading = math.radians(ctx.draws["shear_bearing"] + 60.0 * math.sin(point.time / 800.0))
    lat, lon = offset_position(point.lat, point.lon, push * math.cos(heading), push * math.sin(heading))
    altitude = point.alt
    if ctx.rng.random() > 0.85 and proximity > 0.6:
        altitude = max(altitude - 1500.0 * proximity, 0.7 * altitude)
    return FlightPoint(point.time, lat, lon, altitude)


@perturbation("slow_ascent")
def slow_ascent(point, ctx):
    """Under-filled balloon: climbs at a fraction of the planned rate, bursts late."""
    params = ctx.launch_params
    rate = params.ascent_rate * ctx.draws["ascent_efficiency"]
    burst_time = (params.burst_altitude - params.launch_altitude) / rate
    if point.time <= burst_time:
        altitude = params.launch_altitude + rate * point.time
    else:
        altitude = params.burst_altitude - params.descent_rate * (point.time - burst_time)
    return _with_altitude(point, altitude)


@perturbation("fast_descent")
def fast_descent(point, ctx):
    """Tangled or partially deployed parachute after burst."""
    if point.time <= ctx.burst_time:
        return point
    burst = ctx.prediction.burst_point
    rate = ctx.launch_params.descent_rate * ctx.draws["descent_multiplier"]
    return _with_altitude(point, burst.alt - rate * (point.time - burst.time))


class DummyFlight:
    def __init__(self, config, launch_params, prediction):
        if config.scenario not in PERTURBATIONS:
            raise KeyError(f"Unknown dummy flight scenario '{config.scenario}' "
                           f"(known: {', '.join(sorted(PERTURBATIONS))})")
        if not config.beacon_interval >= MIN_BEACON_INTERVAL:
            raise ValueError(f"Beacon interval must be at least {MIN_BEACON_INTERVAL:g} s")
        self.config = config
        self.launch_params = launch_params
        self.prediction = prediction

    def _context(self):
        rng = np.random.default_rng(self.config.seed)
        draws = {
            "burst_fraction": rng.uniform(0.75, 0.85),
            "descent_multiplier": rng.choice([1.5, 2.0, 3.0], p=[0.6, 0.25, 0.15]),
            "ascent_efficiency": rng.uniform(0.6, 0.8),
            "shear_bearing": rng.uniform(0.0, 360.0),
        }
        return FlightContext(rng=rng, config=self.config, launch_params=self.launch_params,
                             prediction=self.prediction, draws=draws)

    def _add_noise(self, point, ctx):
        noise = self.config.noise_level
        if point.alt < 100.0:
            noise *= GROUND_NOISE_FACTOR
        # GPS fixes improve with altitude
        gps_sigma = (1 - 0.5 * min(1.0, point.alt / 10000.0)) * noise * 5.0
        north, east = ctx.rng.normal(0.0, gps_sigma, size=2) if gps_sigma > 0 else (0.0, 0.0)
        lat, lon = offset_position(point.lat, point.lon, north, east)
        altitude = point.alt
        if point.alt > 0:
            altitude += ctx.rng.normal(0.0, noise * 50.0) if noise > 0 else 0.0
        return FlightPoint(point.time, lat, lon, max(0.0, altitude))

    def _beacon_lost(self, point, ctx):
        if point.time <= ctx.burst_time or point.alt >= self.config.loss_altitude:
            return False
        chance = (self.config.loss_altitude - point.alt) / self.config.loss_altitude
        return ctx.rng.random() < chance * self.config.loss_probability

    def _comment(self, point):
        if point.time < 300:
            phase = "LAUNCH"
        elif point.time > self.prediction.burst_time and point.alt < 1000:
            phase = "LANDED"
        elif point.time > self.prediction.burst_time:
            phase = "DESC"
        else:
            phase = "ASC"
        battery = max(20.0, 100.0 - point.time / 360.0)
        return f"{phase} Alt={round(point.alt)}m Bat={battery:.0f}%"

    def generate_positions(self, elapsed):
        """
        Beacon reports from launch up to `elapsed` seconds after launch.

        Reporting stops early when a simulated beacon loss occurs.
        """
        if elapsed / self.config.beacon_interval + 1 > MAX_BEACONS:
            raise ValueError(f"At most {MAX_BEACONS} beacons per dummy flight; "
                             "raise beacon_interval or shorten elapsed")
        ctx = self._context()
        perturb = PERTURBATIONS[self.config.scenario]
        launch_ts = self.launch_params.timestamp
        positions = []

        t = 0.0
        while t <= elapsed:
            point = self._add_noise(perturb(ctx.nominal_at(t), ctx), ctx)
            speed = course = 0.0
            if positions:
                prev = positions[-1]
                speed = haversine(prev.lat, prev.lon, point.lat, point.lon) / self.config.beacon_interval
                course = bearing(prev.lat, prev.lon, point.lat, point.lon) if speed > 0 else 0.0
            positions.append(ObservedPosition(
                timestamp=launch_ts + t,
                lat=point.lat,
                lon=point.lon,
                altitude=point.alt,
                speed=speed,
                course=course,
                comment=self._comment(point),
            ))
            if self._beacon_lost(point, ctx):
                logger.debug("Dummy beacon lost at t=%.0fs alt=%.0fm", t, point.alt)
                break
            t += self.config.beacon_interval
        return positions
