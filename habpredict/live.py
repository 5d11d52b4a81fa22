"""
Live flight analysis against an original prediction.

Takes the time-ordered telemetry of a flight in progress (real or simulated
beacon reports), infers the flight phase, estimates the actual ascent and
descent rates, measures the deviation from the predicted path and re-runs
the integrator from the last observed state. Every call is a pure recompute
from the supplied observations; the only carried state is the LiveSession
the caller passes in for beacon-loss bookkeeping.
"""
import enum
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from .classes import (
    DEFAULT_MAX_STEPS,
    DEFAULT_STEP_SIZE,
    Balloon,
    FlightPoint,
    LaunchParameters,
    PredictionResult,
    Simulator,
    bearing,
    haversine,
)

logger = logging.getLogger(__name__)


class Phase(str, enum.Enum):
    ASCENT = "ascent"
    BURST = "burst"
    DESCENT = "descent"
    LANDED = "landed"


@dataclass(frozen=True)
class ObservedPosition:
    """
    One telemetry report.

    Attributes:
        timestamp: Unix timestamp in seconds.
        lat, lon: Position in decimal degrees.
        altitude: Altitude in metres, if reported.
        speed: Ground speed in m/s, if reported.
        course: Course over ground in degrees, if reported.
        comment: Free-text beacon comment.
    """
    timestamp: float
    lat: float
    lon: float
    altitude: Optional[float] = None
    speed: Optional[float] = None
    course: Optional[float] = None
    comment: Optional[str] = None

    @classmethod
    def from_dict(cls, data):
        """Accepts both our field names and APRS-style `time`/`lng` keys."""
        timestamp = data.get("timestamp", data.get("time"))
        lon = data.get("lon", data.get("lng"))
        if timestamp is None or data.get("lat") is None or lon is None:
            raise ValueError("Observed position needs timestamp, lat and lon")

        def optional(key):
            value = data.get(key)
            return None if value is None else float(value)

        return cls(
            timestamp=float(timestamp),
            lat=float(data["lat"]),
            lon=float(lon),
            altitude=optional("altitude"),
            speed=optional("speed"),
            course=optional("course"),
            comment=data.get("comment"),
        )

    def to_dict(self):
        return dict(vars(self))


@dataclass
class LiveAnalysisConfig:
    """Tuning constants for phase detection, beacon loss and accuracy scoring."""
    phase_window: int = 5            # samples used for the vertical rate fit
    rate_window: int = 10            # samples used for ascent/descent rate fits
    min_vertical_rate: float = 0.5   # m/s separating climbing/sinking from hovering
    burst_band: float = 500.0        # m around the predicted burst altitude
    peak_margin: float = 50.0        # m below the peak that counts as past burst
    airborne_margin: float = 500.0   # m climb that proves the flight left the ground
    stable_rate: float = 1.0         # m/s under which altitude counts as stable
    low_altitude: float = 1000.0     # m above ground reference considered low
    beacon_interval: float = 120.0   # s between expected beacons
    missed_beacons: int = 3          # missed intervals before assuming a landing
    trajectory_tolerance: float = 50000.0
    altitude_tolerance: float = 5000.0
    timing_tolerance: float = 1800.0
    material_distance: float = 10.0  # m of movement that makes a report new
    material_altitude: float = 5.0   # m of climb/sink that makes a report new
    step_size: float = DEFAULT_STEP_SIZE
    max_steps: int = DEFAULT_MAX_STEPS


@dataclass(frozen=True)
class FlightPhase:
    phase: Phase
    confidence: float
    detected_at: float
    assumed_landed: bool = False


@dataclass(frozen=True)
class Deviation:
    distance: float
    bearing: float
    altitude_difference: Optional[float]


@dataclass(frozen=True)
class AccuracyReport:
    trajectory: float
    altitude: Optional[float]
    timing: Optional[float]
    overall: float


@dataclass(frozen=True)
class WindEstimate:
    speed: float
    direction: float
    altitude: float
    timestamp: float
    confidence: float = 0.7


@dataclass(frozen=True)
class LiveComparison:
    phase: FlightPhase
    ascent_rate: Optional[float]
    descent_rate: Optional[float]
    burst_altitude: Optional[float]
    deviation: Deviation
    updated_prediction: PredictionResult
    accuracy: AccuracyReport
    time_to_landing: float
    latest: ObservedPosition
    recommendations: Tuple[str, ...] = ()
    wind_estimates: Tuple[WindEstimate, ...] = ()

    def to_dict(self):
        return {
            "phase": self.phase.phase.value,
            "confidence": self.phase.confidence,
            "detected_at": self.phase.detected_at,
            "assumed_landed": self.phase.assumed_landed,
            "ascent_rate": self.ascent_rate,
            "descent_rate": self.descent_rate,
            "burst_altitude": self.burst_altitude,
            "deviation": vars(self.deviation).copy(),
            "updated_prediction": self.updated_prediction.to_dict(),
            "accuracy": vars(self.accuracy).copy(),
            "time_to_landing": self.time_to_landing,
            "latest": self.latest.to_dict(),
            "recommendations": list(self.recommendations),
            "wind_estimates": [vars(w).copy() for w in self.wind_estimates],
        }


@dataclass
class LiveSession:
    """
    State carried between analyses of one flight.

    Holds the last processed report, the time of the last beacon and the
    assumed-landing flag raised when beacons stop at low altitude.
    """
    last_processed: Optional[ObservedPosition] = None
    last_beacon_time: Optional[float] = None
    assumed_landed: bool = False
    assumed_landing_location: Optional[Tuple[float, float]] = None
    last_comparison: Optional[LiveComparison] = None

    def is_material(self, position, config=None):
        """True when `position` would change the analysis (new time, moved or climbed)."""
        cfg = config or LiveAnalysisConfig()
        last = self.last_processed
        if last is None:
            return True
        if position.timestamp != last.timestamp:
            return True
        if haversine(last.lat, last.lon, position.lat, position.lon) > cfg.material_distance:
            return True
        if (position.altitude is None) != (last.altitude is None):
            return True
        return position.altitude is not None and abs(position.altitude - last.altitude) > cfg.material_altitude

    def record(self, comparison):
        self.last_processed = comparison.latest
        self.last_beacon_time = comparison.latest.timestamp
        self.last_comparison = comparison
        if comparison.phase.assumed_landed:
            self.assumed_landed = True
            landing = comparison.updated_prediction.landing_point
            self.assumed_landing_location = (landing.lat, landing.lon)
        else:
            self.assumed_landed = False
            self.assumed_landing_location = None


def normalize_positions(positions):
    """Sort reports by time; of reports sharing a timestamp the last one wins."""
    by_time = {}
    for p in positions:
        if not isinstance(p, ObservedPosition):
            p = ObservedPosition.from_dict(p)
        by_time[p.timestamp] = p
    return [by_time[t] for t in sorted(by_time)]


def _altitude_samples(positions):
    return [(p.timestamp, p.altitude) for p in positions if p.altitude is not None]


def _fit_rate(samples):
    """Least-squares vertical rate (m/s) of (timestamp, altitude) samples."""
    times = np.array([t for t, _ in samples], dtype=np.float64)
    alts = np.array([a for _, a in samples], dtype=np.float64)
    return float(np.polyfit(times - times[0], alts, 1)[0])


def _ground_reference(original, launch_params):
    return max(launch_params.launch_altitude, original.landing_point.alt, 0.0)


def _clip(value):
    return float(min(1.0, max(0.0, value)))


def _consecutive_agreement(flags):
    """Fraction of trailing True values in `flags`."""
    if len(flags) == 0:
        return 0.0
    count = 0
    for flag in reversed(flags):
        if not flag:
            break
        count += 1
    return count / len(flags)


def _timeline_phase(elapsed, original):
    if elapsed < original.burst_time:
        return Phase.ASCENT
    if elapsed < original.total_time:
        return Phase.DESCENT
    return Phase.LANDED


def detect_flight_phase(positions, original: PredictionResult, launch_params: LaunchParameters,
                        config=None, now=None, session=None) -> FlightPhase:
    """
    Infer the current flight phase from the recent altitude trend.

    `now` is the wall-clock time of the analysis (defaults to the latest report);
    it only matters for the beacon-loss rule.
    """
    cfg = config or LiveAnalysisConfig()
    positions = normalize_positions(positions)
    if not positions:
        raise ValueError("At least one observed position is required")
    latest = positions[-1]
    now = latest.timestamp if now is None else now
    ground = _ground_reference(original, launch_params)
    burst_alt = original.burst_point.alt
    samples = _altitude_samples(positions)

    if len(samples) < 2:
        phase = _timeline_phase(latest.timestamp - launch_params.timestamp, original)
        return FlightPhase(phase, 0.3 if samples else 0.1, latest.timestamp)

    alts = np.array([a for _, a in samples], dtype=np.float64)
    peak_idx = int(np.argmax(alts))
    peak = alts[peak_idx]
    current = alts[-1]
    airborne = peak - alts[0] >= cfg.airborne_margin or current - ground >= cfg.airborne_margin

    # Beacon loss at low altitude: assume the payload is on the ground
    missed = (now - latest.timestamp) / cfg.beacon_interval
    still_lost = (session is not None and session.assumed_landed
                  and session.last_beacon_time is not None and latest.timestamp <= session.last_beacon_time)
    if current < ground + cfg.low_altitude and (airborne or still_lost):
        if missed >= cfg.missed_beacons or still_lost:
            confidence = min(0.9, 0.5 + 0.1 * max(0.0, missed - cfg.missed_beacons))
            return FlightPhase(Phase.LANDED, confidence, max(now, latest.timestamp), assumed_landed=True)

    window = samples[-cfg.phase_window:]
    rate = _fit_rate(window)
    w_times = np.array([t for t, _ in window], dtype=np.float64)
    w_alts = np.array([a for _, a in window], dtype=np.float64)
    deltas = np.diff(w_alts) / np.diff(w_times)

    recent = deltas[-2:]
    stable = len(recent) >= 2 and bool(np.all(np.abs(recent) < cfg.stable_rate))
    sign_change = len(deltas) >= 2 and deltas[-2] > 0 and deltas[-1] < 0
    near_burst = abs(current - burst_alt) <= cfg.burst_band
    past_peak = peak_idx < len(alts) - 1 and peak - current > cfg.peak_margin

    if airborne and stable and current <= ground + cfg.low_altitude:
        phase = Phase.LANDED
        agreement = _consecutive_agreement(np.abs(deltas) < cfg.stable_rate)
        closeness = 1 - (current - ground) / cfg.low_altitude
    elif near_burst and (sign_change or abs(rate) < cfg.min_vertical_rate):
        phase = Phase.BURST
        agreement = 1.0 if sign_change else _consecutive_agreement(np.abs(deltas) < cfg.min_vertical_rate)
        closeness = 1 - abs(current - burst_alt) / cfg.burst_band
    elif rate < -cfg.min_vertical_rate or past_peak:
        phase = Phase.DESCENT
        agreement = _consecutive_agreement(deltas < 0)
        closeness = (peak - current) / cfg.burst_band
    elif rate > cfg.min_vertical_rate:
        phase = Phase.ASCENT
        agreement = _consecutive_agreement(deltas > 0)
        closeness = (burst_alt - current) / cfg.burst_band
    else:
        # Hovering away from the burst altitude: trust the prediction timeline
        phase = _timeline_phase(latest.timestamp - launch_params.timestamp, original)
        return FlightPhase(phase, 0.3, latest.timestamp)

    confidence = _clip(0.6 * agreement + 0.4 * _clip(closeness))
    return FlightPhase(phase, confidence, latest.timestamp)


def estimate_rates(positions, phase: Phase, config=None):
    """
    Actual (ascent_rate, descent_rate) in m/s from linear fits.

    The ascent fit uses the samples up to the altitude peak, the descent fit
    the samples after it (ground-stable samples excluded). Either is None until
    two samples of that phase exist.
    """
    cfg = config or LiveAnalysisConfig()
    samples = _altitude_samples(normalize_positions(positions))
    if len(samples) < 2:
        return None, None

    alts = [a for _, a in samples]
    peak_idx = int(np.argmax(alts))

    ascent_rate = None
    ascent = samples[:peak_idx + 1][-cfg.rate_window:]
    if len(ascent) >= 2:
        fitted = _fit_rate(ascent)
        ascent_rate = fitted if fitted > 0 else None

    descent_rate = None
    if phase is not Phase.ASCENT:
        descent = samples[peak_idx + 1:]
        # Drop trailing samples sitting still on the ground
        while len(descent) >= 2:
            (t0, a0), (t1, a1) = descent[-2], descent[-1]
            if abs(a1 - a0) / (t1 - t0) >= cfg.stable_rate:
                break
            descent = descent[:-1]
        descent = descent[-cfg.rate_window:]
        if len(descent) >= 2:
            fitted = _fit_rate(descent)
            descent_rate = -fitted if fitted < 0 else None

    return ascent_rate, descent_rate


def calculate_deviation(latest: ObservedPosition, original: PredictionResult, launch_params: LaunchParameters):
    """Deviation of `latest` from the predicted point closest in elapsed time."""
    elapsed = latest.timestamp - launch_params.timestamp
    predicted = original.path.closest(elapsed)
    distance = haversine(predicted.lat, predicted.lon, latest.lat, latest.lon)
    direction = bearing(predicted.lat, predicted.lon, latest.lat, latest.lon) if distance > 0 else 0.0
    altitude_difference = None if latest.altitude is None else latest.altitude - predicted.alt
    return Deviation(distance=distance, bearing=direction, altitude_difference=altitude_difference)


def _predicted_time_at(segment, altitude):
    """Elapsed time at which a monotonic path segment passes `altitude` (clamped)."""
    times = np.array([p.time for p in segment], dtype=np.float64)
    alts = np.array([p.alt for p in segment], dtype=np.float64)
    if len(segment) == 1:
        return float(times[0])
    if alts[-1] < alts[0]:
        times, alts = times[::-1], alts[::-1]
    return float(np.interp(altitude, alts, times))


def _observed_landing_time(samples, cfg):
    """Timestamp of the first sample in the trailing run of ground-stable samples."""
    index = len(samples) - 1
    while index > 0:
        (t0, a0), (t1, a1) = samples[index - 1], samples[index]
        if abs(a1 - a0) / (t1 - t0) >= cfg.stable_rate:
            break
        index -= 1
    return samples[index][0]


def calculate_accuracy(positions, phase: FlightPhase, deviation: Deviation, original: PredictionResult,
                       launch_params: LaunchParameters, config=None) -> AccuracyReport:
    """Trajectory, altitude and timing scores in [0, 1]; overall is their mean."""
    cfg = config or LiveAnalysisConfig()
    positions = normalize_positions(positions)
    samples = _altitude_samples(positions)
    launch_ts = launch_params.timestamp

    trajectory = _clip(1 - deviation.distance / cfg.trajectory_tolerance)
    altitude = None
    if deviation.altitude_difference is not None:
        altitude = _clip(1 - abs(deviation.altitude_difference) / cfg.altitude_tolerance)

    timing = None
    if samples:
        observed_time, observed_alt = samples[-1]
        if phase.phase is Phase.ASCENT:
            predicted = _predicted_time_at(original.ascent(), observed_alt)
        elif phase.phase is Phase.BURST:
            predicted = original.burst_time
        elif phase.phase is Phase.DESCENT:
            predicted = _predicted_time_at(original.descent(), observed_alt)
        else:
            predicted = original.total_time
            if not phase.assumed_landed:
                observed_time = _observed_landing_time(samples, cfg)
        timing = _clip(1 - abs((observed_time - launch_ts) - predicted) / cfg.timing_tolerance)

    scores = [s for s in (trajectory, altitude, timing) if s is not None]
    return AccuracyReport(trajectory=trajectory, altitude=altitude, timing=timing,
                          overall=float(sum(scores) / len(scores)))


def generate_updated_prediction(positions, phase: FlightPhase, original: PredictionResult,
                                launch_params: LaunchParameters, forecast, ascent_rate=None,
                                descent_rate=None, config=None) -> PredictionResult:
    """
    Re-run the integrator from the latest observed state.

    Measured rates replace the configured ones once known. A balloon still
    climbing continues to the originally predicted burst altitude; otherwise
    only the descent is simulated. A flight seen resting on the ground yields
    a single-point prediction at its position.
    """
    cfg = config or LiveAnalysisConfig()
    positions = normalize_positions(positions)
    latest = positions[-1]
    elapsed = latest.timestamp - launch_params.timestamp

    altitude = latest.altitude
    if altitude is None:
        samples = _altitude_samples(positions)
        altitude = samples[-1][1] if samples else original.path.interpolate(elapsed).alt
    altitude = max(0.0, altitude)

    if phase.phase is Phase.LANDED and not phase.assumed_landed:
        return PredictionResult.from_path([FlightPoint(elapsed, latest.lat, latest.lon, altitude)], 0)

    asc = ascent_rate if ascent_rate is not None and ascent_rate > cfg.min_vertical_rate else launch_params.ascent_rate
    desc = descent_rate if descent_rate is not None and descent_rate > cfg.min_vertical_rate else launch_params.descent_rate

    burst_alt = original.burst_point.alt
    if phase.phase is not Phase.ASCENT or altitude >= burst_alt:
        burst_alt = altitude

    balloon = Balloon(launch_params.launch_time, (latest.lat, latest.lon), alt=altitude, time=elapsed)
    simulator = Simulator(forecast, step_size=cfg.step_size, max_steps=cfg.max_steps)
    return simulator.simulate(balloon, asc, burst_alt, desc)


def estimate_wind_from_trajectory(positions) -> List[WindEstimate]:
    """
    Wind estimates from the drift between neighbouring reports.

    Assumes the balloon moves with the air, so the drift speed is the wind speed
    and the wind blows from the opposite of the drift bearing.
    """
    positions = normalize_positions(positions)
    estimates = []
    for prev, curr, nxt in zip(positions, positions[1:], positions[2:]):
        if prev.altitude is None or curr.altitude is None or nxt.altitude is None:
            continue
        distance = haversine(prev.lat, prev.lon, nxt.lat, nxt.lon)
        span = nxt.timestamp - prev.timestamp
        if span <= 0:
            continue
        drift = bearing(prev.lat, prev.lon, nxt.lat, nxt.lon) if distance > 0 else 0.0
        estimates.append(WindEstimate(
            speed=distance / span,
            direction=(drift + 180.0) % 360.0,
            altitude=curr.altitude,
            timestamp=curr.timestamp,
        ))
    return estimates


def generate_recommendations(phase, ascent_rate, descent_rate, deviation, accuracy):
    recommendations = []
    if phase.assumed_landed:
        recommendations.append('Beacon lost at low altitude. Assuming landing; search near the updated landing point.')
    if accuracy.trajectory < 0.7:
        recommendations.append('Significant trajectory deviation detected. Consider updated landing zone predictions.')
    if ascent_rate is not None and ascent_rate < 3:
        recommendations.append('Slower than expected ascent rate. Burst altitude may be lower than predicted.')
    if ascent_rate is not None and ascent_rate > 8:
        recommendations.append('Faster than expected ascent rate. Monitor for early burst.')
    if deviation.distance > 10000:
        recommendations.append('Flight path deviating significantly from prediction. Check wind conditions.')
    if phase.phase is Phase.DESCENT and descent_rate is None:
        recommendations.append('Descent phase detected but descent rate unknown. Monitor closely.')
    return recommendations


def analyze_live_flight(positions, original: PredictionResult, launch_params: LaunchParameters, forecast,
                        session: Optional[LiveSession] = None, config: Optional[LiveAnalysisConfig] = None,
                        now: Optional[float] = None) -> Optional[LiveComparison]:
    """
    Compare live telemetry with the original prediction.

    Returns None when no positions are supplied. Identical inputs (including
    the session state) always give an identical LiveComparison.
    """
    cfg = config or LiveAnalysisConfig()
    positions = normalize_positions(positions)
    if not positions:
        return None
    latest = positions[-1]

    phase = detect_flight_phase(positions, original, launch_params, cfg, now=now, session=session)
    ascent_rate, descent_rate = estimate_rates(positions, phase.phase, cfg)
    deviation = calculate_deviation(latest, original, launch_params)
    accuracy = calculate_accuracy(positions, phase, deviation, original, launch_params, cfg)
    updated = generate_updated_prediction(positions, phase, original, launch_params, forecast,
                                          ascent_rate=ascent_rate, descent_rate=descent_rate, config=cfg)

    burst_altitude = None
    samples = _altitude_samples(positions)
    if samples and phase.phase is not Phase.ASCENT:
        burst_altitude = max(a for _, a in samples)

    elapsed = latest.timestamp - launch_params.timestamp
    time_to_landing = max(0.0, updated.total_time - elapsed)

    comparison = LiveComparison(
        phase=phase,
        ascent_rate=ascent_rate,
        descent_rate=descent_rate,
        burst_altitude=burst_altitude,
        deviation=deviation,
        updated_prediction=updated,
        accuracy=accuracy,
        time_to_landing=time_to_landing,
        latest=latest,
        recommendations=tuple(generate_recommendations(phase, ascent_rate, descent_rate, deviation, accuracy)),
        wind_estimates=tuple(estimate_wind_from_trajectory(positions)),
    )
    logger.debug("Live analysis: phase=%s conf=%.2f asc=%s desc=%s dev=%.0fm overall=%.2f",
                 phase.phase.value, phase.confidence, ascent_rate, descent_rate,
                 deviation.distance, accuracy.overall)

    if session is not None:
        session.record(comparison)
    return comparison
