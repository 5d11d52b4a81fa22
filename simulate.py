"""
Simulation orchestrator with prediction caching.

Entry points used by the Flask app and the CLI: run_simulation() for a full
trajectory, calculate_balloon_performance() for the closed-form calculator
and analyze_live_flight() for comparing telemetry with a prediction. Also
keeps loaded wind forecasts and finished predictions in small TTL-bounded
caches keyed by md5 of the inputs.
"""
import hashlib
import logging
import os
import threading
import time
from pathlib import Path

from windfile import WindForecast
from habpredict import Balloon, LaunchParameters, Simulator, DEFAULT_MAX_STEPS, DEFAULT_STEP_SIZE
from habpredict import live
from habpredict.performance import calculate_flight_performance, calculate_goal_options

logger = logging.getLogger(__name__)

STEP_SIZE = float(os.environ.get('HABPREDICT_STEP_SIZE', DEFAULT_STEP_SIZE))
MAX_STEPS = int(os.environ.get('HABPREDICT_MAX_STEPS', DEFAULT_MAX_STEPS))
MAX_CACHE_SIZE = int(os.environ.get('HABPREDICT_CACHE_SIZE', 200))
CACHE_TTL = float(os.environ.get('HABPREDICT_CACHE_TTL', 3600))
FORECAST_PATH = os.environ.get('HABPREDICT_FORECAST')
MAX_FORECAST_CACHE = 4

_prediction_cache = {}
_cache_access_times = {}
_cache_lock = threading.Lock()

_forecast_cache = {}
_forecast_lock = threading.Lock()


def _cache_key(params, forecast, step):
    """Generate cache key from prediction parameters"""
    # Exact reprs: a hit must return the path these very inputs would produce
    values = (params.timestamp, params.lat, params.lon, params.launch_altitude,
              params.ascent_rate, params.burst_altitude, params.descent_rate, float(step))
    key_str = "_".join(repr(float(v)) for v in values) + f"_{forecast.fingerprint()}"
    return hashlib.md5(key_str.encode()).hexdigest()


def _get_cached_prediction(cache_key):
    """Get cached prediction if available and not expired"""
    with _cache_lock:
        if cache_key in _prediction_cache:
            if time.time() - _cache_access_times[cache_key] < CACHE_TTL:
                return _prediction_cache[cache_key]
            # Expired, remove
            del _prediction_cache[cache_key]
            del _cache_access_times[cache_key]
    return None


def _cache_prediction(cache_key, result):
    """Cache prediction result with TTL and size limit."""
    with _cache_lock:
        # Evict oldest if cache is full
        if len(_prediction_cache) >= MAX_CACHE_SIZE and _cache_access_times:
            oldest_key = min(_cache_access_times, key=_cache_access_times.get)
            del _prediction_cache[oldest_key]
            del _cache_access_times[oldest_key]
        _prediction_cache[cache_key] = result
        _cache_access_times[cache_key] = time.time()


def clear_cache():
    with _cache_lock:
        _prediction_cache.clear()
        _cache_access_times.clear()
    with _forecast_lock:
        _forecast_cache.clear()


def cache_status():
    with _cache_lock:
        predictions = len(_prediction_cache)
    with _forecast_lock:
        forecasts = len(_forecast_cache)
    return {"predictions": predictions, "max_predictions": MAX_CACHE_SIZE, "ttl": CACHE_TTL,
            "forecasts": forecasts}


def load_forecast(path=None):
    """
    Load (and keep) a wind forecast file.

    Defaults to HABPREDICT_FORECAST. Raises FileNotFoundError when no path is
    configured or the file does not exist.
    """
    path = path or FORECAST_PATH
    if not path:
        raise FileNotFoundError("No wind forecast configured (set HABPREDICT_FORECAST)")
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Wind forecast {path} not found")
    key = (str(path.resolve()), path.stat().st_mtime)
    with _forecast_lock:
        forecast = _forecast_cache.get(key)
        if forecast is not None:
            return forecast

    forecast = WindForecast.load(path)
    logger.info("Loaded wind forecast %s: %r", path, forecast)
    with _forecast_lock:
        if len(_forecast_cache) >= MAX_FORECAST_CACHE:
            _forecast_cache.pop(next(iter(_forecast_cache)))
        _forecast_cache[key] = forecast
    return forecast


def run_simulation(params: LaunchParameters, forecast: WindForecast, step_size=None):
    """
    Predict the full ascent/burst/descent trajectory for `params`.

    Parameters are validated first (ValueError). Results are cached; the
    returned PredictionResult is shared between callers and must not be mutated.
    """
    params.validate()
    step = STEP_SIZE if step_size is None else float(step_size)

    cache_key = _cache_key(params, forecast, step)
    cached_result = _get_cached_prediction(cache_key)
    if cached_result is not None:
        return cached_result

    func_start = time.time()
    try:
        simulator = Simulator(forecast, step_size=step, max_steps=MAX_STEPS)
        balloon = Balloon(params.launch_time, (params.lat, params.lon), alt=params.launch_altitude)
        result = simulator.simulate(balloon, params.ascent_rate, params.burst_altitude, params.descent_rate)
    except Exception as e:
        # Don't cache errors
        logger.error("run_simulation failed after %.2fs: %s", time.time() - func_start, e)
        raise

    logger.debug("Simulated %d points in %.3fs (landing %.4f, %.4f after %.0fs)",
                 len(result.path), time.time() - func_start,
                 result.landing_point.lat, result.landing_point.lon, result.total_time)
    _cache_prediction(cache_key, result)
    return result


def calculate_balloon_performance(params, launch_altitude):
    """Ascent rate and burst altitude from masses and neck lift, or None for invalid inputs."""
    return calculate_flight_performance(params, launch_altitude)


def calculate_goal(target_burst_altitude, balloon_weight, parachute_weight, gas='Helium', launch_altitude=0.0):
    return calculate_goal_options(target_burst_altitude, balloon_weight, parachute_weight,
                                  gas=gas, launch_altitude=launch_altitude)


def analyze_live_flight(positions, original, launch_params, forecast, session=None, config=None, now=None):
    """Compare live telemetry with `original`; None when there are no positions."""
    if config is None:
        config = live.LiveAnalysisConfig(step_size=STEP_SIZE, max_steps=MAX_STEPS)
    return live.analyze_live_flight(positions, original, launch_params, forecast,
                                    session=session, config=config, now=now)
