"""
Flask WSGI application serving the REST API for HABPREDICT.

Provides endpoints for:
- Trajectory prediction (/sim/predict)
- Balloon performance calculator and goal mode (/sim/calculate, /sim/goal)
- Live flight comparison against a prediction (/sim/live)
- Simulated beacon feeds for testing (/sim/dummy)
- Server and cache status (/sim/status, /sim/cache-status)

All simulation endpoints take JSON bodies. The wind forecast is either sent
inline as an hourly mapping under "forecast" or loaded from the file named by
HABPREDICT_FORECAST.
"""
from flask import Flask, jsonify, request, make_response
from flask_cors import CORS
from flask_compress import Compress
import threading
from collections import OrderedDict
from datetime import datetime, timezone
from functools import wraps
import os
import logging

import simulate
from windfile import WindForecast, to_timestamp
from habpredict import LaunchParameters
from habpredict.live import LiveSession, ObservedPosition
from habpredict.performance import CalculatorParams, Gas
from dummyflight import DummyFlight, DummyFlightConfig, PERTURBATIONS

app = Flask(__name__)
CORS(app)
Compress(app)

# Suppress /sim/status access logs (polled by the frontend, creates log spam)
class StatusLogFilter(logging.Filter):
    def filter(self, record):
        return '/sim/status' not in record.getMessage()

logging.getLogger('werkzeug').addFilter(StatusLogFilter())
logging.getLogger('gunicorn.access').addFilter(StatusLogFilter())

MAX_LIVE_SESSIONS = 100
MAX_POSITIONS = 5000
MAX_DUMMY_OVERRUN = 6 * 3600  # s past the predicted landing
_live_sessions = OrderedDict()
_live_lock = threading.Lock()

def _log(msg, level='info', worker_pid=None):
    """Print to stdout with optional worker PID prefix."""
    if worker_pid is not None:
        msg = f"[WORKER {worker_pid}] {msg}"
    prefix = {
        'info': 'INFO',
        'warning': 'WARNING',
        'error': 'ERROR',
        'debug': 'DEBUG'
    }.get(level, 'INFO')
    print(f"{prefix}: {msg}", flush=True)

def error_response(message, status):
    return make_response(jsonify({"error": message}), status)

def get_arg(args, key, type_func=float, default=None, required=True):
    """Parse and validate request argument with type conversion and NaN/Inf checks."""
    val = args.get(key, default)
    if required and val is None:
        raise ValueError(f"Missing required parameter: {key}")
    if val is None:
        return None
    try:
        result = type_func(val)
        # Reject NaN/Inf: comparisons with inf always return False, so this catches all non-finite values
        if isinstance(result, (int, float)) and not (float('-inf') < result < float('inf')):
            raise ValueError(f"Parameter {key} is not a finite number")
        return result
    except (ValueError, TypeError) as e:
        raise ValueError(f"Invalid parameter {key}: {e}")

def get_body():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body

def parse_datetime(args):
    """Launch time from 'launch_time' (ISO 8601) or 'timestamp' (epoch seconds), as UTC."""
    if args.get('launch_time') is not None:
        try:
            return datetime.fromtimestamp(to_timestamp(str(args['launch_time'])), tz=timezone.utc)
        except ValueError as e:
            raise ValueError(f"Invalid parameter launch_time: {e}")
    return datetime.fromtimestamp(get_arg(args, 'timestamp'), tz=timezone.utc)

def parse_launch(args):
    """LaunchParameters from a request mapping; raises ValueError on bad input."""
    params = LaunchParameters(
        lat=get_arg(args, 'lat'),
        lon=get_arg(args, 'lon'),
        launch_time=parse_datetime(args),
        launch_altitude=get_arg(args, 'launch_altitude', default=0.0),
        ascent_rate=get_arg(args, 'ascent_rate'),
        burst_altitude=get_arg(args, 'burst_altitude'),
        descent_rate=get_arg(args, 'descent_rate'),
    )
    if not (-1000 <= params.launch_altitude < 50000):
        raise ValueError("Launch altitude must be between -1000 and 50000 meters")
    if not (params.burst_altitude < 50000):
        raise ValueError("Burst altitude must be below 50000 meters")
    if not (0 < params.ascent_rate <= 20):
        raise ValueError("Ascent rate must be between 0 and 20 m/s")
    if not (0 < params.descent_rate <= 50):
        raise ValueError("Descent rate must be between 0 and 50 m/s")
    return params.validate()

def get_forecast(body):
    """Inline hourly forecast from the request, else the configured forecast file."""
    inline = body.get('forecast')
    if inline is not None:
        if not isinstance(inline, dict):
            raise ValueError("forecast must be an hourly mapping")
        return WindForecast.from_hourly(inline, speed_unit=body.get('speed_unit', 'ms'))
    return simulate.load_forecast()

def parse_positions(body):
    positions = body.get('positions')
    if not isinstance(positions, list):
        raise ValueError("positions must be a list")
    if len(positions) > MAX_POSITIONS:
        raise ValueError(f"At most {MAX_POSITIONS} positions are accepted")
    try:
        return [ObservedPosition.from_dict(p) for p in positions]
    except (TypeError, AttributeError) as e:
        raise ValueError(f"Invalid position: {e}")

def get_live_session(flight_id):
    """Per-flight LiveSession, kept for the most recent MAX_LIVE_SESSIONS flights."""
    with _live_lock:
        session = _live_sessions.pop(flight_id, None) or LiveSession()
        _live_sessions[flight_id] = session
        while len(_live_sessions) > MAX_LIVE_SESSIONS:
            _live_sessions.popitem(last=False)
        return session

def handle_errors(name):
    """Map exceptions from a route to JSON error responses."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            try:
                return f(*args, **kwargs)
            except (ValueError, KeyError) as e:
                message = e.args[0] if isinstance(e, KeyError) and e.args else str(e)
                return error_response(str(message), 400)
            except FileNotFoundError as e:
                _log(f"Forecast not available: {e}", 'warning', os.getpid())
                return error_response("Wind forecast not available. Send one inline or configure HABPREDICT_FORECAST.", 404)
            except Exception as e:
                _log(f"{name} failed: {e}", 'error', os.getpid())
                return error_response(f"{name.capitalize()} failed", 500)
        return decorated_function
    return decorator


@app.route('/sim/status')
def status():
    """Status endpoint - fast and non-blocking. Access logging is suppressed for it."""
    return "Ready"

@app.route('/sim/cache-status')
def cache_status():
    status = simulate.cache_status()
    with _live_lock:
        status["live_sessions"] = len(_live_sessions)
    status["scenarios"] = sorted(PERTURBATIONS)
    return jsonify(status)

@app.route('/sim/predict', methods=['POST'])
@handle_errors('prediction')
def predict():
    body = get_body()
    params = parse_launch(body)
    forecast = get_forecast(body)
    step = get_arg(body, 'step', required=False)
    if step is not None and not (0 < step <= 600):
        raise ValueError("Step must be between 0 and 600 seconds")
    _log(f"Predict: lat={params.lat}, lon={params.lon}, alt={params.launch_altitude}, "
         f"burst={params.burst_altitude}, ascent={params.ascent_rate}m/s, descent={params.descent_rate}m/s",
         worker_pid=os.getpid())
    result = simulate.run_simulation(params, forecast, step_size=step)
    return jsonify(result.to_dict())

@app.route('/sim/calculate', methods=['POST'])
@handle_errors('calculation')
def calculate():
    body = get_body()
    params = CalculatorParams(
        payload_weight=get_arg(body, 'payload_weight'),
        balloon_weight=get_arg(body, 'balloon_weight'),
        parachute_weight=get_arg(body, 'parachute_weight', default=0.0),
        neck_lift=get_arg(body, 'neck_lift'),
        gas=Gas(body.get('gas', 'Helium')),
    )
    breakdown = simulate.calculate_balloon_performance(params, get_arg(body, 'launch_altitude', default=0.0))
    if breakdown is None:
        return error_response("No valid ascent rate / burst altitude for these inputs", 422)
    return jsonify(breakdown.to_dict())

@app.route('/sim/goal', methods=['POST'])
@handle_errors('goal calculation')
def goal():
    body = get_body()
    result = simulate.calculate_goal(
        get_arg(body, 'target_burst_altitude'),
        get_arg(body, 'balloon_weight'),
        get_arg(body, 'parachute_weight', default=0.0),
        gas=Gas(body.get('gas', 'Helium')),
        launch_altitude=get_arg(body, 'launch_altitude', default=0.0),
    )
    return jsonify({
        "target_burst_altitude": result.target_burst_altitude,
        "options": [vars(o).copy() for o in result.options],
        "warnings": result.warnings,
    })

@app.route('/sim/live', methods=['POST'])
@handle_errors('live analysis')
def live_analysis():
    body = get_body()
    params = parse_launch(body.get('launch') or {})
    forecast = get_forecast(body)
    positions = parse_positions(body)
    now = get_arg(body, 'now', required=False)
    original = simulate.run_simulation(params, forecast)

    flight_id = body.get('flight_id')
    session = get_live_session(str(flight_id)) if flight_id is not None else None
    comparison = simulate.analyze_live_flight(positions, original, params, forecast, session=session, now=now)
    if comparison is None:
        return error_response("No positions supplied", 400)
    return jsonify(comparison.to_dict())

@app.route('/sim/dummy', methods=['POST'])
@handle_errors('dummy flight')
def dummy_flight():
    body = get_body()
    params = parse_launch(body.get('launch') or {})
    forecast = get_forecast(body)
    config = DummyFlightConfig(
        scenario=body.get('scenario', 'standard'),
        beacon_interval=get_arg(body, 'beacon_interval', default=120.0),
        noise_level=get_arg(body, 'noise_level', default=0.3),
        seed=get_arg(body, 'seed', type_func=int, default=0),
    )
    if not (0 <= config.noise_level <= 1):
        raise ValueError("noise_level must be between 0 and 1")
    original = simulate.run_simulation(params, forecast)
    elapsed = get_arg(body, 'elapsed', default=original.total_time)
    if not (0 <= elapsed <= original.total_time + MAX_DUMMY_OVERRUN):
        raise ValueError(f"elapsed must be between 0 and {original.total_time + MAX_DUMMY_OVERRUN:.0f} s")

    flight = DummyFlight(config, params, original)
    positions = flight.generate_positions(elapsed)
    response = {"positions": [p.to_dict() for p in positions]}
    if body.get('analyze'):
        now = params.timestamp + elapsed
        comparison = simulate.analyze_live_flight(positions, original, params, forecast, now=now)
        response["comparison"] = comparison.to_dict() if comparison is not None else None
    return jsonify(response)


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get('PORT', 8000)))
