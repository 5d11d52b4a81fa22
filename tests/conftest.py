"""
Shared pytest fixtures for HABPREDICT tests.
"""

import os
import sys
from datetime import datetime, timezone

import pytest

# Add project root to path for imports
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from windfile import WindForecast
from habpredict import Balloon, LaunchParameters, Simulator
from habpredict.live import ObservedPosition

LAUNCH_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def launch_params():
    """Standard launch: Colorado, 1600 m, 5 m/s up to 30 km, 6 m/s down."""
    return LaunchParameters(
        lat=40.0,
        lon=-105.0,
        launch_time=LAUNCH_TIME,
        launch_altitude=1600.0,
        ascent_rate=5.0,
        burst_altitude=30000.0,
        descent_rate=6.0,
    )


@pytest.fixture
def calm_forecast():
    """No wind anywhere."""
    return WindForecast.constant(0.0, 0.0, start=LAUNCH_TIME)


@pytest.fixture
def north_wind_forecast():
    """10 m/s wind blowing from the north at every level."""
    return WindForecast.constant(10.0, 0.0, start=LAUNCH_TIME)


@pytest.fixture
def west_wind_forecast():
    """8 m/s wind blowing from the west at every level."""
    return WindForecast.constant(8.0, 270.0, start=LAUNCH_TIME)


def predict(params, forecast, step_size=10.0):
    balloon = Balloon(params.launch_time, (params.lat, params.lon), alt=params.launch_altitude)
    return Simulator(forecast, step_size=step_size).simulate(
        balloon, params.ascent_rate, params.burst_altitude, params.descent_rate)


@pytest.fixture
def drifting_prediction(launch_params, west_wind_forecast):
    """Prediction drifting east under the west wind forecast."""
    return predict(launch_params, west_wind_forecast)


def observe(prediction, params, every=12):
    """Beacon reports taken exactly from a predicted path (every `every` steps)."""
    return [
        ObservedPosition(timestamp=params.timestamp + p.time, lat=p.lat, lon=p.lon, altitude=p.alt)
        for p in prediction.path[::every]
    ]
