"""
Unit tests for wind forecast loading and sampling.
"""

import json
import math

import numpy as np
import pytest
from atmosphere import altitude_to_pressure
from windfile import WindForecast, to_timestamp, wrap_angle, KMH_TO_MS

START = 1717243200.0  # 2024-06-01T12:00:00Z
LEVELS = (1000, 500, 100)


def make_forecast(values, timestamps=(START,)):
    """values: per instant, per level (speed, direction) or None."""
    data = np.full((len(timestamps), len(LEVELS), 2), np.nan)
    for i, instant in enumerate(values):
        for j, value in enumerate(instant):
            if value is not None:
                data[i, j] = value
    return WindForecast(timestamps, LEVELS, data)


class TestTimestamps:

    @pytest.mark.unit
    def test_iso_and_numbers(self):
        assert to_timestamp("2024-06-01T12:00:00Z") == START
        assert to_timestamp("2024-06-01T12:00:00") == START
        assert to_timestamp(START) == START

    @pytest.mark.unit
    def test_wrap_angle(self):
        assert wrap_angle(350) == -10
        assert wrap_angle(-350) == 10
        assert wrap_angle(180) == 180


class TestConstruction:

    @pytest.mark.unit
    def test_rejects_decreasing_time(self):
        with pytest.raises(ValueError):
            WindForecast([START + 3600, START], LEVELS, np.zeros((2, 3, 2)))

    @pytest.mark.unit
    def test_rejects_bad_shape(self):
        with pytest.raises(ValueError):
            WindForecast([START], LEVELS, np.zeros((1, 2, 2)))

    @pytest.mark.unit
    def test_rejects_empty(self):
        with pytest.raises(ValueError):
            WindForecast([], LEVELS, np.zeros((0, 3, 2)))

    @pytest.mark.unit
    def test_from_hourly_kmh(self):
        hourly = {"hourly": {
            "time": ["2024-06-01T12:00", "2024-06-01T13:00"],
            "windspeed_500hPa": [36.0, None],
            "winddirection_500hPa": [90.0, 100.0],
        }}
        forecast = WindForecast.from_hourly(hourly, levels=LEVELS, speed_unit="kmh")
        assert forecast.timestamps[0] == START
        assert forecast.data[0, 1, 0] == pytest.approx(36.0 * KMH_TO_MS)
        assert forecast.data[0, 1, 1] == 90.0
        assert np.isnan(forecast.data[1, 1, 0])
        assert np.isnan(forecast.data[0, 0]).all()

    @pytest.mark.unit
    def test_from_hourly_requires_time(self):
        with pytest.raises(ValueError):
            WindForecast.from_hourly({"windspeed_500hPa": [1.0]})

    @pytest.mark.unit
    def test_save_and_load_npz(self, tmp_path):
        forecast = make_forecast([[(5.0, 10.0), (10.0, 20.0), (15.0, 30.0)]])
        path = tmp_path / "forecast.npz"
        forecast.save(path)
        loaded = WindForecast.load(path)
        assert loaded.fingerprint() == forecast.fingerprint()

    @pytest.mark.unit
    def test_load_json(self, tmp_path):
        path = tmp_path / "forecast.json"
        path.write_text(json.dumps({"time": ["2024-06-01T12:00"],
                                    "windspeed_500hPa": [12.0], "winddirection_500hPa": [45.0]}))
        forecast = WindForecast.load(path)
        assert forecast.get(5500, 0, START)[0] == pytest.approx(12.0)

    @pytest.mark.unit
    def test_load_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            WindForecast.load(tmp_path / "missing.npz")


class TestSampling:

    @pytest.mark.unit
    def test_exact_level(self):
        forecast = make_forecast([[(5.0, 10.0), (10.0, 20.0), (15.0, 30.0)]])
        altitude = 5574.0  # ~500 hPa
        speed, direction = forecast.get(altitude, 0, START)
        assert 9.5 < speed < 10.5
        assert 19 < direction < 21

    @pytest.mark.unit
    def test_interpolation_stays_between_brackets(self):
        forecast = make_forecast([[(5.0, 10.0), (10.0, 20.0), (15.0, 30.0)]])
        for altitude in range(200, 16000, 500):
            speed, _ = forecast.get(altitude, 0, START)
            assert 5.0 <= speed <= 15.0

    @pytest.mark.unit
    def test_weight_in_pressure(self):
        forecast = make_forecast([[(0.0, 0.0), (10.0, 0.0), None]])
        altitude = 3000.0
        pressure = altitude_to_pressure(altitude)
        expected = 10.0 * (1000 - pressure) / (1000 - 500)
        speed, _ = forecast.get(altitude, 0, START)
        assert speed == pytest.approx(expected, rel=1e-3)

    @pytest.mark.unit
    def test_direction_shortest_arc(self):
        forecast = make_forecast([[(10.0, 350.0), (10.0, 10.0), None]])
        altitude = 3000.0
        _, direction = forecast.get(altitude, 0, START)
        assert direction >= 350.0 or direction <= 10.0

    @pytest.mark.unit
    def test_single_bracket_no_extrapolation(self):
        forecast = make_forecast([[(5.0, 10.0), (10.0, 20.0), (15.0, 30.0)]])
        # Above the 100 hPa level only the upper bracket is missing
        assert forecast.get(30000, 0, START) == (15.0, 30.0)
        # Below 1000 hPa only the lower bracket is missing
        assert forecast.get(-200, 0, START) == (5.0, 10.0)

    @pytest.mark.unit
    def test_missing_levels_skipped(self):
        forecast = make_forecast([[(5.0, 10.0), None, (15.0, 30.0)]])
        speed, _ = forecast.get(5500, 0, START)
        assert 5.0 < speed < 15.0

    @pytest.mark.unit
    def test_time_slice_latest_not_after(self):
        forecast = make_forecast(
            [[(1.0, 0.0)] * 3, [(2.0, 0.0)] * 3],
            timestamps=(START, START + 3600),
        )
        assert forecast.get(1000, 3599, START)[0] == 1.0
        assert forecast.get(1000, 3600, START)[0] == 2.0
        assert forecast.get(1000, -600, START)[0] == 1.0
        assert forecast.get(1000, 99999, START)[0] == 2.0

    @pytest.mark.unit
    def test_empty_slice_uses_nearest_populated(self):
        forecast = make_forecast(
            [[(1.0, 0.0)] * 3, [None] * 3],
            timestamps=(START, START + 3600),
        )
        assert forecast.get(1000, 4000, START)[0] == 1.0

    @pytest.mark.unit
    def test_empty_forecast_is_calm(self):
        forecast = make_forecast([[None] * 3])
        assert forecast.get(1000, 0, START) == (0.0, 0.0)
        assert forecast.uv(1000, 0, START) == (0.0, 0.0)

    @pytest.mark.unit
    def test_uv_blows_away_from_direction(self):
        north = WindForecast.constant(10.0, 0.0, start=START)
        u, v = north.uv(5000, 0, START)
        assert u == pytest.approx(0.0, abs=1e-9)
        assert v == pytest.approx(-10.0)

        west = WindForecast.constant(10.0, 270.0, start=START)
        u, v = west.uv(5000, 0, START)
        assert u == pytest.approx(10.0)
        assert v == pytest.approx(0.0, abs=1e-9)

    @pytest.mark.unit
    def test_fingerprint_changes_with_data(self):
        a = WindForecast.constant(10.0, 0.0, start=START)
        b = WindForecast.constant(10.0, 5.0, start=START)
        assert a.fingerprint() != b.fingerprint()
        assert not math.isnan(a.get(0, 0, START)[0])
