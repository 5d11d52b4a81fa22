"""
Unit tests for the command-line predictor (scripts/predict.py).
"""

import importlib.util
import json
import os

import pytest
from windfile import WindForecast

SCRIPT = os.path.join(os.path.dirname(__file__), "..", "..", "scripts", "predict.py")


@pytest.fixture(scope="module")
def cli():
    spec = importlib.util.spec_from_file_location("predict_cli", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def forecast_file(tmp_path):
    path = tmp_path / "forecast.npz"
    WindForecast.constant(10.0, 0.0, start="2024-06-01T12:00:00Z").save(path)
    return str(path)


ARGS = ["--lat", "40", "--lon", "-105", "--time", "2024-06-01T12:00:00Z",
        "--alt", "1600", "--asc", "5", "--burst", "30000", "--desc", "6", "--step", "60"]


class TestPredictCli:

    @pytest.mark.unit
    def test_json_output(self, cli, forecast_file, capsys):
        assert cli.main([forecast_file, *ARGS, "--json"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["landing_point"]["lat"] < 40.0
        assert data["launch"]["ascent_rate"] == 5.0

    @pytest.mark.unit
    def test_text_output(self, cli, forecast_file, capsys):
        assert cli.main([forecast_file, *ARGS]) == 0
        out = capsys.readouterr().out
        assert out.startswith("launch")
        assert "landing" in out

    @pytest.mark.unit
    def test_epoch_time(self, cli):
        assert cli.parse_time("1717243200").isoformat() == "2024-06-01T12:00:00+00:00"

    @pytest.mark.unit
    def test_invalid_rates_fail(self, cli, forecast_file):
        args = [a if a != "5" else "-5" for a in ARGS]
        assert cli.main([forecast_file, *args]) == 1

    @pytest.mark.unit
    def test_missing_forecast_fails(self, cli, tmp_path):
        assert cli.main([str(tmp_path / "nope.npz"), *ARGS]) == 1
