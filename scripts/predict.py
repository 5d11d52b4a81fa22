#!/usr/bin/env python3
"""
Command-line trajectory prediction.

Loads a wind forecast (.npz archive or hourly .json mapping), runs one
ascent/burst/descent prediction and prints the launch, burst and landing
points, or the whole result as JSON with --json.

Example:
    python scripts/predict.py forecast.json --lat 40.0 --lon -105.0 \\
        --time 2024-06-01T12:00:00Z --alt 1600 --asc 5 --burst 30000 --desc 6
"""
import sys
import json
import logging
import argparse
from pathlib import Path

# Add parent directory to path to import root modules
sys.path.insert(0, str(Path(__file__).parent.parent))

import simulate
from windfile import WindForecast, to_timestamp
from habpredict import LaunchParameters
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


def build_parser():
    parser = argparse.ArgumentParser(description="High-altitude balloon trajectory prediction")
    parser.add_argument("forecast", help="Wind forecast file (.npz or hourly .json)")
    parser.add_argument("--lat", type=float, required=True, help="Launch latitude (deg)")
    parser.add_argument("--lon", type=float, required=True, help="Launch longitude (deg)")
    parser.add_argument("--time", required=True, help="Launch time, ISO 8601 (UTC if no offset) or epoch seconds")
    parser.add_argument("--alt", type=float, default=0.0, help="Launch altitude in metres (default: 0)")
    parser.add_argument("--asc", type=float, required=True, help="Ascent rate in m/s")
    parser.add_argument("--burst", type=float, required=True, help="Burst altitude in metres")
    parser.add_argument("--desc", type=float, required=True, help="Descent rate in m/s")
    parser.add_argument("--step", type=float, default=None,
                        help=f"Integration step in seconds (default: {simulate.STEP_SIZE:g})")
    parser.add_argument("--json", action="store_true", help="Print the full prediction as JSON")
    parser.add_argument("--logfile", default=None, help="Log file path (default: stderr)")
    return parser


def parse_time(value):
    try:
        timestamp = float(value)
    except ValueError:
        timestamp = to_timestamp(value)
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def fmt_point(label, point):
    return f"{label:<8} t={point.time:>7.0f}s  lat={point.lat:9.5f}  lon={point.lon:10.5f}  alt={point.alt:8.0f}m"


def main(argv=None):
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        filename=args.logfile,
        level=logging.INFO,
        format='%(asctime)s.%(msecs)03d [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    try:
        forecast = WindForecast.load(args.forecast)
        params = LaunchParameters(
            lat=args.lat, lon=args.lon, launch_time=parse_time(args.time),
            launch_altitude=args.alt, ascent_rate=args.asc,
            burst_altitude=args.burst, descent_rate=args.desc,
        )
        result = simulate.run_simulation(params, forecast, step_size=args.step)
    except (ValueError, FileNotFoundError, RuntimeError) as e:
        logger.error("Prediction failed: %s", e)
        return 1

    if args.json:
        output = result.to_dict()
        output["launch"] = params.to_dict()
        print(json.dumps(output))
    else:
        print(fmt_point("launch", result.launch_point))
        print(fmt_point("burst", result.burst_point))
        print(fmt_point("landing", result.landing_point))
        print(f"flight time {result.total_time / 60:.1f} min, max altitude {result.max_altitude:.0f} m, "
              f"ground track {result.distance / 1000:.1f} km")
    return 0


if __name__ == "__main__":
    sys.exit(main())
