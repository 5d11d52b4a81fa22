"""
Unit tests for live flight analysis.
Beacon reports are taken straight from a predicted path so the expected
phase, rates and scores are known exactly.
"""

import pytest
from conftest import observe
from habpredict.live import (
    LiveAnalysisConfig,
    LiveSession,
    ObservedPosition,
    Phase,
    analyze_live_flight,
    detect_flight_phase,
    estimate_rates,
    estimate_wind_from_trajectory,
    normalize_positions,
)


@pytest.fixture
def reports(drifting_prediction, launch_params):
    """One report every 120 s along the prediction, launch to landing."""
    return observe(drifting_prediction, launch_params)


def burst_report_index(reports, prediction, params):
    return next(i for i, r in enumerate(reports) if r.timestamp - params.timestamp > prediction.burst_time)


class TestObservedPosition:

    @pytest.mark.unit
    def test_from_dict_aprs_keys(self):
        p = ObservedPosition.from_dict({"time": 100, "lat": 1, "lng": 2, "altitude": 300, "comment": "ASC"})
        assert (p.timestamp, p.lat, p.lon, p.altitude, p.speed, p.comment) == (100.0, 1.0, 2.0, 300.0, None, "ASC")

    @pytest.mark.unit
    def test_from_dict_requires_position(self):
        with pytest.raises(ValueError):
            ObservedPosition.from_dict({"timestamp": 100, "lat": 1})

    @pytest.mark.unit
    def test_normalize_sorts_and_keeps_last_duplicate(self):
        a = ObservedPosition(20, 0, 0, 100)
        b = ObservedPosition(10, 0, 0, 50)
        c = ObservedPosition(20, 0, 0, 120)
        assert normalize_positions([a, b, c]) == [b, c]


class TestExactPath:

    @pytest.mark.unit
    def test_scores_are_perfect(self, reports, drifting_prediction, launch_params, west_wind_forecast):
        for k in range(1, len(reports) + 1, 7):
            comparison = analyze_live_flight(reports[:k], drifting_prediction, launch_params, west_wind_forecast)
            assert comparison.deviation.distance == pytest.approx(0.0, abs=1e-6)
            assert comparison.deviation.altitude_difference == pytest.approx(0.0, abs=1e-6)
            assert comparison.accuracy.trajectory == pytest.approx(1.0)
            assert comparison.accuracy.altitude == pytest.approx(1.0)
            assert comparison.accuracy.timing == pytest.approx(1.0, abs=0.01)
            assert comparison.accuracy.overall == pytest.approx(1.0, abs=0.01)

    @pytest.mark.unit
    def test_phases_follow_prediction(self, reports, drifting_prediction, launch_params):
        burst_idx = burst_report_index(reports, drifting_prediction, launch_params)
        for k in range(1, len(reports) + 1):
            phase = detect_flight_phase(reports[:k], drifting_prediction, launch_params).phase
            latest = reports[k - 1]
            if k - 1 < burst_idx:
                assert phase is Phase.ASCENT, latest
            elif k - 1 == burst_idx:
                # First report after burst may still be read as the burst itself
                assert phase in (Phase.BURST, Phase.DESCENT), latest
            else:
                assert phase is Phase.DESCENT, latest

    @pytest.mark.unit
    def test_first_report_uses_timeline(self, reports, drifting_prediction, launch_params):
        phase = detect_flight_phase(reports[:1], drifting_prediction, launch_params)
        assert phase.phase is Phase.ASCENT
        assert phase.confidence == pytest.approx(0.3)

    @pytest.mark.unit
    def test_confidence_in_range(self, reports, drifting_prediction, launch_params):
        for k in (2, 10, 60, 80):
            confidence = detect_flight_phase(reports[:k], drifting_prediction, launch_params).confidence
            assert 0.0 <= confidence <= 1.0

    @pytest.mark.unit
    def test_rates_recovered(self, reports, drifting_prediction, launch_params):
        ascent, descent = estimate_rates(reports[:20], Phase.ASCENT)
        assert ascent == pytest.approx(5.0)
        assert descent is None

        ascent, descent = estimate_rates(reports[:80], Phase.DESCENT)
        assert ascent == pytest.approx(5.0)
        assert descent == pytest.approx(6.0)

    @pytest.mark.unit
    def test_rates_need_two_samples(self, reports):
        assert estimate_rates(reports[:1], Phase.ASCENT) == (None, None)

    @pytest.mark.unit
    def test_updated_prediction_matches_original_landing(self, reports, drifting_prediction, launch_params,
                                                        west_wind_forecast):
        comparison = analyze_live_flight(reports[:60], drifting_prediction, launch_params, west_wind_forecast)
        landing = comparison.updated_prediction.landing_point
        assert landing.time == pytest.approx(drifting_prediction.total_time)
        assert landing.location.distance(drifting_prediction.landing_point.location) < 100
        assert comparison.time_to_landing == pytest.approx(
            drifting_prediction.total_time - (reports[59].timestamp - launch_params.timestamp))
        assert comparison.burst_altitude == pytest.approx(max(r.altitude for r in reports[:60]))

    @pytest.mark.unit
    def test_updated_prediction_uses_measured_ascent(self, drifting_prediction, launch_params, west_wind_forecast):
        """Balloon climbing at 4 m/s instead of 5: landing comes later than predicted."""
        t0 = launch_params.timestamp
        slow = [ObservedPosition(t0 + t, 40.0, -105.0, 1600.0 + 4.0 * t) for t in range(0, 1201, 120)]
        comparison = analyze_live_flight(slow, drifting_prediction, launch_params, west_wind_forecast)
        assert comparison.ascent_rate == pytest.approx(4.0)
        assert comparison.updated_prediction.total_time > drifting_prediction.total_time

    @pytest.mark.unit
    def test_no_positions(self, drifting_prediction, launch_params, west_wind_forecast):
        assert analyze_live_flight([], drifting_prediction, launch_params, west_wind_forecast) is None

    @pytest.mark.unit
    def test_idempotent(self, reports, drifting_prediction, launch_params, west_wind_forecast):
        a = analyze_live_flight(reports[:50], drifting_prediction, launch_params, west_wind_forecast)
        b = analyze_live_flight(reports[:50], drifting_prediction, launch_params, west_wind_forecast)
        assert a.to_dict() == b.to_dict()


class TestLanding:

    @pytest.mark.unit
    def test_resting_on_ground(self, reports, drifting_prediction, launch_params, west_wind_forecast):
        last = reports[-1]
        resting = reports + [
            ObservedPosition(last.timestamp + 120, last.lat, last.lon, 0.0),
            ObservedPosition(last.timestamp + 240, last.lat, last.lon, 0.0),
        ]
        comparison = analyze_live_flight(resting, drifting_prediction, launch_params, west_wind_forecast)
        assert comparison.phase.phase is Phase.LANDED
        assert not comparison.phase.assumed_landed
        assert len(comparison.updated_prediction.path) == 1
        assert comparison.time_to_landing == 0.0
        assert comparison.accuracy.timing == pytest.approx(1.0)

    @pytest.mark.unit
    def test_assumed_landing_after_missed_beacons(self, reports, drifting_prediction, launch_params,
                                                 west_wind_forecast):
        low = next(i for i, r in enumerate(reports) if r.altitude < 1000 and i > 50)
        track = reports[:low + 1]
        last = track[-1]
        config = LiveAnalysisConfig()

        still_flying = analyze_live_flight(track, drifting_prediction, launch_params, west_wind_forecast,
                                           now=last.timestamp + 2 * config.beacon_interval)
        assert still_flying.phase.phase is Phase.DESCENT

        session = LiveSession()
        lost = analyze_live_flight(track, drifting_prediction, launch_params, west_wind_forecast,
                                   session=session, now=last.timestamp + 3 * config.beacon_interval)
        assert lost.phase.phase is Phase.LANDED
        assert lost.phase.assumed_landed
        assert lost.updated_prediction.landing_point.alt == 0.0
        assert session.assumed_landed
        assert session.assumed_landing_location is not None
        assert any("Beacon lost" in r for r in lost.recommendations)

        # Same reports, no clock: the session remembers the beacon loss
        again = analyze_live_flight(track, drifting_prediction, launch_params, west_wind_forecast, session=session)
        assert again.phase.assumed_landed

    @pytest.mark.unit
    def test_not_assumed_landed_high_up(self, reports, drifting_prediction, launch_params):
        track = reports[:30]
        phase = detect_flight_phase(track, drifting_prediction, launch_params, now=track[-1].timestamp + 3600)
        assert not phase.assumed_landed


class TestSession:

    @pytest.mark.unit
    def test_is_material(self):
        session = LiveSession()
        p = ObservedPosition(100, 40.0, -105.0, 1000.0)
        assert session.is_material(p)
        session.last_processed = p
        assert not session.is_material(ObservedPosition(100, 40.0, -105.0, 1002.0))
        assert session.is_material(ObservedPosition(100, 40.0, -105.0, 1010.0))
        assert session.is_material(ObservedPosition(100, 40.001, -105.0, 1000.0))
        assert session.is_material(ObservedPosition(220, 40.0, -105.0, 1000.0))


class TestWindEstimates:

    @pytest.mark.unit
    def test_west_wind_recovered(self, reports):
        estimates = estimate_wind_from_trajectory(reports[1:20])
        assert len(estimates) == 17
        for estimate in estimates:
            assert estimate.speed == pytest.approx(8.0, rel=0.01)
            assert estimate.direction == pytest.approx(270.0, abs=0.5)
