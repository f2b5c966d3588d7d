"""
Tests for solar_time.py module.

To run these tests:
    pytest tests/test_solar_time.py -v
"""

import datetime
import pytest
import pandas as pd
from pathlib import Path
import sys

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dawn_dusk.exceptions import JoinError
from dawn_dusk.solar_time import (
    twilight_times,
    clock_to_hours,
    annotate_solar_times,
    restrict_recording_window,
    median_start_times
)


class FixedEphemeris:
    """Twilight at 06:00 / 06:30 / 18:00 / 18:30 everywhere, recording each call."""

    def __init__(self):
        self.calls = []

    def __call__(self, date, latitude, longitude, timezone):
        self.calls.append((date, latitude, longitude, timezone))
        return {'nautical_dawn': 6.0, 'sunrise': 6.5, 'sunset': 18.0, 'nautical_dusk': 18.5}


@pytest.fixture
def sites():
    return pd.DataFrame({
        'site_id': ['S1', 'S2'],
        'latitude': [11.40, 11.45],
        'longitude': [76.70, 76.75],
        'timezone': ['Asia/Kolkata', 'Asia/Kolkata'],
    })


@pytest.fixture
def observations():
    return pd.DataFrame({
        'site_id': ['S1', 'S1', 'S1', 'S2', 'S2'],
        'date': ['2021-03-01', '2021-03-01', '2021-03-01', '2021-03-02', '2021-03-02'],
        'time_of_day': ['dawn', 'dawn', 'dusk', 'dusk', 'dawn'],
        'start_time': ['06:30', '08:00', '18:00', '17:00', '06:00'],
        'eBird_code': ['pubbar1', 'pubbar1', 'pubbar1', 'whrsha', 'whrsha'],
        'number': [1, 2, 1, 1, 3],
    })


class TestClockToHours:
    """Test the clock_to_hours function."""

    def test_string_formats(self):
        assert clock_to_hours('06:30') == pytest.approx(6.5)
        assert clock_to_hours('18:15:36') == pytest.approx(18.26)

    def test_time_objects_and_numbers(self):
        assert clock_to_hours(datetime.time(5, 45)) == pytest.approx(5.75)
        assert clock_to_hours(7.25) == pytest.approx(7.25)

    def test_invalid_string(self):
        with pytest.raises(ValueError):
            clock_to_hours('half past six')


class TestAnnotateSolarTimes:
    """Test solar offsets with a fixed ephemeris."""

    def test_offsets(self, observations, sites):
        """Test time from dawn, time to dusk and the unified offset."""
        annotated = annotate_solar_times(observations, sites, ephemeris=FixedEphemeris())

        assert annotated['time_from_dawn'].iloc[0] == pytest.approx(0.5)
        assert annotated['time_from_dawn'].iloc[1] == pytest.approx(2.0)
        # 18:00 start + 10 min segment, dusk at 18:30
        assert annotated['time_to_dusk'].iloc[2] == pytest.approx(1 / 3)
        assert list(annotated['startTime_offset'].round(4)) == [0.5, 2.0, 0.3333, 1.3333, 0.0]

    def test_dusk_reference_start(self, observations, sites):
        annotated = annotate_solar_times(
            observations, sites, dusk_reference='start', ephemeris=FixedEphemeris())

        assert annotated['time_to_dusk'].iloc[2] == pytest.approx(0.5)

    def test_one_ephemeris_call_per_site_date(self, observations, sites):
        ephemeris = FixedEphemeris()

        annotate_solar_times(observations, sites, ephemeris=ephemeris)

        assert len(ephemeris.calls) == 2
        assert ephemeris.calls[0][3] == 'Asia/Kolkata'

    def test_unknown_site_raises(self, observations, sites):
        with pytest.raises(JoinError):
            annotate_solar_times(observations, sites[sites['site_id'] == 'S1'], ephemeris=FixedEphemeris())

    def test_timezone_fallback(self, observations, sites):
        """Test that sites without a timezone use the timezone argument."""
        no_tz = sites.drop(columns=['timezone'])
        ephemeris = FixedEphemeris()

        annotate_solar_times(observations, no_tz, timezone='Asia/Kolkata', ephemeris=ephemeris)

        assert all(call[3] == 'Asia/Kolkata' for call in ephemeris.calls)

    def test_missing_timezone_raises(self, observations, sites):
        with pytest.raises(ValueError, match="timezone"):
            annotate_solar_times(observations, sites.drop(columns=['timezone']), ephemeris=FixedEphemeris())


class TestWindowAndMedians:
    """Test the recording window and median offsets."""

    def test_restrict_recording_window(self, observations, sites):
        annotated = annotate_solar_times(observations, sites, ephemeris=FixedEphemeris())

        restricted = restrict_recording_window(annotated, 1.0)

        assert len(restricted) == 3
        assert restricted['startTime_offset'].between(0, 1.0).all()

    def test_invalid_window(self, observations, sites):
        annotated = annotate_solar_times(observations, sites, ephemeris=FixedEphemeris())

        with pytest.raises(ValueError):
            restrict_recording_window(annotated, 0)

    def test_median_start_times(self, observations, sites):
        annotated = annotate_solar_times(observations, sites, ephemeris=FixedEphemeris())

        medians = median_start_times(annotated).set_index(['eBird_code', 'time_of_day'])

        assert medians.loc[('pubbar1', 'dawn'), 'median_startTime'] == pytest.approx(1.25)
        assert medians.loc[('whrsha', 'dawn'), 'median_startTime'] == pytest.approx(0.0)


class TestTwilightTimes:
    """Sanity checks of the astral-based ephemeris."""

    def test_order_of_boundaries_in_the_nilgiris(self):
        times = twilight_times('2021-03-01', 11.4, 76.7, 'Asia/Kolkata')

        assert times['nautical_dawn'] < times['sunrise'] < times['sunset'] < times['nautical_dusk']
        assert 5.0 < times['nautical_dawn'] < 7.0
        assert 18.0 < times['nautical_dusk'] < 20.0
