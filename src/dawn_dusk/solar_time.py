"""
Timing of recordings relative to local twilight.

Each observation is placed on a solar clock: hours after nautical dawn for
dawn recordings and hours before nautical dusk for dusk recordings. The
per-species median of that offset is the vocal timing predictor.
"""

import datetime
import pandas as pd
import numpy as np
from typing import Optional, Callable, Dict, Union

from astral import LocationInfo, Depression
from astral.sun import sun

from .exceptions import JoinError, require_columns


def _to_hours(moment: datetime.datetime) -> float:
    return moment.hour + moment.minute / 60 + moment.second / 3600


def twilight_times(
    date: Union[str, datetime.date],
    latitude: float,
    longitude: float,
    timezone: str
) -> Dict[str, float]:
    """
    Local twilight boundaries for one site and date.

    Args:
        date: Calendar date of the recording.
        latitude: Site latitude in decimal degrees.
        longitude: Site longitude in decimal degrees.
        timezone: IANA timezone name of the site (e.g. 'Asia/Kolkata').

    Returns:
        Dictionary with nautical_dawn, sunrise, sunset and nautical_dusk as
        fractional hours of local clock time
    """
    location = LocationInfo('site', '', timezone, latitude, longitude)
    day = pd.Timestamp(date).date()
    times = sun(
        location.observer,
        date=day,
        dawn_dusk_depression=Depression.NAUTICAL,
        tzinfo=location.tzinfo
    )
    return {
        'nautical_dawn': _to_hours(times['dawn']),
        'sunrise': _to_hours(times['sunrise']),
        'sunset': _to_hours(times['sunset']),
        'nautical_dusk': _to_hours(times['dusk']),
    }


def clock_to_hours(value) -> float:
    """
    Convert a clock time to fractional hours.

    Accepts 'HH:MM', 'HH:MM:SS', datetime.time objects and plain numbers
    (already in hours).
    """
    if pd.isna(value):
        return np.nan
    if isinstance(value, (datetime.time, datetime.datetime)):
        return value.hour + value.minute / 60 + value.second / 3600
    if isinstance(value, (int, float, np.number)):
        return float(value)

    parts = str(value).strip().split(':')
    if len(parts) not in (2, 3):
        raise ValueError(f"Cannot parse clock time: {value!r}")
    hours, minutes = int(parts[0]), int(parts[1])
    seconds = float(parts[2]) if len(parts) == 3 else 0.0
    return hours + minutes / 60 + seconds / 3600


def annotate_solar_times(
    observations: pd.DataFrame,
    sites: pd.DataFrame,
    segment_minutes: float = 10.0,
    dusk_reference: str = 'end',
    timezone: Optional[str] = None,
    ephemeris: Callable[..., Dict[str, float]] = twilight_times
) -> pd.DataFrame:
    """
    Add twilight boundaries and solar offsets to each observation.

    Args:
        observations: Detection table with site_id, date, start_time and
                     time_of_day columns.
        sites: Site table with site_id, latitude and longitude, and optionally
              a timezone column.
        segment_minutes: Length of one recording segment, used to derive the
                        segment end time.
        dusk_reference: 'end' measures time to dusk from the segment end,
                       'start' from the segment start.
        timezone: Timezone for sites without a timezone column value.
        ephemeris: Function (date, latitude, longitude, timezone) -> twilight
                  hours. Defaults to astral-based twilight_times.

    Returns:
        A copy of the observations with nautical_dawn, sunrise, sunset,
        nautical_dusk, start_hours, end_hours, time_from_dawn, time_to_dusk
        and startTime_offset columns.

    Raises:
        JoinError: If observations reference sites absent from the site table.
    """
    if dusk_reference not in ('end', 'start'):
        raise ValueError(f"Invalid dusk_reference value: {dusk_reference}")
    require_columns(observations, ['site_id', 'date', 'start_time', 'time_of_day'], 'observations')
    require_columns(sites, ['site_id', 'latitude', 'longitude'], 'sites')

    unknown = sorted(set(observations['site_id']) - set(sites['site_id']))
    if unknown:
        raise JoinError(
            f"Observations reference {len(unknown)} sites missing from the site table: {unknown}",
            context={'keys': unknown}
        )

    site_info = sites.drop_duplicates(subset=['site_id']).set_index('site_id')
    if 'timezone' not in site_info.columns:
        site_info['timezone'] = timezone
    elif timezone is not None:
        site_info['timezone'] = site_info['timezone'].fillna(timezone)
    if site_info['timezone'].isna().any():
        raise ValueError("No timezone available for some sites; pass timezone= or add a timezone column")

    occasions = observations[['site_id', 'date']].drop_duplicates()
    print(f"Computing twilight times for {len(occasions)} site/date combinations...")

    records = []
    for site_id, date in occasions.itertuples(index=False):
        info = site_info.loc[site_id]
        boundaries = ephemeris(date, info['latitude'], info['longitude'], info['timezone'])
        records.append({'site_id': site_id, 'date': date, **boundaries})
    boundaries_df = pd.DataFrame(
        records, columns=['site_id', 'date', 'nautical_dawn', 'sunrise', 'sunset', 'nautical_dusk'])

    annotated = observations.merge(boundaries_df, on=['site_id', 'date'], how='left')

    annotated['start_hours'] = annotated['start_time'].map(clock_to_hours)
    annotated['end_hours'] = annotated['start_hours'] + segment_minutes / 60
    dusk_point = annotated['end_hours'] if dusk_reference == 'end' else annotated['start_hours']

    annotated['time_from_dawn'] = annotated['start_hours'] - annotated['nautical_dawn']
    annotated['time_to_dusk'] = annotated['nautical_dusk'] - dusk_point
    annotated['startTime_offset'] = np.where(
        annotated['time_of_day'] == 'dawn',
        annotated['time_from_dawn'],
        annotated['time_to_dusk']
    )

    return annotated


def restrict_recording_window(annotated: pd.DataFrame, window_hours: float) -> pd.DataFrame:
    """
    Keep observations within a fixed window after dawn or before dusk.

    Run this before counting visits so both strata are sampled over the same
    elapsed time around their twilight boundary.

    Args:
        annotated: Output of annotate_solar_times.
        window_hours: Window length in hours.

    Returns:
        Filtered copy of the observations
    """
    if window_hours <= 0:
        raise ValueError(f"window_hours must be positive, got {window_hours}")
    require_columns(annotated, ['startTime_offset'], 'annotated observations')

    offset = annotated['startTime_offset']
    inside = (offset >= 0) & (offset <= window_hours)
    restricted = annotated[inside].copy()
    print(f"Kept {len(restricted)} of {len(annotated)} observations within "
          f"{window_hours} h of the twilight boundary")
    return restricted


def median_start_times(annotated: pd.DataFrame) -> pd.DataFrame:
    """
    Median solar offset per species and time of day.

    Returns:
        DataFrame with eBird_code, time_of_day and median_startTime
    """
    require_columns(annotated, ['eBird_code', 'time_of_day', 'startTime_offset'], 'annotated observations')
    medians = annotated.groupby(['eBird_code', 'time_of_day'])['startTime_offset'].median()
    return medians.reset_index(name='median_startTime')


def stratum_start_times(annotated: pd.DataFrame) -> pd.Series:
    """
    Median solar offset of the recording schedule per time of day.

    Each distinct recording (site, date, time of day, start time) counts once,
    however many species were detected in it. Species with no detections in a
    stratum take this value as their median_startTime.

    Returns:
        Series of median offsets indexed by time_of_day
    """
    require_columns(annotated, ['site_id', 'date', 'time_of_day', 'start_time', 'startTime_offset'],
                    'annotated observations')
    recordings = annotated.drop_duplicates(['site_id', 'date', 'time_of_day', 'start_time'])
    return recordings.groupby('time_of_day')['startTime_offset'].median()
