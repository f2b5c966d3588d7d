"""
Sampling effort and per-species detection summaries.

Dawn and dusk were not visited equally often, so raw detection totals are
divided by the number of independent sampling occasions (site x date x time of
day) before species are compared between the two times of day.
"""

import pandas as pd
from typing import Optional, Dict, Sequence

from .exceptions import require_columns


OBSERVATION_COLUMNS = ['site_id', 'date', 'time_of_day', 'eBird_code', 'number']
TIMES_OF_DAY = ('dawn', 'dusk')


def count_visits(observations: pd.DataFrame) -> Dict[str, int]:
    """
    Count independent sampling occasions per time of day.

    A sampling occasion is a distinct (site_id, date, time_of_day) triple.

    Args:
        observations: Acoustic detection table.

    Returns:
        Dictionary mapping time of day to number of visits
    """
    require_columns(observations, ['site_id', 'date', 'time_of_day'], 'observations')
    strata = observations[['site_id', 'date', 'time_of_day']].drop_duplicates()
    n_visits = strata.groupby('time_of_day').size().to_dict()
    n_visits = {tod: int(n) for tod, n in n_visits.items()}
    print(f"Sampling visits per time of day: {n_visits}")
    return n_visits


def summarize_detections(
    observations: pd.DataFrame,
    n_visits: Optional[Dict[str, int]] = None,
    times_of_day: Sequence[str] = TIMES_OF_DAY
) -> pd.DataFrame:
    """
    Build the per-species, per-time-of-day detection table.

    Every species gets one row for each time of day. A species never detected
    at one time of day gets an explicit zero row there, so its percentages are
    computed against both strata rather than treated as 100% concentrated in
    the one it was heard in.

    Args:
        observations: Acoustic detection table with site_id, date, time_of_day,
                     eBird_code and number columns.
        n_visits: Visits per time of day. If None, counted from `observations`.
        times_of_day: Strata to keep, in output order.

    Returns:
        DataFrame keyed by eBird_code and time_of_day with detections,
        total_detections, percent_detections, nVisits, normalized_detections,
        total_normalized_detections and percent_normalized_detections.
    """
    require_columns(observations, OBSERVATION_COLUMNS, 'observations')
    times_of_day = list(times_of_day)

    other = ~observations['time_of_day'].isin(times_of_day)
    if other.any():
        print(f"Warning: ignoring {other.sum()} rows with time_of_day outside {times_of_day}")
        observations = observations[~other]

    if n_visits is None:
        n_visits = count_visits(observations)

    unvisited = [tod for tod in times_of_day if n_visits.get(tod, 0) <= 0]
    if unvisited:
        raise ValueError(f"No sampling visits recorded for time of day: {unvisited}")

    detections = observations.groupby(['eBird_code', 'time_of_day'])['number'].sum()
    species = sorted(observations['eBird_code'].unique())
    full_index = pd.MultiIndex.from_product(
        [species, times_of_day], names=['eBird_code', 'time_of_day'])

    added = len(full_index.difference(detections.index))
    summary = detections.reindex(full_index, fill_value=0).reset_index(name='detections')
    if added:
        print(f"Added {added} zero-detection rows for species heard at only one time of day")

    summary['total_detections'] = summary.groupby('eBird_code')['detections'].transform('sum')

    silent = summary.loc[summary['total_detections'] == 0, 'eBird_code'].unique()
    if len(silent):
        print(f"Warning: dropping {len(silent)} species with zero total detections: {list(silent)}")
        summary = summary[summary['total_detections'] > 0].reset_index(drop=True)

    summary['percent_detections'] = 100 * summary['detections'] / summary['total_detections']

    summary['nVisits'] = summary['time_of_day'].map(n_visits)
    summary['normalized_detections'] = summary['detections'] / summary['nVisits']
    summary['total_normalized_detections'] = summary.groupby(
        'eBird_code')['normalized_detections'].transform('sum')
    summary['percent_normalized_detections'] = (
        100 * summary['normalized_detections'] / summary['total_normalized_detections'])

    print(f"Summarized detections for {summary['eBird_code'].nunique()} species "
          f"across {len(times_of_day)} times of day")
    return summary
