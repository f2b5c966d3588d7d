"""
Species covariates and their join onto the detection table.

Covariate tables (trophic niche, territoriality, sociality, peak frequency)
are keyed by scientific name. Each join reports the species it could not
match, and each filter reports the species it removed and why, so a species
missing from the regression can always be traced to one stage.
"""

import pandas as pd
import numpy as np
from pathlib import Path
from typing import Optional, Union, Dict, List, Tuple, Sequence

from .exceptions import JoinError, RecodingError, require_columns


DATA_DIR = Path(__file__).parent.parent.parent / "data"

DROP_BUCKET = 'DROP'

TERRITORY_LABELS = {
    'non-territorial': 1,
    'weakly territorial': 2,
    'highly territorial': 3,
}

SOCIALITY_LABELS = {
    'non-communal': 0,
    'communal': 1,
}


def load_trophic_policies(file_path: Optional[Union[str, Path]] = None) -> pd.DataFrame:
    """
    Load trophic niche collapsing policies.

    Args:
        file_path: CSV with 'policy', 'trophic_niche' and 'bucket' columns. If
                  None, uses the default file from the data folder.

    Returns:
        DataFrame with one row per policy and source niche
    """
    if file_path is None:
        file_path = DATA_DIR / "trophic_niche_policies.csv"

    file_path = Path(file_path)
    print(f"Loading trophic niche policies from {file_path}...")
    policies = pd.read_csv(file_path)
    require_columns(policies, ['policy', 'trophic_niche', 'bucket'], 'trophic niche policies')
    print(f"Loaded {policies['policy'].nunique()} policies")
    return policies


def collapse_trophic_niche(
    traits: pd.DataFrame,
    policy: str = 'merge_minor',
    policies: Optional[Union[pd.DataFrame, str, Path]] = None,
    column: str = 'trophic_niche'
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Collapse source trophic niches into analysis buckets.

    Species whose niche maps to the DROP bucket are removed and returned
    separately. A niche with no row in the active policy is an error rather
    than a missing value, so it cannot be confused with a missing trait.

    Args:
        traits: Trait table with scientific_name and `column`.
        policy: Name of the policy to apply.
        policies: Policy table, or path to it. If None, uses the default.
        column: Name of the trophic niche column.

    Returns:
        Tuple of (recoded traits, dropped species with their source niche).
        The recoded table keeps the source value in '<column>_source'.

    Raises:
        RecodingError: If a niche has no bucket under the policy.
    """
    require_columns(traits, ['scientific_name', column], 'trait table')
    if policies is None or isinstance(policies, (str, Path)):
        policies = load_trophic_policies(policies)

    rules = policies[policies['policy'] == policy]
    if rules.empty:
        raise ValueError(
            f"Unknown trophic niche policy '{policy}'. "
            f"Available: {sorted(policies['policy'].unique())}")
    mapping = dict(zip(rules['trophic_niche'].str.strip(), rules['bucket'].str.strip()))

    traits = traits.copy()
    source = traits[column].where(traits[column].isna(), traits[column].astype(str).str.strip())
    unmapped = traits[source.notna() & ~source.isin(list(mapping))]
    if len(unmapped):
        raise RecodingError(
            f"Trophic niche values have no bucket under policy '{policy}': "
            f"{sorted(unmapped[column].unique())} "
            f"(species: {sorted(unmapped['scientific_name'])})",
            context={'policy': policy, 'values': sorted(unmapped[column].unique())}
        )

    traits[f'{column}_source'] = source
    traits[column] = source.map(mapping)

    drop = traits[column] == DROP_BUCKET
    dropped = traits.loc[drop, ['scientific_name', f'{column}_source']].rename(
        columns={f'{column}_source': column}).reset_index(drop=True)
    recoded = traits[~drop].reset_index(drop=True)

    counts = recoded[column].value_counts().to_dict()
    print(f"Trophic niche policy '{policy}': {counts}; "
          f"dropped {len(dropped)} species in excluded niches")
    return recoded, dropped


def _recode_categories(
    table: pd.DataFrame,
    column: str,
    labels: Dict[str, int],
    allowed: Sequence[int]
) -> pd.DataFrame:
    require_columns(table, ['scientific_name', column], f'{column} table')
    table = table.copy()

    def recode(value):
        if pd.isna(value):
            return np.nan
        if isinstance(value, str):
            key = value.strip().lower()
            if key in labels:
                return labels[key]
            try:
                return float(key)
            except ValueError:
                return value
        return value

    recoded = table[column].map(recode)
    numeric = pd.to_numeric(recoded, errors='coerce')
    invalid = recoded.notna() & ~numeric.isin(list(allowed))
    if invalid.any():
        bad = table.loc[invalid, column]
        raise RecodingError(
            f"Column '{column}' has values outside {list(allowed)}: {sorted(bad.astype(str).unique())}",
            context={'column': column, 'values': sorted(bad.astype(str).unique())}
        )

    table[column] = numeric.astype('Int64')
    return table


def validate_territory(territory: pd.DataFrame, column: str = 'territory') -> pd.DataFrame:
    """
    Check and coerce the ordinal territoriality code.

    Codes are 1 (non-territorial), 2 (weakly territorial) and 3 (highly
    territorial); the matching text labels are accepted too.
    """
    return _recode_categories(territory, column, TERRITORY_LABELS, [1, 2, 3])


def validate_sociality(sociality: pd.DataFrame, column: str = 'sociality') -> pd.DataFrame:
    """
    Check and coerce the binary communal-signalling code.

    Codes are 0 (non-communal) and 1 (communal); the matching text labels are
    accepted too.
    """
    return _recode_categories(sociality, column, SOCIALITY_LABELS, [0, 1])


def peak_frequency_medians(
    templates: pd.DataFrame,
    min_templates: int = 5,
    value_col: str = 'peak_freq'
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Median peak frequency per species from reference templates.

    Species with fewer than `min_templates` templates are excluded outright,
    not imputed. When the template table has a time_of_day column the median
    is taken per species and time of day.

    Args:
        templates: Template table with scientific_name and `value_col`, and
                  optionally template_id and time_of_day.
        min_templates: Minimum number of templates per species.
        value_col: Column holding peak frequency in Hz.

    Returns:
        Tuple of (medians with a median_peak_freq column, excluded species
        with their n_templates)
    """
    require_columns(templates, ['scientific_name', value_col], 'peak frequency templates')
    templates = templates.dropna(subset=[value_col])

    if 'template_id' in templates.columns:
        n_templates = templates.groupby('scientific_name')['template_id'].nunique()
    else:
        n_templates = templates.groupby('scientific_name').size()

    too_few = n_templates[n_templates < min_templates]
    excluded = too_few.rename('n_templates').reset_index()
    kept = templates[~templates['scientific_name'].isin(too_few.index)]

    keys = ['scientific_name']
    if 'time_of_day' in kept.columns:
        keys.append('time_of_day')
    medians = kept.groupby(keys)[value_col].median().reset_index(name='median_peak_freq')

    print(f"Excluded {len(excluded)} of {len(n_templates)} species with fewer than "
          f"{min_templates} frequency templates")
    return medians, excluded


def join_predictors(
    vocal: pd.DataFrame,
    covariates: Dict[str, pd.DataFrame],
    on_unmatched: str = 'report'
) -> Tuple[pd.DataFrame, Dict[str, List[str]]]:
    """
    Left-join covariate tables onto the detection table by scientific name.

    Tables that carry a time_of_day column are joined on scientific_name and
    time_of_day.

    Args:
        vocal: Detection table with scientific_name and time_of_day.
        covariates: Named covariate tables, each keyed by scientific_name.
        on_unmatched: 'report' to return unmatched species, 'raise' to fail.

    Returns:
        Tuple of (joined table, dict of table name -> unmatched species)

    Raises:
        JoinError: If a covariate table has conflicting rows for one species,
                  or if on_unmatched='raise' and any species is unmatched.
    """
    if on_unmatched not in ('report', 'raise'):
        raise ValueError(f"Invalid on_unmatched value: {on_unmatched}")
    require_columns(vocal, ['scientific_name', 'time_of_day'], 'vocal activity table')

    joined = vocal.copy()
    unmatched = {}
    species = set(joined['scientific_name'].dropna())

    for name, table in covariates.items():
        require_columns(table, ['scientific_name'], f'{name} table')
        keys = ['scientific_name']
        if 'time_of_day' in table.columns:
            keys.append('time_of_day')

        value_cols = [col for col in table.columns
                      if col not in keys and col not in joined.columns]
        table = table[keys + value_cols].drop_duplicates()

        conflicts = table.loc[table.duplicated(subset=keys, keep=False), 'scientific_name']
        if len(conflicts):
            raise JoinError(
                f"{name} table has conflicting rows for: {sorted(conflicts.unique())}",
                context={'table': name, 'keys': sorted(conflicts.unique())}
            )

        missing = sorted(species - set(table['scientific_name']))
        unmatched[name] = missing
        if missing:
            print(f"Warning: {len(missing)} species not found in {name} table: {missing}")

        joined = joined.merge(table, on=keys, how='left', validate='many_to_one')
        print(f"Joined {name} table ({', '.join(value_cols)})")

    if on_unmatched == 'raise':
        offending = {name: keys for name, keys in unmatched.items() if keys}
        if offending:
            raise JoinError(
                f"Unmatched species in covariate tables: {offending}",
                context={'keys': offending}
            )

    return joined, unmatched


def complete_cases(
    table: pd.DataFrame,
    required: Sequence[str],
    key: Union[str, Sequence[str]] = 'scientific_name'
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Drop units lacking any required predictor.

    With key='scientific_name' a species missing a value in either time of
    day is dropped from both; with key=['scientific_name', 'time_of_day'] only
    the affected row goes.

    Args:
        table: Joined analysis table.
        required: Predictor columns that must be present.
        key: Column(s) identifying the unit that is dropped as a whole.

    Returns:
        Tuple of (complete table, dropped units with a 'missing' column
        listing the absent predictors)
    """
    keys = [key] if isinstance(key, str) else list(key)
    required = list(required)
    require_columns(table, keys + required, 'analysis table')

    flags = table[required].isna().to_numpy()
    per_row = pd.Series(
        [','.join(col for col, absent in zip(required, row) if absent) for row in flags],
        index=table.index,
        dtype=object
    )

    incomplete = table[keys].assign(missing=per_row)[per_row != '']
    if incomplete.empty:
        dropped = pd.DataFrame(columns=keys + ['missing'])
        complete = table.reset_index(drop=True)
    else:
        dropped = incomplete.groupby(keys)['missing'].agg(
            lambda values: ','.join(sorted({col for value in values for col in value.split(',')}))
        ).reset_index()
        drop_index = pd.MultiIndex.from_frame(dropped[keys])
        row_index = pd.MultiIndex.from_frame(table[keys])
        complete = table[~row_index.isin(drop_index)].reset_index(drop=True)

    n_before = table[keys].drop_duplicates().shape[0]
    n_after = complete[keys].drop_duplicates().shape[0]
    print(f"Retained {n_after} of {n_before} {'/'.join(keys)} units with complete predictors")
    return complete, dropped
