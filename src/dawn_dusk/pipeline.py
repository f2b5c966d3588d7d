"""
End-to-end dawn/dusk analysis.

The workflow runs in a fixed order:
1. Normalize scientific names in every source table
2. Place observations on the solar clock (optionally restricted to a fixed
   window after dawn / before dusk, before any effort counting)
3. Count sampling visits and build the per-species detection table
4. Join covariates, apply exclusion rules and the complete-cases filter
5. Prune the consensus tree to the fitted species
6. Fit one phylogenetic GLS per time of day, and optionally a Poisson GLMM
   on raw counts

Every species removed along the way is recorded in a PipelineAudit with the
stage and reason.
"""

import pandas as pd
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union, Dict, List, Sequence, Tuple, Callable

from .effort import count_visits, summarize_detections, TIMES_OF_DAY
from .exceptions import ConvergenceError, JoinError, require_columns
from .phylogeny import load_trees, consensus_tree, prune_to_species, phylo_covariance
from .predictors import (
    collapse_trophic_niche,
    complete_cases,
    join_predictors,
    peak_frequency_medians,
    validate_sociality,
    validate_territory,
)
from .regression import (
    effect_size_table,
    fit_phylo_gls,
    fit_phylo_poisson_glmm,
    marginal_means,
    model_summary,
    pairwise_contrasts,
    zscore,
)
from .solar_time import (
    annotate_solar_times,
    median_start_times,
    restrict_recording_window,
    stratum_start_times,
    twilight_times,
)
from .taxonomy import check_species_bijection, load_synonyms, load_tree_synonyms, normalize_names


CONTINUOUS_PREDICTORS = ('median_startTime', 'median_peak_freq')
CATEGORICAL_PREDICTORS = ('territory', 'sociality', 'trophic_niche')
DEFAULT_REFERENCE_LEVELS = {'territory': 1, 'sociality': 0, 'time_of_day': 'dawn'}


@dataclass
class PipelineAudit:
    """Record of species exclusions, stage counts and model failures."""

    exclusions: List[Dict] = field(default_factory=list)
    counts: List[Dict] = field(default_factory=list)
    failures: List[Dict] = field(default_factory=list)
    settings: Dict = field(default_factory=dict)

    def exclude(self, species: Sequence[str], stage: str, reason: str, kind: str) -> None:
        for name in species:
            self.exclusions.append({'species': name, 'stage': stage, 'reason': reason, 'kind': kind})

    def count(self, stage: str, n_species: int) -> None:
        self.counts.append({'stage': stage, 'n_species': int(n_species)})

    def fail(self, model_id: str, error: ConvergenceError) -> None:
        self.failures.append({
            'model_id': model_id,
            'message': str(error),
            'last_estimate': error.last_estimate,
            'iterations': error.iterations,
        })

    def exclusions_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.exclusions, columns=['species', 'stage', 'reason', 'kind'])

    def narrative(self) -> List[str]:
        """Human-readable lines such as '66 of 69 species retained'."""
        lines = []
        for previous, current in zip(self.counts, self.counts[1:]):
            lines.append(f"{current['stage']}: {current['n_species']} of "
                         f"{previous['n_species']} species retained")
        excluded = self.exclusions_frame()
        for kind, group in excluded.groupby('kind'):
            lines.append(f"{group['species'].nunique()} species excluded ({kind}): "
                         f"{', '.join(sorted(group['species'].unique()))}")
        for failure in self.failures:
            lines.append(f"{failure['model_id']} failed: {failure['message']}")
        return lines


def save_dataframe(df: pd.DataFrame, output_path: Union[str, Path]) -> None:
    """
    Save a dataframe to CSV, creating parent folders.

    Args:
        df: DataFrame to save
        output_path: Path to output CSV file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, index=False)
    print(f"Saved {len(df)} rows to {output_path}")


def prepare_observations(
    observations: pd.DataFrame,
    sites: Optional[pd.DataFrame] = None,
    window_hours: Optional[float] = None,
    segment_minutes: float = 10.0,
    dusk_reference: str = 'end',
    timezone: Optional[str] = None,
    ephemeris: Callable = twilight_times
) -> pd.DataFrame:
    """
    Annotate observations with solar offsets and apply the recording window.

    Without a site table the observations are returned unchanged and no
    timing predictor is available.
    """
    if sites is None:
        if window_hours is not None:
            raise ValueError("A site table is required to restrict the recording window")
        return observations.copy()

    annotated = annotate_solar_times(
        observations, sites,
        segment_minutes=segment_minutes,
        dusk_reference=dusk_reference,
        timezone=timezone,
        ephemeris=ephemeris
    )
    if window_hours is not None:
        annotated = restrict_recording_window(annotated, window_hours)
    return annotated


def _attach_species_names(vocal: pd.DataFrame, lookup: pd.DataFrame) -> pd.DataFrame:
    codes = lookup[['eBird_code', 'scientific_name']].drop_duplicates()
    unknown = sorted(set(vocal['eBird_code']) - set(codes['eBird_code']))
    if unknown:
        raise JoinError(
            f"{len(unknown)} eBird codes are missing from the species lookup: {unknown}",
            context={'keys': unknown}
        )
    return vocal.merge(codes, on='eBird_code', how='left', validate='many_to_one')


def prepare_analysis_table(
    observations: pd.DataFrame,
    species_lookup: pd.DataFrame,
    traits: pd.DataFrame,
    territory: pd.DataFrame,
    sociality: pd.DataFrame,
    templates: pd.DataFrame,
    sites: Optional[pd.DataFrame] = None,
    synonyms: Optional[Dict[str, str]] = None,
    trophic_policy: str = 'merge_minor',
    trophic_policies: Optional[Union[pd.DataFrame, str, Path]] = None,
    min_templates: int = 5,
    window_hours: Optional[float] = None,
    segment_minutes: float = 10.0,
    dusk_reference: str = 'end',
    timezone: Optional[str] = None,
    ephemeris: Callable = twilight_times,
    times_of_day: Sequence[str] = TIMES_OF_DAY,
    on_unmatched: str = 'report'
) -> Tuple[pd.DataFrame, pd.DataFrame, PipelineAudit]:
    """
    Build the per-species, per-time-of-day analysis table.

    Args:
        observations: Acoustic detection table.
        species_lookup: eBird_code / scientific_name / common_name table.
        traits: Trait table with scientific_name and trophic_niche.
        territory: Table with scientific_name and territory.
        sociality: Table with scientific_name and sociality.
        templates: Peak frequency templates with scientific_name and peak_freq.
        sites: Site table with site_id, latitude, longitude (and optionally
              timezone). Required for the timing predictor and windowing.
        synonyms: Taxonomic synonym table. If None, uses the default.
        trophic_policy: Name of the trophic niche collapsing policy.
        trophic_policies: Policy table or path. If None, uses the default.
        min_templates: Minimum peak frequency templates per species.
        window_hours: If set, keep only observations within this many hours
                     after nautical dawn / before nautical dusk.
        segment_minutes: Recording segment length.
        dusk_reference: 'end' or 'start' of the segment for time to dusk.
        timezone: Fallback timezone for the site table.
        ephemeris: Twilight function, see solar_time.twilight_times.
        times_of_day: Strata to analyse.
        on_unmatched: 'report' or 'raise' for covariate join misses.

    Returns:
        Tuple of (analysis table, prepared observations, audit)
    """
    audit = PipelineAudit(settings={
        'trophic_policy': trophic_policy,
        'min_templates': min_templates,
        'window_hours': window_hours,
        'segment_minutes': segment_minutes,
        'dusk_reference': dusk_reference,
    })
    if synonyms is None:
        synonyms = load_synonyms()

    # 1. names
    species_lookup = normalize_names(species_lookup, synonyms)
    check_species_bijection(species_lookup)
    traits = normalize_names(traits, synonyms)
    territory = normalize_names(territory, synonyms)
    sociality = normalize_names(sociality, synonyms)
    templates = normalize_names(templates, synonyms)

    # 2. solar clock and window, before effort
    prepared = prepare_observations(
        observations, sites,
        window_hours=window_hours,
        segment_minutes=segment_minutes,
        dusk_reference=dusk_reference,
        timezone=timezone,
        ephemeris=ephemeris
    )

    # 3. effort
    n_visits = count_visits(prepared)
    audit.settings['n_visits'] = n_visits
    vocal = summarize_detections(prepared, n_visits, times_of_day)
    vocal = _attach_species_names(vocal, species_lookup)
    audit.count('detected', vocal['scientific_name'].nunique())

    if 'startTime_offset' in prepared.columns:
        vocal = vocal.merge(median_start_times(prepared), on=['eBird_code', 'time_of_day'], how='left')
        # zero-detection strata have no detections of their own to time
        schedule = vocal['time_of_day'].map(stratum_start_times(prepared))
        untimed = vocal['median_startTime'].isna() & (vocal['detections'] == 0)
        vocal.loc[untimed, 'median_startTime'] = schedule[untimed]
        if untimed.any():
            print(f"Assigned the stratum recording schedule's median start to "
                  f"{int(untimed.sum())} zero-detection rows")

    # 4. covariates
    frequencies, too_few = peak_frequency_medians(templates, min_templates)
    excluded = sorted(set(too_few['scientific_name']) & set(vocal['scientific_name']))
    audit.exclude(excluded, 'peak_frequency', f'fewer than {min_templates} templates', 'threshold')
    vocal = vocal[~vocal['scientific_name'].isin(excluded)]
    audit.count('template threshold', vocal['scientific_name'].nunique())

    traits, policy_dropped = collapse_trophic_niche(traits, trophic_policy, trophic_policies)
    excluded = sorted(set(policy_dropped['scientific_name']) & set(vocal['scientific_name']))
    audit.exclude(excluded, 'trophic_niche', f"niche excluded by policy '{trophic_policy}'", 'policy')
    vocal = vocal[~vocal['scientific_name'].isin(excluded)]
    audit.count('trophic policy', vocal['scientific_name'].nunique())

    covariates = {
        'trophic_niche': traits[['scientific_name', 'trophic_niche']],
        'territory': validate_territory(territory)[['scientific_name', 'territory']],
        'sociality': validate_sociality(sociality)[['scientific_name', 'sociality']],
        'peak_frequency': frequencies,
    }
    joined, unmatched = join_predictors(vocal, covariates, on_unmatched=on_unmatched)
    for name, missing in unmatched.items():
        audit.exclude(missing, name, f'no row in {name} table', 'join')

    species_level = list(CATEGORICAL_PREDICTORS)
    row_level = []
    if 'time_of_day' in frequencies.columns:
        row_level.append('median_peak_freq')
    else:
        species_level.append('median_peak_freq')
    if 'median_startTime' in joined.columns:
        row_level.append('median_startTime')

    table, dropped = complete_cases(joined, species_level, key='scientific_name')
    for missing, group in dropped.groupby('missing'):
        audit.exclude(group['scientific_name'], 'complete_cases', f'missing {missing}', 'incomplete')
    audit.count('complete cases', table['scientific_name'].nunique())

    if row_level:
        table, dropped = complete_cases(table, row_level, key=['scientific_name', 'time_of_day'])
        for _, row in dropped.iterrows():
            audit.exclude([row['scientific_name']], 'complete_cases',
                          f"missing {row['missing']} at {row['time_of_day']}", 'incomplete')

    table = table.sort_values(['scientific_name', 'time_of_day']).reset_index(drop=True)
    for line in audit.narrative():
        print(line)
    return table, prepared, audit


def build_count_table(
    observations: pd.DataFrame,
    analysis_table: pd.DataFrame,
    habitat: pd.DataFrame,
    group_col: str = 'site_type'
) -> pd.DataFrame:
    """
    Raw detection counts per species, time of day and site.

    Every analysis species gets a row for every site visited at each time of
    day, with zero where it was not detected. Site-level grouping comes from
    the habitat table, and species covariates from the analysis table.

    Raises:
        JoinError: If a visited site has no row in the habitat table.
    """
    require_columns(observations, ['site_id', 'time_of_day', 'eBird_code', 'number'], 'observations')
    require_columns(habitat, ['site_id', group_col], 'habitat table')

    species = analysis_table[['eBird_code', 'time_of_day']].drop_duplicates()
    visited = observations[['site_id', 'time_of_day']].drop_duplicates()

    unknown = sorted(set(visited['site_id']) - set(habitat['site_id']))
    if unknown:
        raise JoinError(
            f"{len(unknown)} sites are missing from the habitat table: {unknown}",
            context={'keys': unknown}
        )

    grid = species.merge(visited, on='time_of_day', how='inner')
    counts = observations.groupby(['eBird_code', 'time_of_day', 'site_id'])['number'].sum()
    grid = grid.merge(counts.reset_index(name='detections'),
                      on=['eBird_code', 'time_of_day', 'site_id'], how='left')
    grid['detections'] = grid['detections'].fillna(0).astype(int)

    covariates = analysis_table.drop(columns=[
        col for col in ('detections', 'total_detections', 'percent_detections', 'nVisits',
                        'normalized_detections', 'total_normalized_detections',
                        'percent_normalized_detections')
        if col in analysis_table.columns
    ])
    grid = grid.merge(covariates, on=['eBird_code', 'time_of_day'], how='left')
    grid = grid.merge(habitat[['site_id', group_col]].drop_duplicates(subset=['site_id']),
                      on='site_id', how='left')

    print(f"Built count table: {len(grid)} rows for {grid['eBird_code'].nunique()} species "
          f"at {grid['site_id'].nunique()} sites")
    return grid


def _aligned_covariance(tree, species, tree_synonyms, synonyms):
    pruned = prune_to_species(tree, species, tree_synonyms, synonyms)
    return phylo_covariance(pruned, order=sorted(set(species)))


def fit_models(
    table: pd.DataFrame,
    tree,
    response: str = 'percent_normalized_detections',
    continuous: Sequence[str] = CONTINUOUS_PREDICTORS,
    categorical: Sequence[str] = CATEGORICAL_PREDICTORS,
    reference_levels: Optional[Dict[str, object]] = None,
    evolution_model: str = 'lambda',
    times_of_day: Sequence[str] = TIMES_OF_DAY,
    counts: Optional[pd.DataFrame] = None,
    count_continuous: Sequence[str] = ('median_peak_freq',),
    tree_synonyms: Optional[Dict[str, str]] = None,
    synonyms: Optional[Dict[str, str]] = None,
    max_iter: int = 500,
    audit: Optional[PipelineAudit] = None
) -> Dict[str, object]:
    """
    Fit the GLS model for each time of day and, if counts are given, the GLMM.

    Each fit uses the tree pruned to its own species. A fit that does not
    converge is recorded in the audit and the remaining fits still run;
    coverage errors stop the run.

    Returns:
        Dictionary of model_id -> fitted result
    """
    if audit is None:
        audit = PipelineAudit()
    reference_levels = {**DEFAULT_REFERENCE_LEVELS, **(reference_levels or {})}
    continuous = [col for col in continuous if col in table.columns]

    fits = {}
    for tod in times_of_day:
        model_id = f'gls_{tod}'
        subset = table[table['time_of_day'] == tod].reset_index(drop=True)
        if subset.empty:
            print(f"Warning: no rows for {tod}; skipping {model_id}")
            continue
        covariance = _aligned_covariance(tree, subset['scientific_name'], tree_synonyms, synonyms)
        subset = zscore(subset, continuous)
        try:
            fits[model_id] = fit_phylo_gls(
                subset, response, covariance,
                continuous=continuous,
                categorical=categorical,
                reference_levels=reference_levels,
                evolution_model=evolution_model,
                max_iter=max_iter,
                model_id=model_id
            )
        except ConvergenceError as error:
            print(f"Warning: {error}")
            audit.fail(model_id, error)

    if counts is not None:
        model_id = 'glmm_counts'
        count_continuous = [col for col in count_continuous if col in counts.columns]
        data = zscore(counts.reset_index(drop=True), count_continuous)
        covariance = _aligned_covariance(tree, data['scientific_name'], tree_synonyms, synonyms)
        try:
            fits[model_id] = fit_phylo_poisson_glmm(
                data, 'detections', covariance,
                continuous=count_continuous,
                categorical=list(categorical) + ['time_of_day'],
                reference_levels=reference_levels,
                max_iter=max_iter * 2,
                model_id=model_id
            )
        except ConvergenceError as error:
            print(f"Warning: {error}")
            audit.fail(model_id, error)

    return fits


def summarize_fits(fits: Dict[str, object], contrasts_for: Sequence[str] = ()) -> Dict[str, pd.DataFrame]:
    """Coefficient, model, effect-size and optional marginal-mean tables."""
    fitted = list(fits.values())
    tables = {
        'coefficients': pd.concat([fit.coefficient_table() for fit in fitted], ignore_index=True)
        if fitted else pd.DataFrame(),
        'model_summary': model_summary(fitted),
        'effect_sizes': effect_size_table(fitted),
    }
    if contrasts_for:
        means, pairs = [], []
        for fit in fitted:
            for factor in contrasts_for:
                if factor in fit.categorical:
                    means.append(marginal_means(fit, factor))
                    pairs.append(pairwise_contrasts(fit, factor))
        tables['marginal_means'] = pd.concat(means, ignore_index=True) if means else pd.DataFrame()
        tables['contrasts'] = pd.concat(pairs, ignore_index=True) if pairs else pd.DataFrame()
    return tables


def run_pipeline(
    detections_path: Union[str, Path],
    species_path: Union[str, Path],
    traits_path: Union[str, Path],
    territory_path: Union[str, Path],
    sociality_path: Union[str, Path],
    templates_path: Union[str, Path],
    tree_path: Union[str, Path],
    sites_path: Optional[Union[str, Path]] = None,
    habitat_path: Optional[Union[str, Path]] = None,
    output_dir: Optional[Union[str, Path]] = None,
    synonyms_path: Optional[Union[str, Path]] = None,
    tree_synonyms_path: Optional[Union[str, Path]] = None,
    continuous: Sequence[str] = CONTINUOUS_PREDICTORS,
    categorical: Sequence[str] = CATEGORICAL_PREDICTORS,
    reference_levels: Optional[Dict[str, object]] = None,
    evolution_model: str = 'lambda',
    fit_glmm: bool = False,
    contrasts_for: Sequence[str] = CATEGORICAL_PREDICTORS,
    max_iter: int = 500,
    **prepare_options
) -> Dict[str, object]:
    """
    Run the whole analysis from input files.

    Keyword arguments not listed here are passed to prepare_analysis_table
    (trophic_policy, min_templates, window_hours, segment_minutes,
    dusk_reference, timezone, on_unmatched).

    Returns:
        Dictionary with 'table', 'fits', 'audit' and the output tables
    """
    print(f"Loading detections from {detections_path}...")
    observations = pd.read_csv(detections_path)
    print(f"Loaded {len(observations)} rows")

    species_lookup = pd.read_csv(species_path)
    traits = pd.read_csv(traits_path)
    territory = pd.read_csv(territory_path)
    sociality = pd.read_csv(sociality_path)
    templates = pd.read_csv(templates_path)
    sites = pd.read_csv(sites_path) if sites_path is not None else None

    synonyms = load_synonyms(synonyms_path)
    tree_synonyms = load_tree_synonyms(tree_synonyms_path)

    table, prepared, audit = prepare_analysis_table(
        observations, species_lookup, traits, territory, sociality, templates,
        sites=sites, synonyms=synonyms, **prepare_options
    )

    tree = consensus_tree(load_trees(tree_path))

    counts = None
    if fit_glmm:
        if habitat_path is None:
            raise ValueError("A habitat table is required for the count model")
        counts = build_count_table(prepared, table, pd.read_csv(habitat_path))

    fits = fit_models(
        table, tree,
        continuous=continuous,
        categorical=categorical,
        reference_levels=reference_levels,
        evolution_model=evolution_model,
        counts=counts,
        tree_synonyms=tree_synonyms,
        synonyms=synonyms,
        max_iter=max_iter,
        audit=audit
    )
    tables = summarize_fits(fits, contrasts_for)

    if output_dir is not None:
        output_dir = Path(output_dir)
        save_dataframe(table, output_dir / 'analysis_table.csv')
        save_dataframe(audit.exclusions_frame(), output_dir / 'exclusions.csv')
        for name, frame in tables.items():
            save_dataframe(frame, output_dir / f'{name}.csv')

    return {'table': table, 'fits': fits, 'audit': audit, **tables}
