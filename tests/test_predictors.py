"""
Tests for predictors.py module.

To run these tests:
    pytest tests/test_predictors.py -v
"""

import pytest
import pandas as pd
import numpy as np
from pathlib import Path
import sys

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from dawn_dusk.exceptions import JoinError, RecodingError
from dawn_dusk.predictors import (
    load_trophic_policies,
    collapse_trophic_niche,
    validate_territory,
    validate_sociality,
    peak_frequency_medians,
    join_predictors,
    complete_cases
)


@pytest.fixture
def traits():
    return pd.DataFrame({
        'scientific_name': ['Psilopogon viridis', 'Pellorneum ruficeps', 'Leptocoma minima',
                            'Dicrurus paradiseus', 'Lonchura kelaarti'],
        'trophic_niche': ['Frugivore', 'Invertivore', 'Nectarivore', 'Omnivore', 'Granivore'],
    })


class TestTrophicNiche:
    """Test trophic niche collapsing policies."""

    def test_load_default_policies(self):
        policies = load_trophic_policies()

        assert set(policies['policy']) == {'merge_minor', 'drop_minor'}

    def test_merge_minor(self, traits):
        """Test that minor niches share one bucket and nothing is dropped."""
        recoded, dropped = collapse_trophic_niche(traits, 'merge_minor')

        assert dropped.empty
        buckets = dict(zip(recoded['scientific_name'], recoded['trophic_niche']))
        assert buckets['Pellorneum ruficeps'] == 'Invertivore'
        assert buckets['Psilopogon viridis'] == buckets['Leptocoma minima'] == buckets['Lonchura kelaarti']
        assert recoded.loc[recoded['scientific_name'] == 'Lonchura kelaarti',
                           'trophic_niche_source'].iloc[0] == 'Granivore'

    def test_drop_minor(self, traits):
        """Test that DROP niches are removed and reported."""
        recoded, dropped = collapse_trophic_niche(traits, 'drop_minor')

        assert sorted(dropped['scientific_name']) == ['Leptocoma minima', 'Lonchura kelaarti']
        assert set(recoded['trophic_niche']) == {'Frugivore', 'Invertivore', 'Omnivore'}

    def test_unmapped_value_raises(self, traits):
        """Test that a niche without a bucket is an error, not a missing value."""
        traits.loc[len(traits)] = ['Spilornis cheela', 'Vertivore']

        with pytest.raises(RecodingError) as excinfo:
            collapse_trophic_niche(traits, 'merge_minor')

        assert excinfo.value.context['values'] == ['Vertivore']

    def test_missing_niche_stays_missing(self, traits):
        traits.loc[len(traits)] = ['Spilornis cheela', np.nan]

        recoded, _ = collapse_trophic_niche(traits, 'merge_minor')

        assert recoded['trophic_niche'].isna().sum() == 1

    def test_unknown_policy(self, traits):
        with pytest.raises(ValueError, match="Unknown trophic niche policy"):
            collapse_trophic_niche(traits, 'lump_everything')


class TestCategoricalCodes:
    """Test territory and sociality validation."""

    def test_territory_codes_and_labels(self):
        territory = pd.DataFrame({
            'scientific_name': ['A a', 'B b', 'C c', 'D d'],
            'territory': [1, '3', 'weakly territorial', np.nan],
        })

        result = validate_territory(territory)

        assert list(result['territory'].iloc[:3]) == [1, 3, 2]
        assert pd.isna(result['territory'].iloc[3])

    def test_territory_out_of_range(self):
        territory = pd.DataFrame({'scientific_name': ['A a'], 'territory': [4]})

        with pytest.raises(RecodingError):
            validate_territory(territory)

    def test_sociality(self):
        sociality = pd.DataFrame({
            'scientific_name': ['A a', 'B b'],
            'sociality': ['communal', 0],
        })

        result = validate_sociality(sociality)

        assert list(result['sociality']) == [1, 0]

    def test_sociality_invalid(self):
        sociality = pd.DataFrame({'scientific_name': ['A a'], 'sociality': ['sometimes']})

        with pytest.raises(RecodingError):
            validate_sociality(sociality)


class TestPeakFrequency:
    """Test peak frequency medians."""

    def test_template_threshold(self):
        """Test that species with too few templates are excluded and counted."""
        templates = pd.DataFrame({
            'scientific_name': ['A a'] * 5 + ['B b'] * 4,
            'template_id': list(range(9)),
            'peak_freq': [1000, 1200, 1100, 1300, 900, 3000, 3100, 3200, 3300],
        })

        medians, excluded = peak_frequency_medians(templates, min_templates=5)

        assert list(medians['scientific_name']) == ['A a']
        assert medians['median_peak_freq'].iloc[0] == pytest.approx(1100)
        assert excluded.to_dict('records') == [{'scientific_name': 'B b', 'n_templates': 4}]

    def test_per_time_of_day(self):
        templates = pd.DataFrame({
            'scientific_name': ['A a'] * 4,
            'time_of_day': ['dawn', 'dawn', 'dusk', 'dusk'],
            'peak_freq': [1000, 2000, 3000, 5000],
        })

        medians, _ = peak_frequency_medians(templates, min_templates=2)

        assert list(medians['median_peak_freq']) == [1500, 4000]


class TestJoinPredictors:
    """Test covariate joins."""

    @pytest.fixture
    def vocal(self):
        return pd.DataFrame({
            'scientific_name': ['A a', 'A a', 'B b', 'B b'],
            'time_of_day': ['dawn', 'dusk', 'dawn', 'dusk'],
            'percent_normalized_detections': [60.0, 40.0, 10.0, 90.0],
        })

    def test_report_unmatched(self, vocal):
        covariates = {
            'territory': pd.DataFrame({'scientific_name': ['A a'], 'territory': [2]}),
            'start_time': pd.DataFrame({
                'scientific_name': ['A a', 'B b'],
                'time_of_day': ['dawn', 'dusk'],
                'median_startTime': [0.5, 1.5],
            }),
        }

        joined, unmatched = join_predictors(vocal, covariates)

        assert len(joined) == 4
        assert unmatched == {'territory': ['B b'], 'start_time': []}
        assert joined['territory'].isna().sum() == 2
        assert joined['median_startTime'].notna().sum() == 2

    def test_raise_unmatched(self, vocal):
        covariates = {'territory': pd.DataFrame({'scientific_name': ['A a'], 'territory': [2]})}

        with pytest.raises(JoinError):
            join_predictors(vocal, covariates, on_unmatched='raise')

    def test_conflicting_rows_raise(self, vocal):
        covariates = {'territory': pd.DataFrame({
            'scientific_name': ['A a', 'A a', 'B b'],
            'territory': [1, 3, 2],
        })}

        with pytest.raises(JoinError, match="conflicting"):
            join_predictors(vocal, covariates)


class TestCompleteCases:
    """Test the complete-cases filter at species and row level."""

    @pytest.fixture
    def table(self):
        return pd.DataFrame({
            'scientific_name': ['A a', 'A a', 'B b', 'B b', 'C c', 'C c'],
            'time_of_day': ['dawn', 'dusk'] * 3,
            'territory': [1, 1, np.nan, np.nan, 2, 2],
            'median_startTime': [0.5, np.nan, 1.0, 1.2, 0.3, 0.4],
        })

    def test_species_level(self, table):
        """Test that a species missing a trait loses both rows."""
        complete, dropped = complete_cases(table, ['territory'])

        assert sorted(complete['scientific_name'].unique()) == ['A a', 'C c']
        assert dropped.to_dict('records') == [{'scientific_name': 'B b', 'missing': 'territory'}]

    def test_row_level(self, table):
        """Test that a per-stratum gap only drops that row."""
        complete, dropped = complete_cases(table, ['median_startTime'],
                                           key=['scientific_name', 'time_of_day'])

        assert len(complete) == 5
        assert dropped[['scientific_name', 'time_of_day']].to_dict('records') == [
            {'scientific_name': 'A a', 'time_of_day': 'dusk'}
        ]

    def test_nothing_missing(self, table):
        complete, dropped = complete_cases(table.dropna(), ['territory'])

        assert len(complete) == 3
        assert dropped.empty
