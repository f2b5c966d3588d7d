"""
Scientific-name normalization across source tables.

Trait, territoriality, sociality and phylogeny sources were compiled under
different taxonomic vintages. Before any join keyed on scientific name, every
table is passed through the same synonym table (old name -> current name).
A second table reconciles current names with the tip labels of the phylogeny,
which uses underscores and, for some lumped or split species, a different
species concept altogether.
"""

import pandas as pd
from pathlib import Path
from typing import Optional, Union, Dict, List, Tuple, Iterable

from .exceptions import CoverageError, JoinError, require_columns


DATA_DIR = Path(__file__).parent.parent.parent / "data"


def _resolve_chains(pairs: Dict[str, str]) -> Dict[str, str]:
    """Follow old -> mid -> new chains so that lookups are one step."""
    resolved = {}
    for old in pairs:
        seen = [old]
        current = pairs[old]
        while current in pairs and pairs[current] != current:
            if current in seen:
                raise ValueError(
                    f"Synonym table contains a cycle: {' -> '.join(seen + [current])}")
            seen.append(current)
            current = pairs[current]
        resolved[old] = current
    return resolved


def load_synonyms(file_path: Optional[Union[str, Path]] = None) -> Dict[str, str]:
    """
    Load the taxonomic synonym table.

    Args:
        file_path: CSV with 'old_name' and 'new_name' columns. If None, uses
                  the default table from the data folder.

    Returns:
        Dictionary mapping old names to current names, with chains resolved
    """
    if file_path is None:
        file_path = DATA_DIR / "taxonomy_synonyms.csv"

    file_path = Path(file_path)
    print(f"Loading taxonomic synonyms from {file_path}...")
    table = pd.read_csv(file_path)
    require_columns(table, ['old_name', 'new_name'], 'synonym table')

    pairs = dict(zip(table['old_name'].str.strip(), table['new_name'].str.strip()))
    synonyms = _resolve_chains(pairs)
    print(f"Loaded {len(synonyms)} synonym pairs")
    return synonyms


def load_tree_synonyms(file_path: Optional[Union[str, Path]] = None) -> Dict[str, str]:
    """
    Load the mapping from analysis names to phylogeny tip labels.

    Args:
        file_path: CSV with 'scientific_name' and 'tree_label' columns. If None,
                  uses the default table from the data folder.

    Returns:
        Dictionary mapping analysis names to tip labels
    """
    if file_path is None:
        file_path = DATA_DIR / "tree_synonyms.csv"

    file_path = Path(file_path)
    print(f"Loading phylogeny name mapping from {file_path}...")
    table = pd.read_csv(file_path)
    require_columns(table, ['scientific_name', 'tree_label'], 'tree synonym table')

    mapping = dict(zip(table['scientific_name'].str.strip(), table['tree_label'].str.strip()))
    print(f"Loaded {len(mapping)} tree label mappings")
    return mapping


def normalize_name(name: str, synonyms: Dict[str, str]) -> str:
    """Return the current name for `name`; unknown names pass through."""
    if pd.isna(name):
        return name
    name = " ".join(str(name).split())
    return synonyms.get(name, name)


def normalize_names(
    df: pd.DataFrame,
    synonyms: Optional[Dict[str, str]] = None,
    column: str = 'scientific_name'
) -> pd.DataFrame:
    """
    Rewrite outdated scientific names in a table to their current spelling.

    Applying this twice gives the same result as applying it once.

    Args:
        df: Any table with a scientific-name column.
        synonyms: Mapping of old to current names. If None, loads the default table.
        column: Name of the scientific-name column.

    Returns:
        A copy of the table with normalized names.
    """
    require_columns(df, [column], 'name table')
    if synonyms is None:
        synonyms = load_synonyms()

    df = df.copy()
    stripped = df[column].map(lambda name: normalize_name(name, {}))
    df[column] = stripped.map(lambda name: normalize_name(name, synonyms))

    renamed = stripped[stripped.notna() & (stripped != df[column])]
    if len(renamed):
        print(f"Renamed {renamed.nunique()} outdated scientific names")
    return df


def check_species_bijection(lookup: pd.DataFrame) -> None:
    """
    Check that eBird codes and scientific names map one-to-one.

    Raises:
        JoinError: If a code carries two names or a name carries two codes.
    """
    require_columns(lookup, ['eBird_code', 'scientific_name'], 'species lookup')
    pairs = lookup[['eBird_code', 'scientific_name']].drop_duplicates()

    dup_codes = pairs.loc[pairs['eBird_code'].duplicated(keep=False), 'eBird_code']
    dup_names = pairs.loc[pairs['scientific_name'].duplicated(keep=False), 'scientific_name']
    if len(dup_codes) or len(dup_names):
        raise JoinError(
            "Species lookup is not one-to-one between eBird_code and scientific_name: "
            f"codes {sorted(dup_codes.unique())}, names {sorted(dup_names.unique())}",
            context={'keys': sorted(set(dup_codes) | set(dup_names))}
        )


def resolve_tree_labels(
    species: Iterable[str],
    tip_labels: Iterable[str],
    tree_synonyms: Optional[Dict[str, str]] = None,
    synonyms: Optional[Dict[str, str]] = None
) -> Tuple[Dict[str, str], List[str]]:
    """
    Match analysis species names to tip labels of a phylogeny.

    Each name is tried, in order, against the tree synonym table, the
    underscore form of the name, and the tips after passing them through the
    taxonomic synonym table.

    Args:
        species: Analysis scientific names (space separated).
        tip_labels: Tip labels of the phylogeny (underscore separated).
        tree_synonyms: Analysis name -> tip label. If None, loads the default.
        synonyms: Old -> current name table applied to the tips. If None,
                 loads the default.

    Returns:
        Tuple of (mapping of species to tip label, list of unmatched species)

    Raises:
        CoverageError: If two analysis species resolve to the same tip.
    """
    if tree_synonyms is None:
        tree_synonyms = load_tree_synonyms()
    if synonyms is None:
        synonyms = load_synonyms()

    tip_labels = list(tip_labels)
    tips = set(tip_labels)

    canonical_tips = {}
    for tip in tip_labels:
        canonical = normalize_name(tip.replace('_', ' '), synonyms)
        canonical_tips.setdefault(canonical, tip)

    mapping = {}
    unmatched = []
    for name in species:
        candidate = tree_synonyms.get(name)
        if candidate is not None and candidate in tips:
            mapping[name] = candidate
        elif name.replace(' ', '_') in tips:
            mapping[name] = name.replace(' ', '_')
        elif name in canonical_tips:
            mapping[name] = canonical_tips[name]
        else:
            unmatched.append(name)

    tip_counts = pd.Series(list(mapping.values()), dtype=object).value_counts()
    shared_tips = set(tip_counts[tip_counts > 1].index)
    if shared_tips:
        shared = {name: tip for name, tip in mapping.items() if tip in shared_tips}
        raise CoverageError(
            f"Several analysis species resolve to the same tree tip: {shared}",
            context={'shared_tips': shared}
        )

    if unmatched:
        print(f"Warning: {len(unmatched)} species have no tip in the phylogeny: {unmatched}")

    return mapping, unmatched
