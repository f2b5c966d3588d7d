"""
Phylogeny loading, consensus and alignment with the analysis species.

The phylogeny is read as a posterior sample of trees and reduced to a single
maximum clade credibility tree. Before each model fit the tree is pruned to
exactly the species in the fitted data, tips are relabelled with the
analysis names, and the shared-branch-length covariance is derived from it.
"""

import copy
import dendropy
import numpy as np
import pandas as pd
from pathlib import Path
from typing import Optional, Union, Dict, List, Iterable

from .exceptions import CoverageError
from .taxonomy import resolve_tree_labels


NEXUS_SUFFIXES = ('.nex', '.nexus', '.trees')


def load_trees(file_path: Union[str, Path], schema: Optional[str] = None) -> dendropy.TreeList:
    """
    Load one or more trees from a Nexus or Newick file.

    Args:
        file_path: Path to the tree file.
        schema: 'nexus' or 'newick'. If None, inferred from the file suffix.

    Returns:
        dendropy TreeList with underscores in tip labels preserved
    """
    file_path = Path(file_path)
    if schema is None:
        schema = 'nexus' if file_path.suffix.lower() in NEXUS_SUFFIXES else 'newick'

    print(f"Loading trees from {file_path}...")
    trees = dendropy.TreeList.get(path=str(file_path), schema=schema, preserve_underscores=True)
    print(f"Loaded {len(trees)} trees with {len(trees.taxon_namespace)} taxa")
    return trees


def consensus_tree(trees: dendropy.TreeList) -> dendropy.Tree:
    """
    Maximum clade credibility tree of a posterior sample.

    The tree in the sample with the highest product of clade supports is
    returned with its own branch lengths. A single-tree list is returned as is.
    """
    if len(trees) == 0:
        raise ValueError("Cannot build a consensus from an empty tree list")
    if len(trees) == 1:
        return trees[0]

    print(f"Selecting maximum clade credibility tree from {len(trees)} trees...")
    tree = trees.maximum_product_of_split_support_tree()
    score = getattr(tree, 'log_product_of_split_support', None)
    if score is not None:
        print(f"MCC tree log clade credibility: {score:.3f}")
    return tree


def tip_labels(tree: dendropy.Tree) -> List[str]:
    """Labels of the tree's leaves in traversal order."""
    return [leaf.taxon.label for leaf in tree.leaf_node_iter()]


def prune_to_species(
    tree: dendropy.Tree,
    species: Iterable[str],
    tree_synonyms: Optional[Dict[str, str]] = None,
    synonyms: Optional[Dict[str, str]] = None
) -> dendropy.Tree:
    """
    Restrict a tree to exactly the analysis species.

    Analysis names are matched to tips, every other tip is dropped (branch
    lengths elsewhere are kept, unifurcations are merged), and the remaining
    tips are relabelled with the analysis names. The input tree is left
    untouched.

    Args:
        tree: Full phylogeny.
        species: Analysis scientific names.
        tree_synonyms: Analysis name -> tip label table. If None, uses the default.
        synonyms: Taxonomic synonym table. If None, uses the default.

    Returns:
        Pruned copy of the tree whose tip labels equal the species set

    Raises:
        CoverageError: If an analysis species has no tip in the tree, or the
                      pruned tips and the species set differ.
    """
    species = sorted(set(species))
    labels = tip_labels(tree)
    mapping, unmatched = resolve_tree_labels(species, labels, tree_synonyms, synonyms)
    if unmatched:
        raise CoverageError(
            f"{len(unmatched)} analysis species are absent from the phylogeny: {unmatched}",
            context={'missing': unmatched}
        )

    keep = set(mapping.values())
    drop = [label for label in labels if label not in keep]

    pruned = copy.deepcopy(tree)
    if drop:
        pruned.prune_taxa_with_labels(drop)

    species_for_tip = {tip: name for name, tip in mapping.items()}
    for leaf in pruned.leaf_node_iter():
        leaf.taxon.label = species_for_tip.get(leaf.taxon.label, leaf.taxon.label)

    remaining = set(tip_labels(pruned))
    if remaining != set(species):
        raise CoverageError(
            "Pruned tree tips do not match the analysis species",
            context={
                'extra_tips': sorted(remaining - set(species)),
                'missing_tips': sorted(set(species) - remaining),
            }
        )

    print(f"Pruned tree from {len(labels)} to {len(remaining)} tips")
    return pruned


def phylo_covariance(tree: dendropy.Tree, order: Optional[Iterable[str]] = None) -> pd.DataFrame:
    """
    Brownian-motion covariance implied by a tree.

    Entry (i, j) is the branch length shared by the root-to-tip paths of tips
    i and j; the diagonal holds root-to-tip distances.

    Args:
        tree: Phylogeny with branch lengths.
        order: Tip labels giving the row/column order. If None, sorted labels.

    Returns:
        Square DataFrame indexed by tip label
    """
    paths = {}
    for leaf in tree.leaf_node_iter():
        edges = {}
        node = leaf
        while node.parent_node is not None:
            length = node.edge.length
            edges[id(node)] = float(length) if length is not None else 0.0
            node = node.parent_node
        paths[leaf.taxon.label] = edges

    labels = list(order) if order is not None else sorted(paths)
    missing = [label for label in labels if label not in paths]
    if missing:
        raise CoverageError(
            f"Requested tips are absent from the tree: {missing}",
            context={'missing': missing}
        )

    n = len(labels)
    cov = np.zeros((n, n))
    for i, a in enumerate(labels):
        for j in range(i, n):
            b = labels[j]
            shared = paths[a].keys() & paths[b].keys()
            cov[i, j] = cov[j, i] = sum(paths[a][key] for key in shared)

    if np.any(np.diag(cov) <= 0):
        raise ValueError("Tree has tips at zero distance from the root; branch lengths are required")

    return pd.DataFrame(cov, index=labels, columns=labels)


def pagel_lambda_transform(covariance: pd.DataFrame, lam: float) -> pd.DataFrame:
    """
    Scale off-diagonal covariances by Pagel's lambda.

    lambda = 1 is the Brownian-motion covariance, lambda = 0 removes all
    phylogenetic structure while keeping the tip variances.
    """
    if not 0 <= lam <= 1:
        raise ValueError(f"lambda must lie in [0, 1], got {lam}")
    values = covariance.to_numpy() * lam
    np.fill_diagonal(values, np.diag(covariance.to_numpy()))
    return pd.DataFrame(values, index=covariance.index, columns=covariance.columns)
