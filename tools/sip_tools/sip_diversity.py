"""
Functions for rarefaction, beta diversity and ordination of gradient fractions.
"""

import logging

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from skbio import TreeNode
from skbio.diversity import beta_diversity
from skbio.stats.ordination import pcoa
from sklearn.manifold import MDS


logger = logging.getLogger(__name__)

UNIFRAC_METRICS = ('weighted_unifrac', 'unweighted_unifrac')


def rarefy_table(abundance_df, depth=None, seed=None):
    """
    Rarefy all samples in a taxa x samples count table to an even depth.

    Each sample is subsampled without replacement. Samples whose total is
    below ``depth`` are dropped, as are taxa left with no counts.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Taxa abundance DataFrame with taxa as index, samples as columns
    depth : int, optional
        Target number of reads per sample (default: smallest sample total)
    seed : int, optional
        Random seed for reproducibility

    Returns:
    --------
    pandas.DataFrame
        Rarefied count table
    """
    rng = np.random.default_rng(seed)
    counts = abundance_df.fillna(0).astype(np.int64)
    totals = counts.sum(axis=0)

    if depth is None:
        depth = int(totals.min())
    if depth <= 0:
        raise ValueError(f"Rarefaction depth must be positive (got {depth})")

    keep = totals[totals >= depth].index
    n_dropped = counts.shape[1] - len(keep)
    if n_dropped:
        logger.warning(f"Dropping {n_dropped} samples with fewer than {depth} reads")
    if len(keep) == 0:
        raise ValueError(f"No samples have at least {depth} reads")

    rarefied = {}
    for sample_id in keep:
        rarefied[sample_id] = rng.multivariate_hypergeometric(counts[sample_id].values, depth)
    rarefied_df = pd.DataFrame(rarefied, index=counts.index)

    # Remove taxa absent after subsampling
    rarefied_df = rarefied_df.loc[rarefied_df.sum(axis=1) > 0]

    logger.info(f"Rarefied {len(keep)} samples to {depth} reads ({rarefied_df.shape[0]} taxa retained)")
    return rarefied_df


def load_tree(filepath):
    """Read a rooted Newick phylogeny."""
    return TreeNode.read(str(filepath), format='newick')


def calculate_beta_diversity(abundance_df, metric='weighted_unifrac', tree=None, normalized=True):
    """
    Calculate a beta diversity distance matrix between samples.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Taxa abundance DataFrame with taxa as index, samples as columns
    metric : str
        'weighted_unifrac', 'unweighted_unifrac' or any scikit-bio/scipy metric
    tree : skbio.TreeNode, optional
        Phylogeny containing every taxon; required for UniFrac metrics
    normalized : bool
        Normalize weighted UniFrac to [0, 1]

    Returns:
    --------
    skbio.DistanceMatrix
        Beta diversity distance matrix
    """
    # Transpose to get samples as rows for beta_diversity function
    abundance_matrix = abundance_df.T
    taxa = list(abundance_df.index)

    if metric in UNIFRAC_METRICS:
        if tree is None:
            raise ValueError(f"A phylogenetic tree is required for {metric}")

        tips = {tip.name for tip in tree.tips()}
        missing = [taxon for taxon in taxa if taxon not in tips]
        if missing:
            raise ValueError(f"{len(missing)} taxa are not tips of the tree (e.g. {missing[0]})")

        # UniFrac needs the tree restricted to the observed taxa
        sheared = tree.shear(taxa)
        sheared.prune()

        kwargs = {'taxa': taxa, 'tree': sheared}
        if metric == 'weighted_unifrac':
            kwargs['normalized'] = normalized
        beta_dm = beta_diversity(metric, abundance_matrix.values.astype(np.int64),
                                 ids=list(abundance_matrix.index), **kwargs)
    else:
        beta_dm = beta_diversity(metric, abundance_matrix.values, ids=list(abundance_matrix.index))

    logger.debug(f"Computed {metric} distances for {beta_dm.shape[0]} samples")
    return beta_dm


def calculate_nmds(distance_matrix, n_components=2, seed=42, n_init=10, max_iter=500):
    """
    Non-metric multidimensional scaling of a distance matrix.

    Returns:
    --------
    tuple
        (DataFrame of NMDS1..NMDSk indexed by sample ID, stress)
    """
    # Create MDS with non-metric scaling (this is essentially NMDS)
    mds = MDS(n_components=n_components, dissimilarity='precomputed', random_state=seed,
              metric=False, n_init=n_init, max_iter=max_iter)
    coords = mds.fit_transform(distance_matrix.data)

    coords_df = pd.DataFrame(
        coords,
        index=list(distance_matrix.ids),
        columns=[f'NMDS{i + 1}' for i in range(n_components)]
    )
    return coords_df, getattr(mds, 'stress_', np.nan)


def calculate_pcoa(distance_matrix, n_components=2):
    """
    Principal coordinates analysis of a distance matrix.

    Returns:
    --------
    tuple
        (DataFrame of PC1..PCk indexed by sample ID, proportion explained per axis)
    """
    pcoa_results = pcoa(distance_matrix)
    columns = [f'PC{i + 1}' for i in range(n_components)]

    coords_df = pcoa_results.samples.iloc[:, :n_components].copy()
    coords_df.columns = columns
    coords_df.index = list(distance_matrix.ids)

    explained = pd.Series(np.asarray(pcoa_results.proportion_explained)[:n_components], index=columns)
    return coords_df, explained


def _ordinate_pair(label, abundance_df, metadata_df, sample_ids, metric, tree,
                   method, depth, seed, rarefaction_seed):
    pair_abundance = abundance_df[sample_ids]
    if depth is not False:
        pair_abundance = rarefy_table(pair_abundance, depth=depth, seed=rarefaction_seed)

    beta_dm = calculate_beta_diversity(pair_abundance, metric=metric, tree=tree)

    if method.upper() == 'NMDS':
        coords_df, stress = calculate_nmds(beta_dm, seed=seed)
    elif method.upper() == 'PCOA':
        coords_df, _ = calculate_pcoa(beta_dm)
        stress = np.nan
    else:
        raise ValueError(f"Unknown ordination method: {method}. Use 'PCoA' or 'NMDS'.")

    ord_df = coords_df.join(metadata_df.loc[coords_df.index])
    ord_df['pair'] = label
    ord_df['stress'] = stress
    ord_df.index.name = 'Sample'
    return ord_df.reset_index()


def ordinate_pairs(abundance_df, metadata_df, pairs, metric='weighted_unifrac', tree=None,
                   method='NMDS', depth=None, seed=42, rarefaction_seed=None, n_jobs=1):
    """
    Ordinate the gradient fractions of each treatment/control comparison.

    Each comparison is rarefied, turned into a distance matrix and ordinated
    on its own, so comparisons can run in parallel.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Taxa abundance DataFrame with taxa as index, samples as columns
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    pairs : dict
        Comparison label -> list of sample IDs (see ``subset_pairs``)
    metric : str
        Beta diversity metric
    tree : skbio.TreeNode, optional
        Phylogeny for UniFrac metrics
    method : str
        Ordination method ('NMDS' or 'PCoA')
    depth : int, None or False
        Rarefaction depth; None rarefies to the smallest sample, False skips
    seed : int
        Seed for NMDS
    rarefaction_seed : int, optional
        Seed for rarefaction (default: ``seed``)
    n_jobs : int
        Number of comparisons to process in parallel. With n_jobs > 1,
        messages logged by ``rarefy_table`` stay in the worker processes;
        the per-comparison summary is always logged here.

    Returns:
    --------
    pandas.DataFrame
        Long table of coordinates with sample metadata, 'pair' and 'stress'
    """
    if not pairs:
        raise ValueError("No treatment/control comparisons to ordinate")

    if rarefaction_seed is None:
        rarefaction_seed = seed

    results = Parallel(n_jobs=n_jobs)(
        delayed(_ordinate_pair)(label, abundance_df, metadata_df, sample_ids,
                                metric, tree, method, depth, seed, rarefaction_seed)
        for label, sample_ids in pairs.items()
    )

    for label, ord_df in zip(pairs, results):
        logger.info(f"Ordinated {label}: {len(ord_df)} samples, "
                    f"stress = {ord_df['stress'].iloc[0]:.3f}")

    return pd.concat(results, ignore_index=True)
