"""
Buoyant density (BD) shift between labeled and unlabeled gradients.

The BD shift of a labeled fraction is its weighted mean beta diversity
distance to the fractions of the unlabeled control gradient, with weights
falling off with the BD difference between fractions. A null distribution
is built by permuting sample labels of the distance matrix. BD windows where
the observed shift exceeds the null confidence interval for several
consecutive fractions are candidates for MW-HR-SIP.
"""

import logging

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import stats

from .sip_diversity import calculate_beta_diversity, rarefy_table
from .sip_utils import MissingColumnError, require_metadata_columns


logger = logging.getLogger(__name__)

SHIFT_COLUMNS = ['Sample', 'Fraction', 'BD', 'wmean_dist', 'wmean_dist_CI_low', 'wmean_dist_CI_high']


class DuplicateDensityError(ValueError):
    """Raised when a buoyant density occurs twice within one group."""


def _bd_weights(treat_bd, control_bd, bandwidth):
    """Gaussian kernel weights, one row per treatment fraction."""
    bd_diff = treat_bd[:, None] - control_bd[None, :]
    weights = stats.norm.pdf(bd_diff, loc=0, scale=bandwidth)

    # Fractions far from every control fraction fall back to an unweighted mean
    empty_rows = weights.sum(axis=1) == 0
    weights[empty_rows] = 1.0
    return weights


def _weighted_mean_dist(dist, treat_idx, control_idx, weights):
    sub = dist[np.ix_(treat_idx, control_idx)]
    return (sub * weights).sum(axis=1) / weights.sum(axis=1)


def calculate_bd_shift(distance_matrix, metadata_df, control_expr,
                       bd_col='Buoyant_density', fraction_col='Fraction',
                       nperm=100, alpha=0.05, bandwidth=0.005, seed=None):
    """
    Calculate the BD shift of a labeled gradient relative to its control.

    Parameters:
    -----------
    distance_matrix : skbio.DistanceMatrix
        Beta diversity between all fractions of one treatment/control comparison
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    control_expr : str
        pandas query selecting the control gradient samples
    bd_col : str
        Metadata column holding buoyant density
    fraction_col : str
        Metadata column holding the fraction identifier
    nperm : int
        Number of permutations for the null confidence interval
    alpha : float
        Confidence interval width is 1 - alpha
    bandwidth : float
        Standard deviation (g/ml) of the Gaussian BD weighting kernel
    seed : int, optional
        Random seed for the permutations

    Returns:
    --------
    pandas.DataFrame
        One row per labeled fraction with columns Sample, Fraction, BD,
        wmean_dist, wmean_dist_CI_low and wmean_dist_CI_high, sorted by BD
    """
    require_metadata_columns(metadata_df, [bd_col, fraction_col])

    if nperm < 1:
        raise ValueError(f"nperm must be at least 1 (got {nperm})")
    if not 0 < alpha < 1:
        raise ValueError(f"alpha must be between 0 and 1 (got {alpha})")
    if bandwidth <= 0:
        raise ValueError(f"bandwidth must be positive (got {bandwidth})")

    sample_ids = list(distance_matrix.ids)
    missing = [s for s in sample_ids if s not in metadata_df.index]
    if missing:
        raise ValueError(f"{len(missing)} samples in the distance matrix have no metadata (e.g. {missing[0]})")

    metadata_df = metadata_df.loc[sample_ids]
    is_control = metadata_df.index.isin(metadata_df.query(control_expr).index)

    control_idx = np.flatnonzero(is_control)
    treat_idx = np.flatnonzero(~is_control)
    if len(control_idx) == 0:
        raise ValueError(f"No control samples match expression: {control_expr}")
    if len(treat_idx) == 0:
        raise ValueError(f"All samples match the control expression: {control_expr}")

    bd = metadata_df[bd_col].astype(float).values
    weights = _bd_weights(bd[treat_idx], bd[control_idx], bandwidth)

    dist = distance_matrix.data
    observed = _weighted_mean_dist(dist, treat_idx, control_idx, weights)

    # Null model: shuffle which community sits at which gradient position
    rng = np.random.default_rng(seed)
    n_samples = len(sample_ids)
    null = np.empty((nperm, len(treat_idx)))
    for i in range(nperm):
        order = rng.permutation(n_samples)
        permuted = dist[np.ix_(order, order)]
        null[i] = _weighted_mean_dist(permuted, treat_idx, control_idx, weights)

    ci_low, ci_high = np.quantile(null, [alpha / 2, 1 - alpha / 2], axis=0)

    shift_df = pd.DataFrame({
        'Sample': [sample_ids[i] for i in treat_idx],
        'Fraction': metadata_df[fraction_col].values[treat_idx],
        'BD': bd[treat_idx],
        'wmean_dist': observed,
        'wmean_dist_CI_low': ci_low,
        'wmean_dist_CI_high': ci_high,
    })
    return shift_df.sort_values('BD', kind='mergesort').reset_index(drop=True)


def _bd_shift_pair(label, abundance_df, metadata_df, sample_ids, group_values, metric, tree,
                   control_expr, bd_col, fraction_col, nperm, alpha, bandwidth, depth,
                   seed, rarefaction_seed):
    pair_abundance = abundance_df[sample_ids]
    if depth is not False:
        pair_abundance = rarefy_table(pair_abundance, depth=depth, seed=rarefaction_seed)

    beta_dm = calculate_beta_diversity(pair_abundance, metric=metric, tree=tree)
    shift_df = calculate_bd_shift(beta_dm, metadata_df, control_expr,
                                  bd_col=bd_col, fraction_col=fraction_col,
                                  nperm=nperm, alpha=alpha, bandwidth=bandwidth, seed=seed)

    for col, val in group_values.items():
        shift_df[col] = val
    shift_df['pair'] = label
    return shift_df


def calculate_bd_shift_pairs(abundance_df, metadata_df, pairs, group_values=None,
                             metric='weighted_unifrac', tree=None,
                             control_expr="Substrate == '12C-Con'",
                             bd_col='Buoyant_density', fraction_col='Fraction',
                             nperm=100, alpha=0.05, bandwidth=0.005,
                             depth=None, seed=42, rarefaction_seed=None, n_jobs=1):
    """
    Calculate the BD shift for every treatment/control comparison.

    Comparisons are independent and run in parallel when ``n_jobs > 1``.
    Messages logged by ``rarefy_table`` then stay in the worker processes;
    the per-comparison summary is always logged here.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Taxa abundance DataFrame with taxa as index, samples as columns
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    pairs : dict
        Comparison label -> list of sample IDs (see ``subset_pairs``)
    group_values : dict, optional
        Comparison label -> dict of group column values added to the output
    depth : int, None or False
        Rarefaction depth; None rarefies to the smallest sample, False skips
    seed : int
        Seed for the permutations
    rarefaction_seed : int, optional
        Seed for rarefaction (default: ``seed``)

    The remaining parameters are passed to ``calculate_beta_diversity`` and
    ``calculate_bd_shift``.

    Returns:
    --------
    pandas.DataFrame
        Concatenated BD shift tables with group columns and 'pair'
    """
    if not pairs:
        raise ValueError("No treatment/control comparisons to analyze")

    # Fail before any distance computation when density metadata is absent
    require_metadata_columns(metadata_df, [bd_col, fraction_col])

    if rarefaction_seed is None:
        rarefaction_seed = seed

    group_values = group_values or {}
    results = Parallel(n_jobs=n_jobs)(
        delayed(_bd_shift_pair)(label, abundance_df, metadata_df, sample_ids,
                                group_values.get(label, {}), metric, tree, control_expr,
                                bd_col, fraction_col, nperm, alpha, bandwidth, depth,
                                seed, rarefaction_seed)
        for label, sample_ids in pairs.items()
    )

    for label, shift_df in zip(pairs, results):
        logger.info(f"BD shift for {label}: {len(shift_df)} labeled fractions, {nperm} permutations")

    return pd.concat(results, ignore_index=True)


def find_consecutive_runs(flags, min_run=3):
    """
    Mark every element that belongs to a run of at least ``min_run`` True values.

    Parameters:
    -----------
    flags : array-like of bool
        Ordered boolean sequence
    min_run : int
        Minimum run length

    Returns:
    --------
    numpy.ndarray
        Boolean array, True where the element lies in a qualifying run
    """
    if min_run < 1:
        raise ValueError(f"min_run must be at least 1 (got {min_run})")

    flags = np.asarray(flags, dtype=bool)
    in_run = np.zeros(len(flags), dtype=bool)

    run_start = 0
    run_length = 0
    for i, flag in enumerate(flags):
        if not flag:
            run_length = 0
            continue
        if run_length == 0:
            run_start = i
        run_length += 1
        if run_length == min_run:
            in_run[run_start:i + 1] = True
        elif run_length > min_run:
            in_run[i] = True

    return in_run


def flag_shift_windows(shift_df, group_cols=None, bd_col='BD', dist_col='wmean_dist',
                       ci_col='wmean_dist_CI_high', min_run=3):
    """
    Flag BD points that are part of a significant BD shift window.

    A point exceeds when its observed distance is above the upper confidence
    bound. It is in a window when it exceeds and lies in a run of at least
    ``min_run`` consecutive exceeding points, ordered by BD within its group.

    Parameters:
    -----------
    shift_df : pandas.DataFrame
        BD shift table (see ``calculate_bd_shift``)
    group_cols : str or list of str, optional
        Columns identifying independent comparisons
    bd_col, dist_col, ci_col : str
        Buoyant density, observed distance and upper CI columns
    min_run : int
        Number of consecutive exceeding points that make a window

    Returns:
    --------
    pandas.DataFrame
        Copy of the input sorted by group and BD, with boolean 'exceeds'
        and 'in_window' columns
    """
    if isinstance(group_cols, str):
        group_cols = [group_cols]
    group_cols = list(group_cols or [])

    required = group_cols + [bd_col, dist_col, ci_col]
    missing = [col for col in required if col not in shift_df.columns]
    if missing:
        raise MissingColumnError(missing, shift_df.columns)

    flagged = shift_df.copy()
    for col in (bd_col, dist_col, ci_col):
        flagged[col] = flagged[col].astype(float)

    duplicated = flagged.duplicated(subset=group_cols + [bd_col])
    if duplicated.any():
        examples = flagged.loc[duplicated, bd_col].unique()[:3]
        raise DuplicateDensityError(
            f"{duplicated.sum()} duplicate buoyant density values within a group "
            f"(e.g. {', '.join(f'{v:g}' for v in examples)})"
        )

    flagged = flagged.sort_values(group_cols + [bd_col], kind='mergesort').reset_index(drop=True)
    exceeds = (flagged[dist_col] > flagged[ci_col]).values
    flagged['exceeds'] = exceeds

    in_window = np.zeros(len(flagged), dtype=bool)
    if group_cols:
        for idx in flagged.groupby(group_cols, sort=False, dropna=False).indices.values():
            in_window[idx] = find_consecutive_runs(exceeds[idx], min_run)
    else:
        in_window = find_consecutive_runs(exceeds, min_run)
    flagged['in_window'] = in_window

    return flagged


def summarize_shift_windows(flagged_df, group_cols=None, bd_col='BD'):
    """
    Collapse flagged BD points into one row per window.

    Returns:
    --------
    pandas.DataFrame
        Group columns plus BD_min, BD_max and n_points for each window
    """
    if isinstance(group_cols, str):
        group_cols = [group_cols]
    group_cols = list(group_cols or [])
    columns = group_cols + ['BD_min', 'BD_max', 'n_points']

    if 'in_window' not in flagged_df.columns:
        raise MissingColumnError(['in_window'], flagged_df.columns)

    if group_cols:
        grouped = flagged_df.groupby(group_cols, sort=False, dropna=False)
    else:
        grouped = [((), flagged_df)]

    windows = []
    for key, group in grouped:
        if not isinstance(key, tuple):
            key = (key,)
        group = group.sort_values(bd_col)
        in_window = group['in_window'].astype(bool)

        # Consecutive in-window points share a block id
        blocks = (in_window != in_window.shift()).cumsum()
        for _, block in group[in_window].groupby(blocks[in_window]):
            row = dict(zip(group_cols, key))
            row['BD_min'] = block[bd_col].min()
            row['BD_max'] = block[bd_col].max()
            row['n_points'] = len(block)
            windows.append(row)

    return pd.DataFrame(windows, columns=columns)
