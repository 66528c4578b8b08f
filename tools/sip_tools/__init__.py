"""
SIP analysis toolkit for exploratory analysis of stable isotope probing data.

This module provides functions for ordinating density gradient fractions,
estimating the buoyant density (BD) shift between labeled and unlabeled
gradients, and finding the BD windows to carry into MW-HR-SIP.

Usage:
    from sip_tools import load_metadata, subset_pairs, calculate_bd_shift_pairs, ...
"""

from .sip_utils import (
    MissingColumnError,
    setup_logger,
    load_config,
    override,
    load_abundance,
    load_metadata,
    require_metadata_columns,
    align_samples,
    subset_pairs
)

from .sip_diversity import (
    rarefy_table,
    load_tree,
    calculate_beta_diversity,
    calculate_nmds,
    calculate_pcoa,
    ordinate_pairs
)

from .sip_shift import (
    DuplicateDensityError,
    calculate_bd_shift,
    calculate_bd_shift_pairs,
    find_consecutive_runs,
    flag_shift_windows,
    summarize_shift_windows
)

from .sip_viz import (
    plot_ordination,
    plot_bd_shift
)

__version__ = "0.1.0"

__all__ = [
    'MissingColumnError',
    'setup_logger',
    'load_config',
    'override',
    'load_abundance',
    'load_metadata',
    'require_metadata_columns',
    'align_samples',
    'subset_pairs',
    'rarefy_table',
    'load_tree',
    'calculate_beta_diversity',
    'calculate_nmds',
    'calculate_pcoa',
    'ordinate_pairs',
    'DuplicateDensityError',
    'calculate_bd_shift',
    'calculate_bd_shift_pairs',
    'find_consecutive_runs',
    'flag_shift_windows',
    'summarize_shift_windows',
    'plot_ordination',
    'plot_bd_shift'
]
