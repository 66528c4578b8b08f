#!/usr/bin/env python3
"""
Estimate the buoyant density shift of each labeled gradient and find BD windows.

This script:
1. Loads the count table, sample metadata and phylogeny
2. Checks that the density and fraction metadata columns exist
3. Splits the dataset into treatment/control comparisons
4. Calculates the weighted mean distance of each labeled fraction to the
   control gradient, with a permutation confidence interval
5. Flags BD windows with at least three consecutive shifted fractions
6. Saves the BD shift table, the window summary and a BD shift figure

Usage:
    python scripts/02_bd_shift.py [--config CONFIG_FILE]
"""

import argparse
import logging
import sys
from pathlib import Path

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

# Add tools directory to Python path
project_root = Path(__file__).resolve().parents[1]
tools_dir = project_root / 'tools'
sys.path.append(str(tools_dir))

from sip_tools import (
    setup_logger,
    load_config,
    override,
    load_abundance,
    load_metadata,
    require_metadata_columns,
    align_samples,
    subset_pairs,
    load_tree,
    calculate_bd_shift_pairs,
    flag_shift_windows,
    summarize_shift_windows,
    plot_bd_shift
)


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Estimate BD shifts of labeled gradients')
    parser.add_argument('--config', type=str, default='config/analysis_parameters.yml',
                        help='Path to configuration file')
    parser.add_argument('--output-dir', type=str, default='results',
                        help='Directory for output files (default: results)')
    parser.add_argument('--permutations', type=int, default=None,
                        help='Number of permutations for the null CI (default: from config)')
    parser.add_argument('--n-jobs', type=int, default=None,
                        help='Comparisons to process in parallel (default: from config)')
    parser.add_argument('--log-file', default=None,
                        help='Path to log file (default: log to console only)')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level (default: INFO)')
    return parser.parse_args()


def main():
    """Main function to estimate BD shifts."""
    args = parse_args()
    logger = setup_logger(log_file=args.log_file, log_level=getattr(logging, args.log_level))

    config = load_config(project_root / args.config)
    data_cfg = config['data']
    meta_cfg = config['metadata']
    shift_cfg = config['bd_shift']
    group_cols = meta_cfg['group_variables']

    # Set up paths
    results_dir = project_root / args.output_dir
    figures_dir = results_dir / 'figures'
    tables_dir = results_dir / 'tables'
    figures_dir.mkdir(exist_ok=True, parents=True)
    tables_dir.mkdir(exist_ok=True, parents=True)

    try:
        abundance_df = load_abundance(project_root / data_cfg['abundance_file'])
        metadata_df = load_metadata(project_root / data_cfg['metadata_file'],
                                    meta_cfg['sample_id_column'])

        # Density and fraction columns must exist before any distance work
        require_metadata_columns(metadata_df, [meta_cfg['bd_column'], meta_cfg['fraction_column']])
        abundance_df, metadata_df = align_samples(abundance_df, metadata_df)

        metric = config['diversity']['metric']
        tree = load_tree(project_root / data_cfg['tree_file']) if 'unifrac' in metric else None

        pairs, group_values = subset_pairs(metadata_df,
                                           group_cols=group_cols,
                                           control_expr=meta_cfg['control_expression'],
                                           pair_expr=meta_cfg.get('pair_expression'))

        nperm = override(args.permutations, shift_cfg['permutations'])
        n_jobs = override(args.n_jobs, config['parallel']['n_jobs'])
        logger.info(f"Calculating BD shift for {len(pairs)} comparisons ({nperm} permutations)")

        shift_df = calculate_bd_shift_pairs(abundance_df, metadata_df, pairs,
                                            group_values=group_values,
                                            metric=metric,
                                            tree=tree,
                                            control_expr=meta_cfg['control_expression'],
                                            bd_col=meta_cfg['bd_column'],
                                            fraction_col=meta_cfg['fraction_column'],
                                            nperm=nperm,
                                            alpha=shift_cfg['alpha'],
                                            bandwidth=shift_cfg['bandwidth'],
                                            depth=config['rarefaction']['depth'],
                                            seed=shift_cfg['seed'],
                                            rarefaction_seed=config['rarefaction']['seed'],
                                            n_jobs=n_jobs)

        flagged_df = flag_shift_windows(shift_df, group_cols=group_cols, min_run=shift_cfg['min_run'])
    except Exception as e:
        logger.error(f"BD shift analysis failed: {str(e)}")
        return 1

    # Save BD shift table
    shift_file = tables_dir / 'bd_shift.csv'
    flagged_df.to_csv(shift_file, index=False)
    logger.info(f"BD shift table saved to {shift_file}")

    # Summarize windows for MW-HR-SIP
    windows_df = summarize_shift_windows(flagged_df, group_cols=group_cols)
    windows_file = tables_dir / 'bd_shift_windows.csv'
    windows_df.to_csv(windows_file, index=False)
    if windows_df.empty:
        logger.info("No BD shift windows found")
    else:
        logger.info(f"BD shift windows:\n{windows_df.to_string(index=False)}")
    logger.info(f"Window summary saved to {windows_file}")

    # Create BD shift plot
    fig = plot_bd_shift(flagged_df, pair_col='pair')
    fig_file = figures_dir / 'bd_shift.png'
    fig.savefig(fig_file, dpi=config['visualization']['figure_dpi'], bbox_inches='tight')
    plt.close(fig)
    logger.info(f"BD shift plot saved to {fig_file}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
