#!/usr/bin/env python3
"""
Ordinate the density gradient fractions of each treatment/control comparison.

This script:
1. Loads the count table, sample metadata and phylogeny
2. Splits the dataset into treatment/control comparisons
3. Rarefies each comparison to an even depth
4. Calculates beta diversity (weighted UniFrac by default)
5. Runs NMDS (or PCoA) per comparison
6. Saves the coordinates and an ordination figure

Usage:
    python scripts/01_sip_ordination.py [--config CONFIG_FILE]
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
    align_samples,
    subset_pairs,
    load_tree,
    ordinate_pairs,
    plot_ordination
)


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Ordinate SIP gradient fractions')
    parser.add_argument('--config', type=str, default='config/analysis_parameters.yml',
                        help='Path to configuration file')
    parser.add_argument('--output-dir', type=str, default='results',
                        help='Directory for output files (default: results)')
    parser.add_argument('--method', choices=['NMDS', 'PCoA'], default=None,
                        help='Ordination method (default: from config)')
    parser.add_argument('--n-jobs', type=int, default=None,
                        help='Comparisons to process in parallel (default: from config)')
    parser.add_argument('--log-file', default=None,
                        help='Path to log file (default: log to console only)')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level (default: INFO)')
    return parser.parse_args()


def main():
    """Main function to ordinate gradient fractions."""
    args = parse_args()
    logger = setup_logger(log_file=args.log_file, log_level=getattr(logging, args.log_level))

    config = load_config(project_root / args.config)
    data_cfg = config['data']
    meta_cfg = config['metadata']
    div_cfg = config['diversity']

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
        abundance_df, metadata_df = align_samples(abundance_df, metadata_df)

        tree = None
        if 'unifrac' in div_cfg['metric']:
            tree = load_tree(project_root / data_cfg['tree_file'])

        pairs, _ = subset_pairs(metadata_df,
                                group_cols=meta_cfg['group_variables'],
                                control_expr=meta_cfg['control_expression'],
                                pair_expr=meta_cfg.get('pair_expression'))

        method = override(args.method, div_cfg['ordination_method'])
        n_jobs = override(args.n_jobs, config['parallel']['n_jobs'])
        logger.info(f"Ordinating {len(pairs)} comparisons with {method} on {div_cfg['metric']} distances")

        ord_df = ordinate_pairs(abundance_df, metadata_df, pairs,
                                metric=div_cfg['metric'],
                                tree=tree,
                                method=method,
                                depth=config['rarefaction']['depth'],
                                seed=div_cfg['seed'],
                                rarefaction_seed=config['rarefaction']['seed'],
                                n_jobs=n_jobs)
    except Exception as e:
        logger.error(f"Ordination failed: {str(e)}")
        return 1

    # Save coordinates
    ord_file = tables_dir / f"ordination_{method.lower()}.csv"
    ord_df.to_csv(ord_file, index=False)
    logger.info(f"Ordination coordinates saved to {ord_file}")

    # Create ordination plot
    fig = plot_ordination(ord_df,
                          color_var=meta_cfg['bd_column'],
                          style_var=meta_cfg['group_variables'][0])
    fig_file = figures_dir / f"ordination_{method.lower()}.png"
    fig.savefig(fig_file, dpi=config['visualization']['figure_dpi'], bbox_inches='tight')
    plt.close(fig)
    logger.info(f"Ordination plot saved to {fig_file}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
