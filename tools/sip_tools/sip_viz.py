"""
Visualization functions for SIP gradient ordinations and BD shifts.
"""

import math

import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns


def _panel_grid(n_panels, ncols=3, panel_size=(5, 4)):
    """Create a grid of axes with unused panels hidden."""
    if n_panels < 1:
        raise ValueError("Nothing to plot")
    ncols = max(1, min(ncols, n_panels))
    nrows = math.ceil(n_panels / ncols)
    fig, axes = plt.subplots(nrows, ncols, figsize=(panel_size[0] * ncols, panel_size[1] * nrows),
                             squeeze=False)
    axes = axes.ravel()
    for ax in axes[n_panels:]:
        ax.axis('off')
    return fig, axes[:n_panels]


def plot_ordination(ord_df, color_var='Buoyant_density', style_var='Substrate', pair_col='pair',
                    ncols=3):
    """
    Create ordination plots of gradient fractions, one panel per comparison.

    Parameters:
    -----------
    ord_df : pandas.DataFrame
        Output of ``ordinate_pairs`` (NMDS1/NMDS2 or PC1/PC2 plus metadata)
    color_var : str
        Metadata variable for coloring points
    style_var : str, optional
        Metadata variable for marker shapes
    pair_col : str
        Column identifying the comparison
    ncols : int
        Number of panel columns

    Returns:
    --------
    matplotlib.figure.Figure
        Ordination plot figure
    """
    if 'NMDS1' in ord_df.columns:
        x_col, y_col, method = 'NMDS1', 'NMDS2', 'NMDS'
    elif 'PC1' in ord_df.columns:
        x_col, y_col, method = 'PC1', 'PC2', 'PCoA'
    else:
        raise ValueError("Ordination table has neither NMDS nor PCoA coordinates")

    if style_var is not None and style_var not in ord_df.columns:
        style_var = None

    labels = list(pd.unique(ord_df[pair_col]))
    fig, axes = _panel_grid(len(labels), ncols=ncols)

    for ax, label in zip(axes, labels):
        pair_df = ord_df[ord_df[pair_col] == label]
        sns.scatterplot(
            data=pair_df,
            x=x_col,
            y=y_col,
            hue=color_var,
            style=style_var,
            palette='viridis',
            s=60,
            ax=ax
        )
        ax.set_title(label, fontsize=10)

        # Add stress value if available
        if 'stress' in pair_df.columns and pair_df['stress'].notna().any():
            ax.text(0.02, 0.98, f"Stress: {pair_df['stress'].iloc[0]:.3f}",
                    transform=ax.transAxes, va='top', ha='left', fontsize=8,
                    bbox=dict(boxstyle='round', facecolor='white', alpha=0.8))

        if ax.get_legend() is not None:
            sns.move_legend(ax, 'upper left', bbox_to_anchor=(1.02, 1), fontsize=8)

    fig.suptitle(f'{method} of gradient fractions')
    plt.tight_layout()
    return fig


def plot_bd_shift(flagged_df, pair_col=None, bd_col='BD', dist_col='wmean_dist',
                  ci_low_col='wmean_dist_CI_low', ci_high_col='wmean_dist_CI_high', ncols=2):
    """
    Plot observed BD shift against its null confidence interval.

    Points in a BD shift window are highlighted.

    Parameters:
    -----------
    flagged_df : pandas.DataFrame
        Output of ``flag_shift_windows``
    pair_col : str, optional
        Column identifying the comparison; one panel per comparison

    Returns:
    --------
    matplotlib.figure.Figure
        BD shift figure
    """
    if pair_col is None:
        panels = [('BD shift', flagged_df)]
    else:
        panels = [(label, flagged_df[flagged_df[pair_col] == label])
                  for label in pd.unique(flagged_df[pair_col])]

    fig, axes = _panel_grid(len(panels), ncols=ncols, panel_size=(6, 3.5))

    for ax, (label, panel_df) in zip(axes, panels):
        panel_df = panel_df.sort_values(bd_col)
        ax.fill_between(panel_df[bd_col], panel_df[ci_low_col], panel_df[ci_high_col],
                        color='grey', alpha=0.3, label='Null CI')
        ax.plot(panel_df[bd_col], panel_df[dist_col], color='black', linewidth=1)

        if 'in_window' in panel_df.columns:
            in_window = panel_df['in_window'].astype(bool)
        else:
            in_window = pd.Series(False, index=panel_df.index)
        ax.scatter(panel_df.loc[~in_window, bd_col], panel_df.loc[~in_window, dist_col],
                   color='black', s=20, label='Outside window')
        ax.scatter(panel_df.loc[in_window, bd_col], panel_df.loc[in_window, dist_col],
                   color='red', s=30, label='BD shift window')

        ax.set_title(label, fontsize=10)
        ax.set_xlabel('Buoyant density (g/ml)')
        ax.set_ylabel('Weighted mean distance')

    axes[0].legend(loc='upper left', fontsize=8)
    plt.tight_layout()
    return fig
