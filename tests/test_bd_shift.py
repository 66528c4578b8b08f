"""
Tests for the BD shift statistic and its per-comparison driver.
"""

import logging

import numpy as np
import pandas as pd
import pytest
from joblib import Parallel, delayed
from scipy import stats
from skbio import DistanceMatrix

from sip_tools import (
    MissingColumnError,
    calculate_bd_shift,
    calculate_bd_shift_pairs,
    flag_shift_windows,
    require_metadata_columns,
    subset_pairs,
)

CONTROL = "Substrate == '12C-Con'"


def small_metadata():
    return pd.DataFrame({
        'Substrate': ['12C-Con', '12C-Con', '13C-Glu', '13C-Glu'],
        'Fraction': [1, 2, 1, 2],
        'Buoyant_density': [1.70, 1.72, 1.70, 1.72],
    }, index=['C1', 'C2', 'L1', 'L2'])


def small_distances():
    data = np.array([
        [0.0, 0.3, 0.2, 0.5],
        [0.3, 0.0, 0.6, 0.4],
        [0.2, 0.6, 0.0, 0.7],
        [0.5, 0.4, 0.7, 0.0],
    ])
    return DistanceMatrix(data, ids=['C1', 'C2', 'L1', 'L2'])


def test_weighted_mean_distance():
    shift_df = calculate_bd_shift(small_distances(), small_metadata(), CONTROL,
                                  nperm=5, bandwidth=0.01, seed=1)

    near, far = stats.norm.pdf(0, scale=0.01), stats.norm.pdf(0.02, scale=0.01)
    expected_l1 = (0.2 * near + 0.6 * far) / (near + far)
    expected_l2 = (0.5 * far + 0.4 * near) / (near + far)

    assert shift_df['Sample'].tolist() == ['L1', 'L2']
    assert shift_df['Fraction'].tolist() == [1, 2]
    assert shift_df['BD'].tolist() == [1.70, 1.72]
    assert shift_df['wmean_dist'].tolist() == pytest.approx([expected_l1, expected_l2])


def test_output_columns_and_ci_order():
    shift_df = calculate_bd_shift(small_distances(), small_metadata(), CONTROL, nperm=20, seed=3)

    assert list(shift_df.columns) == ['Sample', 'Fraction', 'BD', 'wmean_dist',
                                      'wmean_dist_CI_low', 'wmean_dist_CI_high']
    assert (shift_df['wmean_dist_CI_low'] <= shift_df['wmean_dist_CI_high']).all()


def test_permutations_are_seeded():
    first = calculate_bd_shift(small_distances(), small_metadata(), CONTROL, nperm=30, seed=5)
    second = calculate_bd_shift(small_distances(), small_metadata(), CONTROL, nperm=30, seed=5)
    pd.testing.assert_frame_equal(first, second)


def test_identical_communities_show_no_shift():
    ids = ['C1', 'C2', 'L1', 'L2']
    dm = DistanceMatrix(np.zeros((4, 4)), ids=ids)
    shift_df = calculate_bd_shift(dm, small_metadata(), CONTROL, nperm=10, seed=0)

    assert (shift_df['wmean_dist'] == 0).all()
    assert (shift_df['wmean_dist_CI_high'] == 0).all()
    assert not flag_shift_windows(shift_df)['exceeds'].any()


def test_far_fractions_fall_back_to_unweighted_mean():
    metadata_df = small_metadata()
    metadata_df.loc['L2', 'Buoyant_density'] = 5.0
    shift_df = calculate_bd_shift(small_distances(), metadata_df, CONTROL, nperm=2, seed=0)

    far_row = shift_df[shift_df['Sample'] == 'L2'].iloc[0]
    assert far_row['wmean_dist'] == pytest.approx(0.45)


def test_missing_density_column_raises():
    metadata_df = small_metadata().rename(columns={'Buoyant_density': 'BD'})
    with pytest.raises(MissingColumnError) as excinfo:
        calculate_bd_shift(small_distances(), metadata_df, CONTROL)
    assert excinfo.value.missing == ['Buoyant_density']


def test_missing_fraction_column_raises():
    metadata_df = small_metadata().drop(columns='Fraction')
    with pytest.raises(MissingColumnError):
        calculate_bd_shift(small_distances(), metadata_df, CONTROL)


def test_no_control_samples_raises():
    with pytest.raises(ValueError):
        calculate_bd_shift(small_distances(), small_metadata(), "Substrate == '12C-Other'")


def test_only_control_samples_raises():
    with pytest.raises(ValueError):
        calculate_bd_shift(small_distances(), small_metadata(), "Fraction > 0")


def test_samples_without_metadata_raise():
    with pytest.raises(ValueError):
        calculate_bd_shift(small_distances(), small_metadata().drop(index='L2'), CONTROL)


@pytest.mark.parametrize('kwargs', [{'nperm': 0}, {'alpha': 1.5}, {'bandwidth': 0}])
def test_invalid_parameters_raise(kwargs):
    with pytest.raises(ValueError):
        calculate_bd_shift(small_distances(), small_metadata(), CONTROL, **kwargs)


def test_bd_shift_pairs(gradient_data):
    abundance_df, metadata_df = gradient_data
    pairs, group_values = subset_pairs(metadata_df, group_cols=['Substrate', 'Day'],
                                       control_expr=CONTROL)

    shift_df = calculate_bd_shift_pairs(abundance_df, metadata_df, pairs,
                                        group_values=group_values,
                                        metric='braycurtis',
                                        control_expr=CONTROL,
                                        nperm=20, seed=1)

    assert set(shift_df['pair']) == set(pairs)
    assert (shift_df['Substrate'] == '13C-Glu').all()
    assert sorted(shift_df['Day'].unique()) == [1, 3]
    assert len(shift_df) == 16
    assert shift_df['Sample'].str.startswith('13C-Glu').all()

    flagged = flag_shift_windows(shift_df, group_cols=['Substrate', 'Day'])
    assert len(flagged) == 16


def test_bd_shift_pairs_detects_heavy_label(gradient_data):
    abundance_df, metadata_df = gradient_data
    pairs, group_values = subset_pairs(metadata_df, group_cols=['Substrate', 'Day'],
                                       control_expr=CONTROL)

    shift_df = calculate_bd_shift_pairs(abundance_df, metadata_df, pairs,
                                        group_values=group_values,
                                        metric='braycurtis',
                                        control_expr=CONTROL,
                                        nperm=50, depth=False, seed=1)

    heavy = shift_df[shift_df['BD'] >= 1.73]
    light = shift_df[shift_df['BD'] < 1.73]
    assert heavy['wmean_dist'].mean() > light['wmean_dist'].mean()


def test_bd_shift_pairs_checks_metadata_first(gradient_data):
    abundance_df, metadata_df = gradient_data
    pairs = {'all': list(metadata_df.index)}

    with pytest.raises(MissingColumnError):
        calculate_bd_shift_pairs(abundance_df, metadata_df.drop(columns='Fraction'), pairs,
                                 metric='braycurtis', control_expr=CONTROL)


def test_bd_shift_pairs_requires_pairs(gradient_data):
    abundance_df, metadata_df = gradient_data
    with pytest.raises(ValueError):
        calculate_bd_shift_pairs(abundance_df, metadata_df, {}, metric='braycurtis')


def test_bd_shift_pairs_rarefaction_seed_is_separate(gradient_data):
    abundance_df, metadata_df = gradient_data
    pairs, group_values = subset_pairs(metadata_df, group_cols=['Substrate', 'Day'],
                                       control_expr=CONTROL)

    runs = [calculate_bd_shift_pairs(abundance_df, metadata_df, pairs,
                                     group_values=group_values,
                                     metric='braycurtis', control_expr=CONTROL,
                                     nperm=20, seed=seed, rarefaction_seed=7)
            for seed in (1, 2)]

    # Only the permutation CI depends on the permutation seed
    np.testing.assert_array_equal(runs[0]['wmean_dist'], runs[1]['wmean_dist'])


def test_bd_shift_pairs_parallel_matches_serial(gradient_data):
    abundance_df, metadata_df = gradient_data
    pairs, group_values = subset_pairs(metadata_df, group_cols=['Substrate', 'Day'],
                                       control_expr=CONTROL)
    kwargs = dict(group_values=group_values, metric='braycurtis', control_expr=CONTROL,
                  nperm=20, seed=3, rarefaction_seed=5)

    serial = calculate_bd_shift_pairs(abundance_df, metadata_df, pairs, n_jobs=1, **kwargs)
    parallel = calculate_bd_shift_pairs(abundance_df, metadata_df, pairs, n_jobs=2, **kwargs)

    pd.testing.assert_frame_equal(serial, parallel)


def test_bd_shift_pairs_logs_each_comparison_in_parallel(gradient_data, caplog):
    abundance_df, metadata_df = gradient_data
    pairs, group_values = subset_pairs(metadata_df, group_cols=['Substrate', 'Day'],
                                       control_expr=CONTROL)

    with caplog.at_level(logging.INFO, logger='sip_tools'):
        calculate_bd_shift_pairs(abundance_df, metadata_df, pairs,
                                 group_values=group_values, metric='braycurtis',
                                 control_expr=CONTROL, nperm=10, n_jobs=2)

    for label in pairs:
        assert f"BD shift for {label}" in caplog.text


def test_missing_column_error_survives_worker():
    metadata_df = small_metadata()

    with pytest.raises(MissingColumnError) as excinfo:
        Parallel(n_jobs=2)(
            delayed(require_metadata_columns)(metadata_df, [col])
            for col in ['Fraction', 'Heavy_fraction']
        )

    assert excinfo.value.missing == ['Heavy_fraction']
    assert 'Buoyant_density' in excinfo.value.available
