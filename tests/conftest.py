"""Shared fixtures: a small synthetic SIP experiment."""

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

# Add tools directory to path
TOOLS_DIR = Path(__file__).resolve().parent.parent / 'tools'
if str(TOOLS_DIR) not in sys.path:
    sys.path.insert(0, str(TOOLS_DIR))

import matplotlib
matplotlib.use('Agg')


BUOYANT_DENSITIES = [1.690, 1.700, 1.710, 1.720, 1.730, 1.740, 1.750, 1.760]
TAXA = ['T1', 'T2', 'T3', 'T4', 'T5', 'T6']
NEWICK = "(((T1:0.1,T2:0.2):0.3,(T3:0.1,(T4:0.2,T5:0.1):0.2):0.4):0.1,T6:0.5);"


def make_gradient_data(seed=0):
    """Control and 13C-glucose gradients on two days; T1 gets heavy when labeled."""
    rng = np.random.default_rng(seed)
    base = np.array([40.0, 30.0, 20.0, 15.0, 10.0, 5.0])

    counts = {}
    records = []
    for substrate in ['12C-Con', '13C-Glu']:
        for day in [1, 3]:
            for fraction, bd in enumerate(BUOYANT_DENSITIES, start=1):
                sample_id = f"{substrate}_D{day}_F{fraction}"
                lam = base.copy()
                if substrate != '12C-Con' and bd >= 1.73:
                    lam[0] *= 8
                counts[sample_id] = rng.poisson(lam * 10)
                records.append({
                    'SampleID': sample_id,
                    'Substrate': substrate,
                    'Day': day,
                    'Fraction': fraction,
                    'Buoyant_density': bd,
                })

    abundance_df = pd.DataFrame(counts, index=TAXA)
    metadata_df = pd.DataFrame(records).set_index('SampleID')
    return abundance_df, metadata_df


@pytest.fixture
def gradient_data():
    return make_gradient_data()


@pytest.fixture
def tree_file(tmp_path):
    path = tmp_path / 'tree.nwk'
    path.write_text(NEWICK + '\n')
    return path
