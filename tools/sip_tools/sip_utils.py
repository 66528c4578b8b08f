"""
Utility functions for loading, validating and subsetting SIP gradient data.
"""

import logging
from collections import OrderedDict
from pathlib import Path
from string import Template

import pandas as pd
import yaml


logger = logging.getLogger(__name__)


class MissingColumnError(KeyError):
    """Raised when a required metadata or result column is absent."""

    def __init__(self, missing, available=None):
        self.missing = list(missing)
        self.available = list(available) if available is not None else None
        message = f"Required column(s) not found: {', '.join(map(str, self.missing))}"
        if self.available is not None:
            message += f" (available: {', '.join(map(str, self.available))})"
        super().__init__(message)

    def __str__(self):
        return self.args[0]

    def __reduce__(self):
        # Picklable for joblib workers
        return (type(self), (self.missing, self.available))


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logger(name='sip_tools', log_file=None, log_level=logging.INFO):
    """
    Configure the package logger for a script run.

    Handlers attached by an earlier call are closed and replaced, so calling
    this more than once never duplicates output.

    Parameters:
    -----------
    name : str
        Logger name; module loggers of the package propagate to 'sip_tools'
    log_file : str or Path, optional
        Also write records to this file
    log_level : int or str
        Level number or name, e.g. logging.DEBUG or 'DEBUG'

    Returns:
    --------
    logging.Logger
    """
    if isinstance(log_level, str):
        level_name = log_level
        log_level = logging.getLevelName(level_name.upper())
        if not isinstance(log_level, int):
            raise ValueError(f"Unknown log level: {level_name}")

    logger = logging.getLogger(name)
    logger.setLevel(log_level)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in handlers:
        handler.setLevel(log_level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def load_config(config_path):
    with open(config_path, 'r') as file:
        config = yaml.safe_load(file)
    return config


def override(cli_value, config_value):
    """Return the command-line value when one was given, else the config value."""
    return config_value if cli_value is None else cli_value


def _delimiter_for(filepath):
    suffix = Path(filepath).suffix.lower()
    return '\t' if suffix in ('.tsv', '.txt', '.tab') else ','


def load_abundance(filepath):
    """
    Load a taxa x samples count table.

    Parameters:
    -----------
    filepath : str or Path
        Path to a CSV or TSV file with taxa as rows and samples as columns

    Returns:
    --------
    pandas.DataFrame
        Count table with taxa as index, samples as columns
    """
    abundance_df = pd.read_csv(filepath, sep=_delimiter_for(filepath), index_col=0)
    abundance_df.index = abundance_df.index.astype(str)
    abundance_df.columns = abundance_df.columns.astype(str)

    # Empty cells are absent taxa
    abundance_df = abundance_df.fillna(0)

    logger.info(f"Loaded abundance table: {abundance_df.shape[0]} taxa, "
                f"{abundance_df.shape[1]} samples")
    return abundance_df


def load_metadata(filepath, sample_id_column='SampleID'):
    """
    Load sample metadata from a CSV or TSV file.

    Parameters:
    -----------
    filepath : str or Path
        Path to the metadata file
    sample_id_column : str
        Column name for sample IDs

    Returns:
    --------
    pandas.DataFrame
        Metadata DataFrame with sample IDs as index
    """
    metadata_df = pd.read_csv(filepath, sep=_delimiter_for(filepath))

    # Check if the sample ID column exists
    if sample_id_column not in metadata_df.columns:
        raise MissingColumnError([sample_id_column], metadata_df.columns)

    # Set index and remove any duplicate sample IDs
    metadata_df[sample_id_column] = metadata_df[sample_id_column].astype(str)
    metadata_df = metadata_df.set_index(sample_id_column)
    if metadata_df.index.duplicated().any():
        logger.warning(f"Found {metadata_df.index.duplicated().sum()} duplicate sample IDs in metadata")
        metadata_df = metadata_df[~metadata_df.index.duplicated(keep='first')]

    return metadata_df


def require_metadata_columns(metadata_df, columns):
    """
    Check that every required column is present in the metadata.

    Raises MissingColumnError naming all absent columns.
    """
    missing = [col for col in columns if col not in metadata_df.columns]
    if missing:
        raise MissingColumnError(missing, metadata_df.columns)


def align_samples(abundance_df, metadata_df):
    """
    Restrict abundance and metadata tables to their shared samples.

    Returns:
    --------
    tuple of pandas.DataFrame
        (abundance_df, metadata_df) with matching samples in the same order
    """
    common_samples = [s for s in abundance_df.columns if s in metadata_df.index]
    logger.info(f"Samples with both abundance and metadata: {len(common_samples)}")

    if not common_samples:
        raise ValueError("No sample IDs are shared between the abundance table and metadata")

    n_dropped = abundance_df.shape[1] - len(common_samples)
    if n_dropped:
        logger.warning(f"Dropping {n_dropped} abundance samples without metadata")

    return abundance_df[common_samples], metadata_df.loc[common_samples]


def _pair_label(group_cols, values):
    return ' & '.join(f"{col}={val}" for col, val in zip(group_cols, values))


def subset_pairs(metadata_df, group_cols=('Substrate', 'Day'),
                 control_expr="Substrate == '12C-Con'", pair_expr=None):
    """
    Split one gradient dataset into treatment/control comparisons.

    Treatment groups are the unique combinations of ``group_cols`` among the
    samples that do not match ``control_expr``. Each comparison holds the
    group's samples plus the control samples that share the remaining group
    columns (e.g. the same Day). ``pair_expr`` replaces that rule with a
    pandas query template whose ``${column}`` placeholders are filled from
    the group values, e.g.
    ``"(Substrate == '${Substrate}' & Day == ${Day}) | (Substrate == '12C-Con' & Day == ${Day})"``.

    Parameters:
    -----------
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    group_cols : sequence of str
        Columns identifying a treatment group
    control_expr : str
        pandas query selecting the unlabeled control samples
    pair_expr : str, optional
        Template query selecting a comparison's samples

    Returns:
    --------
    tuple
        (OrderedDict label -> list of sample IDs,
         OrderedDict label -> dict of group column values)
    """
    group_cols = list(group_cols)
    require_metadata_columns(metadata_df, group_cols)

    control_ids = metadata_df.query(control_expr).index
    if len(control_ids) == 0:
        raise ValueError(f"No control samples match expression: {control_expr}")

    treatments = metadata_df.loc[~metadata_df.index.isin(control_ids)]
    groups = treatments[group_cols].drop_duplicates()
    groups = groups.sort_values(group_cols)

    pairs = OrderedDict()
    group_values = OrderedDict()

    for _, row in groups.iterrows():
        values = [row[col] for col in group_cols]
        label = _pair_label(group_cols, values)

        if pair_expr is not None:
            query = Template(pair_expr).substitute({col: val for col, val in zip(group_cols, values)})
            sample_ids = list(metadata_df.query(query).index)
        else:
            in_group = (treatments[group_cols] == pd.Series(values, index=group_cols)).all(axis=1)
            controls = metadata_df.loc[control_ids]
            for col, val in zip(group_cols[1:], values[1:]):
                controls = controls[controls[col] == val]
            if controls.empty:
                logger.warning(f"No control gradient for comparison {label}; skipping")
                continue
            sample_ids = list(treatments.index[in_group]) + list(controls.index)

        if not sample_ids:
            logger.warning(f"No samples selected for comparison {label}; skipping")
            continue

        pairs[label] = sample_ids
        group_values[label] = dict(zip(group_cols, values))
        logger.debug(f"Comparison {label}: {len(sample_ids)} samples")

    logger.info(f"Created {len(pairs)} treatment/control comparisons")
    return pairs, group_values
