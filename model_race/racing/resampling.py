# model_race/racing/resampling.py
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd
from sklearn.model_selection import KFold, StratifiedKFold, train_test_split

from model_race.racing.errors import InvalidConfiguration

logger = logging.getLogger(__name__)

RESAMPLING_METHODS = ('kfold', 'bootstrap')
MAX_BOOTSTRAP_ATTEMPTS = 100


@dataclass(frozen=True, eq=False)
class Dataset:
    """Tabular data with one designated target column. Never modified in place."""
    frame: pd.DataFrame
    target: str

    def __post_init__(self):
        if self.target not in self.frame.columns:
            raise InvalidConfiguration(f"Target column '{self.target}' not found in dataset")

    @property
    def n_rows(self) -> int:
        return len(self.frame)

    @property
    def features(self) -> pd.DataFrame:
        return self.frame.drop(columns=[self.target])

    @property
    def labels(self) -> pd.Series:
        return self.frame[self.target]

    @property
    def feature_names(self) -> List[str]:
        return [col for col in self.frame.columns if col != self.target]

    def take(self, indices: np.ndarray) -> Tuple[pd.DataFrame, pd.Series]:
        """Positional subset as (features, labels)"""
        subset = self.frame.iloc[indices]
        return subset.drop(columns=[self.target]), subset[self.target]


@dataclass(frozen=True, eq=False)
class Partition:
    """One train/validation split, owning its own index arrays"""
    partition_id: str
    train_index: np.ndarray
    validation_index: np.ndarray

    def __post_init__(self):
        train = np.array(self.train_index, dtype=np.int64, copy=True)
        validation = np.array(self.validation_index, dtype=np.int64, copy=True)
        train.setflags(write=False)
        validation.setflags(write=False)
        object.__setattr__(self, 'train_index', train)
        object.__setattr__(self, 'validation_index', validation)

    @property
    def n_train(self) -> int:
        return len(self.train_index)

    @property
    def n_validation(self) -> int:
        return len(self.validation_index)


def make_strata(labels: pd.Series, bins: int = 4) -> np.ndarray:
    """Stratum per row: the class for categorical targets, a quantile bin for numeric ones"""
    if pd.api.types.is_numeric_dtype(labels) and labels.nunique() > bins:
        codes = pd.qcut(labels, q=bins, labels=False, duplicates='drop')
        return np.asarray(codes.fillna(-1), dtype=np.int64)
    return pd.factorize(labels)[0]


class Resampler:
    """Produces train/validation partitions from a dataset"""

    def __init__(self, n_partitions: int = 10, method: str = 'kfold', stratify: bool = False,
                 strata_bins: int = 4, random_state: Optional[int] = 42):
        self.n_partitions = n_partitions
        self.method = method
        self.stratify = stratify
        self.strata_bins = strata_bins
        self.random_state = random_state

    def split(self, dataset: Dataset) -> List[Partition]:
        """Create `n_partitions` partitions in a fixed, reproducible order"""
        self._validate(dataset)

        if self.method == 'kfold':
            partitions = self._kfold(dataset)
        else:
            partitions = self._bootstrap(dataset)

        logger.info(
            f"Created {len(partitions)} {'stratified ' if self.stratify else ''}"
            f"{self.method} partitions from {dataset.n_rows} rows"
        )
        return partitions

    def _validate(self, dataset: Dataset):
        if self.method not in RESAMPLING_METHODS:
            raise InvalidConfiguration(
                f"Unknown resampling method '{self.method}', expected one of {RESAMPLING_METHODS}"
            )
        if self.n_partitions < 2:
            raise InvalidConfiguration(f"At least 2 partitions are required, got {self.n_partitions}")
        if dataset.n_rows < self.n_partitions:
            raise InvalidConfiguration(
                f"Dataset has {dataset.n_rows} rows, fewer than the {self.n_partitions} partitions requested"
            )
        if self.strata_bins < 1:
            raise InvalidConfiguration(f"strata_bins must be positive, got {self.strata_bins}")

    def _kfold(self, dataset: Dataset) -> List[Partition]:
        rows = np.arange(dataset.n_rows)

        strata = make_strata(dataset.labels, self.strata_bins) if self.stratify else None
        if strata is not None:
            counts = np.bincount(strata[strata >= 0])
            counts = counts[counts > 0]
            if counts.size == 0 or counts.max() < self.n_partitions:
                logger.warning(
                    f"No stratum has {self.n_partitions} rows, "
                    f"falling back to unstratified folds"
                )
                strata = None
            elif counts.min() < self.n_partitions:
                logger.warning(
                    f"Smallest stratum has {counts.min()} rows, so some of the {self.n_partitions} "
                    f"folds will not contain it"
                )

        if strata is not None:
            splitter = StratifiedKFold(n_splits=self.n_partitions, shuffle=True,
                                       random_state=self.random_state)
            splits = splitter.split(rows, strata)
        else:
            splitter = KFold(n_splits=self.n_partitions, shuffle=True, random_state=self.random_state)
            splits = splitter.split(rows)

        width = max(len(str(self.n_partitions)), 2)
        return [
            Partition(f"Fold{i:0{width}d}", train_idx, val_idx)
            for i, (train_idx, val_idx) in enumerate(splits, start=1)
        ]

    def _bootstrap(self, dataset: Dataset) -> List[Partition]:
        rng = np.random.default_rng(self.random_state)
        n_rows = dataset.n_rows

        if self.stratify:
            strata = make_strata(dataset.labels, self.strata_bins)
            groups = [np.flatnonzero(strata == s) for s in np.unique(strata)]
        else:
            groups = [np.arange(n_rows)]

        width = max(len(str(self.n_partitions)), 2)
        partitions = []
        for i in range(1, self.n_partitions + 1):
            for _ in range(MAX_BOOTSTRAP_ATTEMPTS):
                # Draw with replacement inside each stratum, keeping stratum sizes
                train_idx = np.concatenate([rng.choice(group, size=len(group), replace=True)
                                            for group in groups])
                oob = np.setdiff1d(np.arange(n_rows), train_idx)
                if len(oob) > 0:
                    break
            else:
                raise InvalidConfiguration(
                    f"Could not draw a bootstrap sample with out-of-bag rows after "
                    f"{MAX_BOOTSTRAP_ATTEMPTS} attempts"
                )
            partitions.append(Partition(f"Bootstrap{i:0{width}d}", np.sort(train_idx), oob))

        return partitions


def initial_split(dataset: Dataset, test_size: float = 0.2, stratify: bool = True,
                  strata_bins: int = 4, random_state: Optional[int] = 42) -> Tuple[Dataset, Dataset]:
    """Hold out a test set before any resampling"""
    if not 0 < test_size < 1:
        raise InvalidConfiguration(f"test_size must be between 0 and 1, got {test_size}")

    strata = make_strata(dataset.labels, strata_bins) if stratify else None
    try:
        train_frame, test_frame = train_test_split(
            dataset.frame, test_size=test_size, random_state=random_state, stratify=strata
        )
    except ValueError as e:
        raise InvalidConfiguration(f"Could not split dataset: {e}") from e

    return (
        Dataset(train_frame.reset_index(drop=True), dataset.target),
        Dataset(test_frame.reset_index(drop=True), dataset.target),
    )
