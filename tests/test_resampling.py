# tests/test_resampling.py
import numpy as np
import pandas as pd
import pytest

from model_race.racing.errors import InvalidConfiguration
from model_race.racing.resampling import (
    Dataset, Partition, Resampler, initial_split, make_strata
)

class TestDataset:

    def test_missing_target_rejected(self, regression_frame):
        with pytest.raises(InvalidConfiguration):
            Dataset(regression_frame, 'salary')

    def test_features_and_labels(self, regression_dataset):
        assert 'wage' not in regression_dataset.features.columns
        assert regression_dataset.labels.name == 'wage'
        assert regression_dataset.feature_names == ['age', 'tenure', 'rating', 'hours', 'department']

    def test_take_is_positional(self, regression_dataset):
        X, y = regression_dataset.take(np.array([0, 5, 5]))
        assert len(X) == 3
        assert y.iloc[1] == y.iloc[2] == regression_dataset.labels.iloc[5]

class TestPartition:

    def test_indices_are_copied_and_read_only(self):
        train = np.array([0, 1, 2])
        partition = Partition('Fold01', train, [3, 4])
        train[0] = 99

        assert partition.train_index[0] == 0
        assert partition.n_train == 3
        assert partition.n_validation == 2
        with pytest.raises(ValueError):
            partition.validation_index[0] = 7

class TestResampler:

    @pytest.mark.parametrize('k', [2, 5, 10])
    def test_kfold_produces_k_partitions(self, regression_dataset, k):
        partitions = Resampler(n_partitions=k).split(regression_dataset)

        assert len(partitions) == k
        assert all(p.n_validation > 0 for p in partitions)
        assert len({p.partition_id for p in partitions}) == k

    def test_kfold_validation_sets_cover_every_row_once(self, regression_dataset):
        partitions = Resampler(n_partitions=5).split(regression_dataset)
        validation = np.concatenate([p.validation_index for p in partitions])

        assert sorted(validation) == list(range(regression_dataset.n_rows))
        for p in partitions:
            assert not set(p.train_index) & set(p.validation_index)

    def test_fold_ids_are_ordered(self, regression_dataset):
        partitions = Resampler(n_partitions=3).split(regression_dataset)
        assert [p.partition_id for p in partitions] == ['Fold01', 'Fold02', 'Fold03']

    def test_same_seed_same_partitions(self, regression_dataset):
        first = Resampler(n_partitions=5, random_state=7).split(regression_dataset)
        second = Resampler(n_partitions=5, random_state=7).split(regression_dataset)

        for a, b in zip(first, second):
            assert np.array_equal(a.train_index, b.train_index)
            assert np.array_equal(a.validation_index, b.validation_index)

    def test_stratified_kfold_keeps_class_balance(self, classification_dataset):
        partitions = Resampler(n_partitions=5, stratify=True).split(classification_dataset)
        overall = classification_dataset.labels.mean()

        for p in partitions:
            fold_rate = classification_dataset.labels.iloc[p.validation_index].mean()
            assert abs(fold_rate - overall) < 0.1

    def test_stratified_numeric_target(self, regression_dataset):
        partitions = Resampler(n_partitions=5, stratify=True, strata_bins=4).split(regression_dataset)
        assert len(partitions) == 5

    def test_small_stratum_still_yields_every_fold(self, caplog):
        frame = pd.DataFrame({'x': range(100), 'y': [1] * 6 + [0] * 94})
        dataset = Dataset(frame, 'y')

        partitions = Resampler(n_partitions=10, stratify=True).split(dataset)

        assert len(partitions) == 10
        assert 'Smallest stratum has 6 rows' in caplog.text
        positives = [int(frame['y'].to_numpy()[p.validation_index].sum()) for p in partitions]
        # Stratification still spreads the rare class: no fold gets more than one
        assert sum(positives) == 6 and max(positives) == 1

    def test_falls_back_to_plain_folds_when_no_stratum_is_large_enough(self, caplog):
        frame = pd.DataFrame({'x': range(8), 'y': ['a', 'a', 'b', 'b', 'c', 'c', 'd', 'd']})

        partitions = Resampler(n_partitions=4, stratify=True).split(Dataset(frame, 'y'))

        assert len(partitions) == 4
        assert 'falling back to unstratified folds' in caplog.text
        assert sorted(np.concatenate([p.validation_index for p in partitions])) == list(range(8))

    def test_bootstrap_partitions(self, regression_dataset):
        partitions = Resampler(n_partitions=10, method='bootstrap').split(regression_dataset)

        assert len(partitions) == 10
        assert partitions[0].partition_id == 'Bootstrap01'
        for p in partitions:
            assert p.n_train == regression_dataset.n_rows
            assert p.n_validation > 0
            # Out-of-bag rows never appear in the bootstrap sample
            assert not set(p.validation_index) & set(p.train_index)

    def test_stratified_bootstrap_keeps_stratum_sizes(self, classification_dataset):
        partitions = Resampler(n_partitions=3, method='bootstrap', stratify=True).split(classification_dataset)
        labels = classification_dataset.labels.to_numpy()

        for p in partitions:
            assert labels[p.train_index].sum() == labels.sum()

    def test_single_partition_rejected(self, regression_dataset):
        with pytest.raises(InvalidConfiguration):
            Resampler(n_partitions=1).split(regression_dataset)

    def test_more_partitions_than_rows_rejected(self):
        frame = pd.DataFrame({'x': range(4), 'y': range(4)})
        with pytest.raises(InvalidConfiguration):
            Resampler(n_partitions=5).split(Dataset(frame, 'y'))

    def test_unknown_method_rejected(self, regression_dataset):
        with pytest.raises(InvalidConfiguration):
            Resampler(method='jackknife').split(regression_dataset)

class TestStrataAndInitialSplit:

    def test_numeric_target_binned(self):
        strata = make_strata(pd.Series(np.arange(100, dtype=float)), bins=4)
        assert sorted(np.unique(strata)) == [0, 1, 2, 3]

    def test_categorical_target_factorized(self):
        strata = make_strata(pd.Series(['a', 'b', 'a', 'c']))
        assert list(strata) == [0, 1, 0, 2]

    def test_initial_split_sizes(self, classification_dataset):
        train, test = initial_split(classification_dataset, test_size=0.25)

        assert train.n_rows == 150
        assert test.n_rows == 50
        assert list(train.frame.index) == list(range(150))

    def test_initial_split_invalid_size(self, classification_dataset):
        with pytest.raises(InvalidConfiguration):
            initial_split(classification_dataset, test_size=1.5)
