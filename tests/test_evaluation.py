# tests/test_evaluation.py
import math

import numpy as np
import pandas as pd
import pytest

from model_race.racing.algorithms import build_estimator, default_grids, get_algorithm
from model_race.racing.candidates import Candidate, CandidateSet
from model_race.racing.errors import FitError, InvalidConfiguration, PartitionError
from model_race.racing.evaluation import STATUS_FAILED, STATUS_OK, Evaluator
from model_race.racing.metrics import Metric, calculate_metrics, get_metric
from model_race.racing.resampling import Dataset, Partition, Resampler

class TestMetrics:

    def test_task_defaults(self):
        assert get_metric(None, 'regression').name == 'rmse'
        assert get_metric(None, 'classification').name == 'roc_auc'

    def test_direction_and_worst_case(self):
        rmse = get_metric('rmse', 'regression')
        auc = get_metric('roc_auc', 'classification')

        assert not rmse.greater_is_better and rmse.worst == math.inf
        assert auc.greater_is_better and auc.worst == -math.inf
        assert auc.oriented(0.8) == -0.8

    @pytest.mark.parametrize('name,task', [
        ('rmse', 'classification'),
        ('accuracy', 'regression'),
        ('brier', 'classification'),
        ('rmse', 'ranking'),
    ])
    def test_invalid_metric(self, name, task):
        with pytest.raises(InvalidConfiguration):
            get_metric(name, task)

    def test_rmse_value(self):
        rmse = get_metric('rmse', 'regression')
        assert rmse.score([1.0, 2.0, 3.0], y_pred=[1.0, 2.0, 5.0]) == pytest.approx(math.sqrt(4 / 3))

    def test_roc_auc_binary(self):
        auc = get_metric('roc_auc', 'classification')
        y_score = np.array([[0.9, 0.1], [0.2, 0.8], [0.7, 0.3], [0.1, 0.9]])
        assert auc.score([0, 1, 0, 1], y_score=y_score, labels=[0, 1]) == 1.0

    def test_calculate_regression_metrics(self):
        metrics = calculate_metrics('regression', pd.Series([1.0, 2.0, 4.0]), np.array([1.0, 2.0, 3.0]))

        assert set(metrics) == {'mse', 'rmse', 'mae', 'rsq', 'mape'}
        assert metrics['mae'] == pytest.approx(1 / 3)

    def test_calculate_regression_metrics_skips_mape_with_zeros(self):
        metrics = calculate_metrics('regression', pd.Series([0.0, 2.0]), np.array([0.5, 2.0]))
        assert 'mape' not in metrics

    def test_calculate_classification_metrics(self):
        y_true = pd.Series([0, 1, 0, 1])
        y_score = np.array([[0.9, 0.1], [0.2, 0.8], [0.4, 0.6], [0.1, 0.9]])
        metrics = calculate_metrics('classification', y_true, np.array([0, 1, 1, 1]), y_score)

        assert metrics['accuracy'] == 0.75
        assert metrics['roc_auc'] == 1.0
        assert 'log_loss' in metrics

class TestAlgorithms:

    def test_build_estimator_pipeline(self):
        model = build_estimator('random_forest', 'classification', {'n_estimators': 10}, random_state=3)

        assert list(model.named_steps) == ['preprocess', 'model']
        assert model.named_steps['model'].n_estimators == 10
        assert model.named_steps['model'].random_state == 3

    def test_task_defaults_applied(self):
        model = build_estimator('svm', 'classification', {'C': 1.0})
        assert model.named_steps['model'].probability is True

    def test_params_override_fixed_params(self):
        model = build_estimator('ridge', 'regression', {'alpha': 2.0}, fixed_params={'alpha': 5.0})
        assert model.named_steps['model'].alpha == 2.0

    def test_unknown_algorithm(self):
        with pytest.raises(InvalidConfiguration):
            get_algorithm('deep_forest')

    @pytest.mark.parametrize('task', ['classification', 'regression'])
    def test_default_grids_are_valid(self, task):
        candidates = CandidateSet(default_grids(task), task).generate()
        assert len(candidates) > 4

    def test_preprocessing_handles_missing_and_categorical(self, regression_frame):
        frame = regression_frame.copy()
        frame.loc[:10, 'age'] = np.nan
        frame.loc[:5, 'department'] = np.nan

        model = build_estimator('linear_regression', 'regression', {})
        model.fit(frame.drop(columns=['wage']), frame['wage'])
        assert len(model.predict(frame.drop(columns=['wage']))) == len(frame)

class TestEvaluator:

    @pytest.fixture
    def partition(self, regression_dataset):
        return Resampler(n_partitions=5).split(regression_dataset)[0]

    def test_evaluate_regression_candidate(self, regression_dataset, partition):
        evaluator = Evaluator('regression')
        trial = evaluator.evaluate(Candidate(1, 'ridge', {'alpha': 1.0}), partition, regression_dataset)

        assert trial.status == STATUS_OK
        assert trial.metric == 'rmse'
        assert trial.partition_id == partition.partition_id
        assert trial.value > 0
        assert trial.elapsed >= 0

    def test_evaluate_classification_candidate(self, classification_dataset):
        partition = Resampler(n_partitions=5, stratify=True).split(classification_dataset)[0]
        evaluator = Evaluator('classification', 'roc_auc')
        trial = evaluator.evaluate(Candidate(1, 'logistic_regression', {'C': 1.0}),
                                   partition, classification_dataset)

        assert trial.status == STATUS_OK
        assert 0.5 < trial.value <= 1.0

    def test_fit_failure_becomes_failed_trial(self, regression_dataset, partition):
        frame = regression_dataset.frame.copy()
        frame['wage'] = np.nan
        broken = Dataset(frame, 'wage')

        trial = Evaluator('regression').evaluate(Candidate(4, 'ridge'), partition, broken)

        assert trial.status == STATUS_FAILED
        assert trial.failed
        assert trial.value == math.inf
        assert 'Candidate 4 failed on partition Fold01' in trial.error

    def test_non_finite_score_is_a_failure(self, regression_dataset, partition):
        evaluator = Evaluator('regression')
        evaluator.metric = Metric('rmse', 'regression', lambda y_true, y_pred: float('nan'), False)

        trial = evaluator.evaluate(Candidate(1, 'ridge'), partition, regression_dataset)
        assert trial.failed
        assert 'not finite' in trial.error

    def test_fit_error_message(self):
        error = FitError(3, 'Fold02', ValueError('boom'))
        assert str(error) == "Candidate 3 failed on partition Fold02: ValueError: boom"
        assert error.candidate_id == 3 and error.partition_id == 'Fold02'

    def test_empty_partition_rejected(self, regression_dataset):
        with pytest.raises(PartitionError):
            Evaluator('regression').check_partition(Partition('Fold01', [0, 1, 2], []), regression_dataset)

    def test_out_of_range_partition_rejected(self, regression_dataset):
        partition = Partition('Fold01', [0, 1, 2], [10_000])
        with pytest.raises(PartitionError):
            Evaluator('regression').check_partition(partition, regression_dataset)

    def test_single_class_training_set_rejected(self, classification_dataset):
        labels = classification_dataset.labels.to_numpy()
        ones = np.flatnonzero(labels == 1)
        partition = Partition('Fold01', ones[:20], np.arange(len(labels))[:10])

        with pytest.raises(PartitionError) as exc_info:
            Evaluator('classification').check_partition(partition, classification_dataset)
        assert exc_info.value.partition_id == 'Fold01'

    def test_single_class_validation_only_matters_for_score_metrics(self, classification_dataset):
        labels = classification_dataset.labels.to_numpy()
        ones = np.flatnonzero(labels == 1)
        partition = Partition('Fold01', np.arange(len(labels))[:100], ones[-10:])

        with pytest.raises(PartitionError):
            Evaluator('classification', 'roc_auc').check_partition(partition, classification_dataset)
        Evaluator('classification', 'accuracy').check_partition(partition, classification_dataset)

    def test_validation_missing_a_class_rejected_for_score_metrics(self, multiclass_dataset):
        labels = multiclass_dataset.labels.to_numpy()
        rows = np.arange(len(labels))
        validation = np.flatnonzero(labels != 2)[:12]
        partition = Partition('Fold01', np.setdiff1d(rows, validation), validation)

        with pytest.raises(PartitionError, match=r"missing classes \[2\]"):
            Evaluator('classification', 'roc_auc').check_partition(partition, multiclass_dataset)
        Evaluator('classification', 'accuracy').check_partition(partition, multiclass_dataset)

    def test_validation_class_unseen_in_training_rejected(self, multiclass_dataset):
        labels = multiclass_dataset.labels.to_numpy()
        train = np.flatnonzero(labels != 2)
        partition = Partition('Fold01', train, np.arange(len(labels))[:30])

        with pytest.raises(PartitionError, match="absent from training"):
            Evaluator('classification', 'accuracy').check_partition(partition, multiclass_dataset)

    @pytest.mark.parametrize("l1_ratio", [0.0, 1.0])
    def test_evaluate_multiclass_logistic_candidate(self, multiclass_dataset, l1_ratio):
        partition = Resampler(n_partitions=4, stratify=True).split(multiclass_dataset)[0]
        evaluator = Evaluator('classification', 'roc_auc')
        trial = evaluator.evaluate(Candidate(1, 'logistic_regression', {'C': 1.0, 'l1_ratio': l1_ratio}),
                                   partition, multiclass_dataset)

        assert trial.status == STATUS_OK, trial.error
        assert 0.5 < trial.value <= 1.0
