# tests/conftest.py
import numpy as np
import pandas as pd
import pytest
from sklearn.datasets import make_classification, make_regression

from model_race.config import Config
from model_race.racing.candidates import Candidate
from model_race.racing.evaluation import Evaluator
from model_race.racing.resampling import Dataset


class ScriptedEvaluator(Evaluator):
    """Evaluator whose per-partition scores come from a function instead of a fit"""

    def __init__(self, task, score_fn, metric=None):
        super().__init__(task, metric)
        self.score_fn = score_fn
        self.calls = []

    def _fit_and_score(self, candidate, partition, dataset):
        self.calls.append((candidate.candidate_id, partition.partition_id))
        return self.score_fn(candidate, partition)


@pytest.fixture
def regression_frame():
    X, y = make_regression(n_samples=200, n_features=4, noise=10.0, random_state=42)
    frame = pd.DataFrame(X, columns=['age', 'tenure', 'rating', 'hours'])
    frame['department'] = np.random.RandomState(0).choice(['sales', 'hr', 'it'], 200)
    frame['wage'] = y
    return frame


@pytest.fixture
def regression_dataset(regression_frame):
    return Dataset(regression_frame, 'wage')


@pytest.fixture
def classification_frame():
    X, y = make_classification(n_samples=200, n_features=5, n_informative=3,
                               n_redundant=0, random_state=42)
    frame = pd.DataFrame(X, columns=[f'feature_{i}' for i in range(5)])
    frame['promoted'] = y
    return frame


@pytest.fixture
def classification_dataset(classification_frame):
    return Dataset(classification_frame, 'promoted')


@pytest.fixture
def multiclass_frame():
    X, y = make_classification(n_samples=240, n_features=5, n_informative=4, n_redundant=0,
                               n_classes=3, n_clusters_per_class=1, random_state=7)
    frame = pd.DataFrame(X, columns=[f'feature_{i}' for i in range(5)])
    frame['job_level'] = y
    return frame


@pytest.fixture
def multiclass_dataset(multiclass_frame):
    return Dataset(multiclass_frame, 'job_level')


@pytest.fixture
def linear_candidates():
    return [Candidate(candidate_id=i, algorithm='linear_regression') for i in range(1, 6)]


@pytest.fixture
def test_config(tmp_path, monkeypatch):
    """Config with small race settings writing into a temporary directory"""
    for var in ('MLFLOW_ENABLED', 'N_PARTITIONS', 'RESAMPLING_METHOD', 'RACE_METRIC',
                'RACE_MIN_ROUNDS', 'RACE_N_JOBS', 'MODELS_DIR'):
        monkeypatch.delenv(var, raising=False)

    config = Config()
    config.paths.MODELS_DIR = tmp_path / 'models'
    config.paths.LOGS_DIR = tmp_path / 'logs'
    config.mlflow.ENABLED = False
    config.resampling.N_PARTITIONS = 5
    config.race.MIN_ROUNDS = 2
    config.race.N_JOBS = 1
    config.data_validation.MIN_ROWS = 20
    return config


@pytest.fixture
def scripted_evaluator():
    return ScriptedEvaluator
