# model_race/racing/evaluation.py
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import numpy as np
from sklearn.pipeline import Pipeline

from model_race.racing.algorithms import build_estimator
from model_race.racing.candidates import Candidate
from model_race.racing.errors import FitError, PartitionError
from model_race.racing.metrics import CLASSIFICATION, Metric, get_metric
from model_race.racing.resampling import Dataset, Partition

logger = logging.getLogger(__name__)

STATUS_OK = 'ok'
STATUS_FAILED = 'failed'


@dataclass(frozen=True)
class Trial:
    """Score of one candidate on one partition"""
    candidate_id: int
    partition_id: str
    algorithm: str
    params: Dict[str, Any] = field(default_factory=dict)
    metric: str = ''
    value: float = float('nan')
    elapsed: float = 0.0
    status: str = STATUS_OK
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == STATUS_FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'candidate_id': self.candidate_id,
            'partition_id': self.partition_id,
            'algorithm': self.algorithm,
            'params': dict(self.params),
            'metric': self.metric,
            'value': self.value,
            'elapsed': self.elapsed,
            'status': self.status,
            'error': self.error,
        }


class Evaluator:
    """Fits one candidate on one partition's training rows and scores the validation rows"""

    def __init__(self, task: str, metric: Optional[str] = None, random_state: Optional[int] = 42):
        self.task = task
        self.metric: Metric = get_metric(metric, task)
        self.random_state = random_state

    @property
    def greater_is_better(self) -> bool:
        return self.metric.greater_is_better

    def build_estimator(self, candidate: Candidate) -> Pipeline:
        return build_estimator(
            candidate.algorithm, self.task, candidate.params,
            fixed_params=candidate.fixed_params, random_state=self.random_state
        )

    def check_partition(self, partition: Partition, dataset: Dataset):
        """Raise PartitionError when no candidate could use this partition"""
        if partition.n_train == 0 or partition.n_validation == 0:
            raise PartitionError(partition.partition_id, "training or validation subset is empty")

        indices = np.concatenate([partition.train_index, partition.validation_index])
        if indices.min() < 0 or indices.max() >= dataset.n_rows:
            raise PartitionError(
                partition.partition_id, f"row indices fall outside the dataset's {dataset.n_rows} rows"
            )

        if self.task == CLASSIFICATION:
            labels = dataset.labels.to_numpy()
            train_classes = np.unique(labels[partition.train_index])
            validation_classes = np.unique(labels[partition.validation_index])

            if len(train_classes) < 2:
                raise PartitionError(partition.partition_id, "training subset contains a single class")

            unseen = np.setdiff1d(validation_classes, train_classes)
            if len(unseen) > 0:
                raise PartitionError(
                    partition.partition_id,
                    f"validation subset contains classes absent from training: {unseen.tolist()}"
                )

            if self.metric.needs_score:
                if len(validation_classes) < 2:
                    raise PartitionError(partition.partition_id, "validation subset contains a single class")
                # Probability metrics need every trained class present to be defined
                missing = np.setdiff1d(train_classes, validation_classes)
                if len(missing) > 0:
                    raise PartitionError(
                        partition.partition_id,
                        f"validation subset is missing classes {missing.tolist()} needed by {self.metric.name}"
                    )

    def evaluate(self, candidate: Candidate, partition: Partition, dataset: Dataset) -> Trial:
        """Score a candidate; fit failures come back as a failed Trial with the worst-case value"""
        start_time = time.perf_counter()

        try:
            value = self._fit_and_score(candidate, partition, dataset)
        except Exception as e:
            error = FitError(candidate.candidate_id, partition.partition_id, e)
            logger.warning(str(error))
            return Trial(
                candidate_id=candidate.candidate_id,
                partition_id=partition.partition_id,
                algorithm=candidate.algorithm,
                params=dict(candidate.params),
                metric=self.metric.name,
                value=self.metric.worst,
                elapsed=time.perf_counter() - start_time,
                status=STATUS_FAILED,
                error=str(error),
            )

        return Trial(
            candidate_id=candidate.candidate_id,
            partition_id=partition.partition_id,
            algorithm=candidate.algorithm,
            params=dict(candidate.params),
            metric=self.metric.name,
            value=value,
            elapsed=time.perf_counter() - start_time,
        )

    def _fit_and_score(self, candidate: Candidate, partition: Partition, dataset: Dataset) -> float:
        X_train, y_train = dataset.take(partition.train_index)
        X_val, y_val = dataset.take(partition.validation_index)

        model = self.build_estimator(candidate)
        model.fit(X_train, y_train)

        if self.metric.needs_score:
            value = self.metric.score(y_val, y_score=predict_scores(model, X_val),
                                      labels=model.classes_)
        else:
            value = self.metric.score(y_val, y_pred=model.predict(X_val))

        if not math.isfinite(value):
            raise ValueError(f"{self.metric.name} is not finite ({value})")
        return value


def predict_scores(model: Any, X) -> np.ndarray:
    """Class probabilities, or decision values when the model has no predict_proba"""
    if hasattr(model, 'predict_proba'):
        return model.predict_proba(X)
    return model.decision_function(X)
