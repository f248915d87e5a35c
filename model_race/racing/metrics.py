# model_race/racing/metrics.py
import numpy as np
import pandas as pd
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from sklearn.metrics import (
    accuracy_score, f1_score, roc_auc_score, log_loss,
    mean_squared_error, mean_absolute_error, r2_score
)

from model_race.racing.errors import InvalidConfiguration

CLASSIFICATION = 'classification'
REGRESSION = 'regression'
TASK_TYPES = (CLASSIFICATION, REGRESSION)


@dataclass(frozen=True)
class Metric:
    """A scalar scoring rule for one task type"""
    name: str
    task: str
    func: Callable[..., float]
    greater_is_better: bool
    needs_score: bool = False

    @property
    def worst(self) -> float:
        """Score recorded for a trial that could not be evaluated"""
        return float('-inf') if self.greater_is_better else float('inf')

    def oriented(self, value: float) -> float:
        """Map a value onto a lower-is-better scale"""
        return -value if self.greater_is_better else value

    def score(self, y_true, y_pred=None, y_score=None, labels=None) -> float:
        if self.needs_score:
            return float(self.func(y_true, y_score, labels))
        return float(self.func(y_true, y_pred))


def _rmse(y_true, y_pred) -> float:
    return np.sqrt(mean_squared_error(y_true, y_pred))


def _mape(y_true, y_pred) -> float:
    y_true = np.asarray(y_true, dtype=float)
    y_pred = np.asarray(y_pred, dtype=float)
    if (y_true == 0).any():
        raise ValueError("MAPE is undefined when the target contains zeros")
    return np.mean(np.abs((y_true - y_pred) / y_true)) * 100


def _f1(y_true, y_pred) -> float:
    return f1_score(y_true, y_pred, average='weighted', zero_division=0)


def _roc_auc(y_true, y_score, labels) -> float:
    y_score = np.asarray(y_score)
    if y_score.ndim == 2 and y_score.shape[1] == 2:
        return roc_auc_score(y_true, y_score[:, 1])
    if y_score.ndim == 1:
        return roc_auc_score(y_true, y_score)
    return roc_auc_score(y_true, y_score, multi_class='ovr', labels=labels)


def _log_loss(y_true, y_score, labels) -> float:
    return log_loss(y_true, y_score, labels=labels)


METRICS: Dict[str, Metric] = {
    'rmse': Metric('rmse', REGRESSION, _rmse, greater_is_better=False),
    'mae': Metric('mae', REGRESSION, mean_absolute_error, greater_is_better=False),
    'rsq': Metric('rsq', REGRESSION, r2_score, greater_is_better=True),
    'mape': Metric('mape', REGRESSION, _mape, greater_is_better=False),
    'roc_auc': Metric('roc_auc', CLASSIFICATION, _roc_auc, greater_is_better=True, needs_score=True),
    'accuracy': Metric('accuracy', CLASSIFICATION, accuracy_score, greater_is_better=True),
    'f1': Metric('f1', CLASSIFICATION, _f1, greater_is_better=True),
    'log_loss': Metric('log_loss', CLASSIFICATION, _log_loss, greater_is_better=False, needs_score=True),
}

DEFAULT_METRICS = {
    REGRESSION: 'rmse',
    CLASSIFICATION: 'roc_auc',
}


def get_metric(name: Optional[str], task: str) -> Metric:
    """Look up a metric by name, falling back to the task default"""
    if task not in TASK_TYPES:
        raise InvalidConfiguration(f"Unknown task type '{task}', expected one of {TASK_TYPES}")

    name = name or DEFAULT_METRICS[task]
    if name not in METRICS:
        raise InvalidConfiguration(f"Unknown metric '{name}'. Available: {sorted(METRICS)}")

    metric = METRICS[name]
    if metric.task != task:
        raise InvalidConfiguration(f"Metric '{name}' applies to {metric.task}, not {task}")
    return metric


def calculate_metrics(task: str, y_true: pd.Series, y_pred: np.ndarray,
                      y_score: Optional[np.ndarray] = None) -> Dict[str, float]:
    """Calculate the full metric report for a set of predictions"""

    if task == CLASSIFICATION:
        metrics = {
            'accuracy': accuracy_score(y_true, y_pred),
            'f1': _f1(y_true, y_pred),
        }

        if y_score is not None and len(np.unique(y_true)) > 1:
            labels = np.arange(np.asarray(y_score).shape[1]) if np.ndim(y_score) == 2 else None
            metrics['roc_auc'] = _roc_auc(y_true, y_score, labels)
            metrics['log_loss'] = _log_loss(y_true, y_score, labels)

    else:
        mse = mean_squared_error(y_true, y_pred)
        metrics = {
            'mse': mse,
            'rmse': np.sqrt(mse),
            'mae': mean_absolute_error(y_true, y_pred),
            'rsq': r2_score(y_true, y_pred),
        }

        # MAPE only when no zero values
        if not (np.asarray(y_true) == 0).any():
            metrics['mape'] = _mape(y_true, y_pred)

    return {name: float(value) for name, value in metrics.items()}
