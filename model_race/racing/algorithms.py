# model_race/racing/algorithms.py
"""
Algorithm registry for the racing harness.

Every algorithm kind carries an explicit record of its tunable
hyperparameters (type, range, allowed choices). Candidate sets validate
their assignments against these records when they are built, so a bad
grid fails before any model is fitted.
"""
import numbers
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import numpy as np
import xgboost as xgb
import lightgbm as lgb
from sklearn.compose import ColumnTransformer, make_column_selector
from sklearn.ensemble import (
    RandomForestClassifier, RandomForestRegressor,
    GradientBoostingClassifier, GradientBoostingRegressor
)
from sklearn.impute import SimpleImputer
from sklearn.linear_model import LogisticRegression, LinearRegression, Ridge, Lasso, ElasticNet
from sklearn.naive_bayes import GaussianNB
from sklearn.neighbors import KNeighborsClassifier, KNeighborsRegressor
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import OneHotEncoder, StandardScaler
from sklearn.svm import SVC, SVR
from sklearn.tree import DecisionTreeClassifier, DecisionTreeRegressor

from model_race.racing.errors import InvalidConfiguration
from model_race.racing.metrics import CLASSIFICATION, REGRESSION


@dataclass(frozen=True)
class Hyperparameter:
    """Typed description of one tunable knob"""
    name: str
    kind: str  # 'int', 'float', 'categorical'
    low: Optional[float] = None
    high: Optional[float] = None
    choices: Tuple[Any, ...] = ()
    nullable: bool = False

    def validate(self, value: Any, algorithm: str) -> Any:
        """Return the value coerced to a plain Python type, or raise"""
        if value is None:
            if self.nullable:
                return None
            raise InvalidConfiguration(f"{algorithm}.{self.name} does not accept None")

        if self.kind == 'categorical':
            if value not in self.choices:
                raise InvalidConfiguration(
                    f"{algorithm}.{self.name}={value!r} is not one of {list(self.choices)}"
                )
            return value

        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            raise InvalidConfiguration(f"{algorithm}.{self.name} expects a number, got {value!r}")

        if self.kind == 'int':
            if float(value) != int(value):
                raise InvalidConfiguration(f"{algorithm}.{self.name} expects an integer, got {value!r}")
            value = int(value)
        else:
            value = float(value)

        if self.low is not None and value < self.low:
            raise InvalidConfiguration(f"{algorithm}.{self.name}={value} is below {self.low}")
        if self.high is not None and value > self.high:
            raise InvalidConfiguration(f"{algorithm}.{self.name}={value} is above {self.high}")
        return value


@dataclass(frozen=True)
class AlgorithmSpec:
    """One algorithm kind: its estimator classes and tunable surface"""
    name: str
    estimators: Mapping[str, Callable[..., Any]]
    hyperparameters: Mapping[str, Hyperparameter] = field(default_factory=dict)
    defaults: Mapping[str, Any] = field(default_factory=dict)

    def supports(self, task: str) -> bool:
        return task in self.estimators

    def estimator_class(self, task: str) -> Callable[..., Any]:
        if not self.supports(task):
            raise InvalidConfiguration(f"Algorithm '{self.name}' does not support {task}")
        return self.estimators[task]

    def validate_params(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        validated = {}
        for key, value in params.items():
            if key not in self.hyperparameters:
                raise InvalidConfiguration(
                    f"Unknown hyperparameter '{key}' for {self.name}. "
                    f"Tunable: {sorted(self.hyperparameters)}"
                )
            validated[key] = self.hyperparameters[key].validate(value, self.name)
        return validated

    def validate_fixed(self, fixed: Mapping[str, Any], task: str) -> Dict[str, Any]:
        accepted = self.estimator_class(task)().get_params()
        unknown = sorted(set(fixed) - set(accepted))
        if unknown:
            raise InvalidConfiguration(f"{self.name} does not accept fixed parameters {unknown}")
        return dict(fixed)


def _int(name, low=None, high=None, nullable=False):
    return Hyperparameter(name, 'int', low=low, high=high, nullable=nullable)


def _float(name, low=None, high=None):
    return Hyperparameter(name, 'float', low=low, high=high)


def _choice(name, *choices):
    return Hyperparameter(name, 'categorical', choices=tuple(choices))


_TREE_ENSEMBLE_PARAMS = {
    'n_estimators': _int('n_estimators', low=1),
    'max_depth': _int('max_depth', low=1, nullable=True),
    'min_samples_split': _int('min_samples_split', low=2),
    'min_samples_leaf': _int('min_samples_leaf', low=1),
    'max_features': _float('max_features', low=0.0, high=1.0),
}

_BOOSTING_PARAMS = {
    'n_estimators': _int('n_estimators', low=1),
    'max_depth': _int('max_depth', low=1),
    'learning_rate': _float('learning_rate', low=0.0, high=1.0),
    'subsample': _float('subsample', low=0.0, high=1.0),
}

ALGORITHMS: Dict[str, AlgorithmSpec] = {
    'random_forest': AlgorithmSpec(
        'random_forest',
        {CLASSIFICATION: RandomForestClassifier, REGRESSION: RandomForestRegressor},
        _TREE_ENSEMBLE_PARAMS,
    ),
    'xgboost': AlgorithmSpec(
        'xgboost',
        {CLASSIFICATION: xgb.XGBClassifier, REGRESSION: xgb.XGBRegressor},
        {
            **_BOOSTING_PARAMS,
            'colsample_bytree': _float('colsample_bytree', low=0.0, high=1.0),
            'min_child_weight': _float('min_child_weight', low=0.0),
            'reg_lambda': _float('reg_lambda', low=0.0),
        },
        defaults={'verbosity': 0, 'n_jobs': 1},
    ),
    'lightgbm': AlgorithmSpec(
        'lightgbm',
        {CLASSIFICATION: lgb.LGBMClassifier, REGRESSION: lgb.LGBMRegressor},
        {
            'n_estimators': _int('n_estimators', low=1),
            'num_leaves': _int('num_leaves', low=2),
            'learning_rate': _float('learning_rate', low=0.0, high=1.0),
            'min_child_samples': _int('min_child_samples', low=1),
            'subsample': _float('subsample', low=0.0, high=1.0),
        },
        defaults={'verbose': -1, 'n_jobs': 1},
    ),
    'gradient_boosting': AlgorithmSpec(
        'gradient_boosting',
        {CLASSIFICATION: GradientBoostingClassifier, REGRESSION: GradientBoostingRegressor},
        _BOOSTING_PARAMS,
    ),
    'decision_tree': AlgorithmSpec(
        'decision_tree',
        {CLASSIFICATION: DecisionTreeClassifier, REGRESSION: DecisionTreeRegressor},
        {
            'max_depth': _int('max_depth', low=1, nullable=True),
            'min_samples_leaf': _int('min_samples_leaf', low=1),
            'ccp_alpha': _float('ccp_alpha', low=0.0),
        },
    ),
    'logistic_regression': AlgorithmSpec(
        'logistic_regression',
        {CLASSIFICATION: LogisticRegression},
        {
            'C': _float('C', low=0.0),
            'l1_ratio': _float('l1_ratio', low=0.0, high=1.0),
        },
        defaults={'solver': 'saga', 'max_iter': 2000},
    ),
    'naive_bayes': AlgorithmSpec(
        'naive_bayes',
        {CLASSIFICATION: GaussianNB},
        {'var_smoothing': _float('var_smoothing', low=0.0)},
    ),
    'linear_regression': AlgorithmSpec(
        'linear_regression',
        {REGRESSION: LinearRegression},
        {'fit_intercept': _choice('fit_intercept', True, False)},
    ),
    'ridge': AlgorithmSpec(
        'ridge',
        {REGRESSION: Ridge},
        {'alpha': _float('alpha', low=0.0)},
    ),
    'lasso': AlgorithmSpec(
        'lasso',
        {REGRESSION: Lasso},
        {'alpha': _float('alpha', low=0.0)},
        defaults={'max_iter': 10000},
    ),
    'elastic_net': AlgorithmSpec(
        'elastic_net',
        {REGRESSION: ElasticNet},
        {
            'alpha': _float('alpha', low=0.0),
            'l1_ratio': _float('l1_ratio', low=0.0, high=1.0),
        },
        defaults={'max_iter': 10000},
    ),
    'knn': AlgorithmSpec(
        'knn',
        {CLASSIFICATION: KNeighborsClassifier, REGRESSION: KNeighborsRegressor},
        {
            'n_neighbors': _int('n_neighbors', low=1),
            'weights': _choice('weights', 'uniform', 'distance'),
        },
    ),
    'svm': AlgorithmSpec(
        'svm',
        {CLASSIFICATION: SVC, REGRESSION: SVR},
        {
            'C': _float('C', low=0.0),
            'kernel': _choice('kernel', 'linear', 'rbf', 'poly'),
        },
    ),
}

# SVC only exposes predict_proba when asked for it
_TASK_DEFAULTS = {
    ('svm', CLASSIFICATION): {'probability': True},
}


def get_algorithm(name: str) -> AlgorithmSpec:
    if name not in ALGORITHMS:
        raise InvalidConfiguration(f"Unknown algorithm '{name}'. Available: {sorted(ALGORITHMS)}")
    return ALGORITHMS[name]


def build_preprocessor() -> ColumnTransformer:
    """Numeric columns are imputed and scaled, everything else is one-hot encoded"""
    numeric = Pipeline([
        ('impute', SimpleImputer(strategy='median')),
        ('scale', StandardScaler()),
    ])
    categorical = Pipeline([
        ('impute', SimpleImputer(strategy='most_frequent')),
        ('encode', OneHotEncoder(handle_unknown='ignore', sparse_output=False)),
    ])
    return ColumnTransformer([
        ('numeric', numeric, make_column_selector(dtype_include=np.number)),
        ('categorical', categorical, make_column_selector(dtype_exclude=np.number)),
    ])


def build_estimator(algorithm: str, task: str, params: Mapping[str, Any],
                    fixed_params: Optional[Mapping[str, Any]] = None,
                    random_state: Optional[int] = None) -> Pipeline:
    """Build an unfitted preprocessing + model pipeline for one parameter assignment"""
    spec = get_algorithm(algorithm)
    estimator_class = spec.estimator_class(task)

    kwargs = dict(spec.defaults)
    kwargs.update(_TASK_DEFAULTS.get((algorithm, task), {}))
    kwargs.update(fixed_params or {})
    kwargs.update(params)

    if random_state is not None and 'random_state' not in kwargs \
            and 'random_state' in estimator_class().get_params():
        kwargs['random_state'] = random_state

    return Pipeline([
        ('preprocess', build_preprocessor()),
        ('model', estimator_class(**kwargs)),
    ])


def default_grids(task: str) -> Dict[str, Dict[str, Any]]:
    """Curated candidate grids per task type"""

    if task == CLASSIFICATION:
        return {
            'logistic_regression': {
                'param_grid': {
                    'C': [0.1, 1.0, 10.0],
                    'l1_ratio': [0.0, 1.0],
                },
            },
            'random_forest': {
                'param_grid': {
                    'n_estimators': [100, 300],
                    'min_samples_leaf': [1, 5],
                    'max_depth': [5, None],
                },
            },
            'xgboost': {
                'param_grid': {
                    'n_estimators': [100, 200],
                    'max_depth': [3, 6],
                    'learning_rate': [0.05, 0.1],
                },
            },
            'naive_bayes': {
                'param_grid': {},
            },
        }
    elif task == REGRESSION:
        return {
            'linear_regression': {
                'param_grid': {},
            },
            'elastic_net': {
                'param_grid': {
                    'alpha': {'distribution': 'log_uniform', 'min': 1e-3, 'max': 10.0},
                    'l1_ratio': [0.0, 0.5, 1.0],
                },
            },
            'random_forest': {
                'param_grid': {
                    'n_estimators': [100, 300],
                    'min_samples_leaf': [1, 5],
                    'max_depth': [5, None],
                },
            },
            'xgboost': {
                'param_grid': {
                    'n_estimators': [100, 200],
                    'max_depth': [3, 6],
                    'learning_rate': [0.05, 0.1],
                },
            },
        }
    raise InvalidConfiguration(f"Unknown task type '{task}'")
