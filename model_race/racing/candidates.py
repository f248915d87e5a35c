# model_race/racing/candidates.py
import itertools
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
from scipy.stats import qmc

from model_race.racing.algorithms import get_algorithm
from model_race.racing.errors import EmptyGrid, InvalidConfiguration

logger = logging.getLogger(__name__)

SEARCH_METHODS = ('grid', 'random', 'latin_hypercube')
DISTRIBUTIONS = ('uniform', 'log_uniform', 'int_uniform')
DEFAULT_RANDOM_SIZE = 10


@dataclass(frozen=True)
class Candidate:
    """One algorithm with one concrete hyperparameter assignment"""
    candidate_id: int
    algorithm: str
    params: Dict[str, Any] = field(default_factory=dict)
    fixed_params: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return f"{self.algorithm}_{self.candidate_id:03d}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'candidate_id': self.candidate_id,
            'name': self.name,
            'algorithm': self.algorithm,
            'params': dict(self.params),
            'fixed_params': dict(self.fixed_params),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Candidate':
        return cls(
            candidate_id=int(data['candidate_id']),
            algorithm=data['algorithm'],
            params=dict(data.get('params', {})),
            fixed_params=dict(data.get('fixed_params', {})),
        )


@dataclass(frozen=True)
class Distribution:
    """A sampled value range for one hyperparameter"""
    kind: str
    low: float
    high: float

    def from_unit(self, u: float) -> Union[int, float]:
        """Map a point of [0, 1) onto the range"""
        if self.kind == 'log_uniform':
            return float(math.exp(math.log(self.low) + u * (math.log(self.high) - math.log(self.low))))
        if self.kind == 'int_uniform':
            return int(min(math.floor(self.low + u * (self.high - self.low + 1)), self.high))
        return float(self.low + u * (self.high - self.low))

    def levels(self, n: int) -> List[Union[int, float]]:
        """Evenly spaced values, log-spaced for log_uniform"""
        if n == 1:
            points = [0.5]
        else:
            points = [i / (n - 1) for i in range(n)]

        if self.kind == 'log_uniform':
            values = [float(v) for v in np.geomspace(self.low, self.high, num=n)] if n > 1 \
                else [self.from_unit(0.5)]
        elif self.kind == 'int_uniform':
            values = [int(round(self.low + p * (self.high - self.low))) for p in points]
        else:
            values = [float(self.low + p * (self.high - self.low)) for p in points]

        # int levels can collide on narrow ranges
        return list(dict.fromkeys(values))


@dataclass(frozen=True)
class AlgorithmGrid:
    """Tunable grid plus fixed parameters for one algorithm, validated on creation"""
    algorithm: str
    param_grid: Dict[str, Union[List[Any], Distribution]]
    fixed_params: Dict[str, Any]

    @classmethod
    def from_config(cls, algorithm: str, spec: Optional[Mapping[str, Any]], task: str) -> 'AlgorithmGrid':
        algorithm_spec = get_algorithm(algorithm)
        algorithm_spec.estimator_class(task)

        spec = dict(spec or {})
        if 'param_grid' in spec or 'fixed_params' in spec:
            raw_grid = dict(spec.get('param_grid') or {})
            fixed = dict(spec.get('fixed_params') or {})
        else:
            raw_grid, fixed = spec, {}

        fixed = algorithm_spec.validate_fixed(fixed, task)

        param_grid = {}
        for name, values in raw_grid.items():
            if name not in algorithm_spec.hyperparameters:
                raise InvalidConfiguration(
                    f"Unknown hyperparameter '{name}' for {algorithm}. "
                    f"Tunable: {sorted(algorithm_spec.hyperparameters)}"
                )
            hyperparameter = algorithm_spec.hyperparameters[name]

            if isinstance(values, Mapping):
                param_grid[name] = cls._parse_distribution(algorithm, name, values, hyperparameter)
            elif isinstance(values, (list, tuple)):
                if len(values) == 0:
                    raise EmptyGrid(algorithm, f"Algorithm '{algorithm}' has no values for '{name}'")
                param_grid[name] = list(dict.fromkeys(
                    hyperparameter.validate(value, algorithm) for value in values
                ))
            else:
                # A scalar is a one-value grid
                param_grid[name] = [hyperparameter.validate(values, algorithm)]

        return cls(algorithm, param_grid, fixed)

    @staticmethod
    def _parse_distribution(algorithm, name, values, hyperparameter) -> Distribution:
        kind = values.get('distribution', 'uniform')
        if kind not in DISTRIBUTIONS:
            raise InvalidConfiguration(
                f"{algorithm}.{name}: unknown distribution '{kind}', expected one of {DISTRIBUTIONS}"
            )
        if hyperparameter.kind == 'categorical':
            raise InvalidConfiguration(f"{algorithm}.{name} is categorical and needs a list of values")
        if 'min' not in values or 'max' not in values:
            raise InvalidConfiguration(f"{algorithm}.{name}: a distribution needs 'min' and 'max'")

        low = hyperparameter.validate(values['min'], algorithm)
        high = hyperparameter.validate(values['max'], algorithm)
        if low >= high:
            raise InvalidConfiguration(f"{algorithm}.{name}: min must be below max")
        if kind == 'log_uniform' and low <= 0:
            raise InvalidConfiguration(f"{algorithm}.{name}: log_uniform needs a positive min")
        if hyperparameter.kind == 'int':
            kind = 'int_uniform'

        return Distribution(kind, low, high)

    @property
    def param_names(self) -> List[str]:
        return list(self.param_grid)

    def finite_values(self, levels: int) -> List[List[Any]]:
        return [
            values.levels(levels) if isinstance(values, Distribution) else values
            for values in self.param_grid.values()
        ]

    @property
    def is_finite(self) -> bool:
        return not any(isinstance(v, Distribution) for v in self.param_grid.values())


class CandidateSet:
    """Enumerates concrete candidates from per-algorithm hyperparameter grids"""

    def __init__(self, grids: Mapping[str, Any], task: str, method: str = 'grid',
                 size: Optional[int] = None, levels: int = 3, random_state: Optional[int] = 42):
        if method not in SEARCH_METHODS:
            raise InvalidConfiguration(f"Unknown search method '{method}', expected one of {SEARCH_METHODS}")
        if size is not None and size < 1:
            raise InvalidConfiguration(f"Sub-sample size must be positive, got {size}")
        if levels < 1:
            raise InvalidConfiguration(f"levels must be positive, got {levels}")
        if not grids:
            raise InvalidConfiguration("At least one algorithm is required")

        self.task = task
        self.method = method
        self.size = size
        self.levels = levels
        self.random_state = random_state
        self.algorithm_grids = [
            AlgorithmGrid.from_config(algorithm, spec, task) for algorithm, spec in grids.items()
        ]

    def generate(self) -> List[Candidate]:
        """Build candidates with sequential ids, in algorithm order"""
        rng = np.random.default_rng(self.random_state)
        candidates = []

        for algorithm_grid in self.algorithm_grids:
            spec = get_algorithm(algorithm_grid.algorithm)
            names = algorithm_grid.param_names

            if self.method == 'grid':
                assignments = self._grid(algorithm_grid, rng)
            elif self.method == 'random':
                assignments = self._random(algorithm_grid, rng)
            else:
                assignments = self._latin_hypercube(algorithm_grid, rng)

            for values in assignments:
                params = spec.validate_params(dict(zip(names, values)))
                candidates.append(Candidate(
                    candidate_id=len(candidates) + 1,
                    algorithm=algorithm_grid.algorithm,
                    params=params,
                    fixed_params=dict(algorithm_grid.fixed_params),
                ))

        logger.info(
            f"Generated {len(candidates)} candidates across {len(self.algorithm_grids)} "
            f"algorithms using {self.method} search"
        )
        return candidates

    def _grid(self, algorithm_grid: AlgorithmGrid, rng: np.random.Generator) -> List[Sequence[Any]]:
        combinations = list(itertools.product(*algorithm_grid.finite_values(self.levels)))
        if self.size is not None and self.size < len(combinations):
            chosen = np.sort(rng.choice(len(combinations), size=self.size, replace=False))
            combinations = [combinations[i] for i in chosen]
        return combinations

    def _random(self, algorithm_grid: AlgorithmGrid, rng: np.random.Generator) -> List[Sequence[Any]]:
        size = self.size or DEFAULT_RANDOM_SIZE

        if algorithm_grid.is_finite:
            combinations = list(itertools.product(*algorithm_grid.param_grid.values()))
            chosen = rng.choice(len(combinations), size=min(size, len(combinations)), replace=False)
            return [combinations[i] for i in chosen]

        draws = []
        for _ in range(size):
            draw = []
            for values in algorithm_grid.param_grid.values():
                if isinstance(values, Distribution):
                    draw.append(values.from_unit(rng.random()))
                else:
                    draw.append(values[rng.integers(len(values))])
            draws.append(tuple(draw))
        return list(dict.fromkeys(draws))

    def _latin_hypercube(self, algorithm_grid: AlgorithmGrid,
                         rng: np.random.Generator) -> List[Sequence[Any]]:
        grid_values = list(algorithm_grid.param_grid.values())
        if not grid_values:
            return [()]

        size = self.size or DEFAULT_RANDOM_SIZE
        sampler = qmc.LatinHypercube(d=len(grid_values), rng=rng)
        points = sampler.random(n=size)

        draws = []
        for point in points:
            draw = []
            for u, values in zip(point, grid_values):
                if isinstance(values, Distribution):
                    draw.append(values.from_unit(float(u)))
                else:
                    draw.append(values[min(int(u * len(values)), len(values) - 1)])
            draws.append(tuple(draw))
        return list(dict.fromkeys(draws))
