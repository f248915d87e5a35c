# model_race/racing/race.py
"""
Racing over resamples with statistical early elimination.

One round evaluates every surviving candidate on one partition. After a
minimum number of rounds, candidates whose metric is significantly worse
than the current best over the same (paired) partitions are dropped and
never evaluated again. A candidate whose fit fails is dropped at once.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import stats

from model_race.racing.candidates import Candidate
from model_race.racing.errors import InvalidConfiguration, PartitionError
from model_race.racing.evaluation import Evaluator, Trial
from model_race.racing.resampling import Dataset, Partition

logger = logging.getLogger(__name__)

ALIVE = 'alive'
ELIMINATED = 'eliminated'
FAILED = 'failed'

ELIMINATION_TESTS = ('anova', 'paired_t')


@dataclass
class LeaderboardEntry:
    """A candidate and everything the race learned about it"""
    candidate: Candidate
    trials: List[Trial] = field(default_factory=list)
    status: str = ALIVE
    eliminated_round: Optional[int] = None
    reason: Optional[str] = None

    @property
    def candidate_id(self) -> int:
        return self.candidate.candidate_id

    @property
    def alive(self) -> bool:
        return self.status == ALIVE

    @property
    def n_trials(self) -> int:
        return len(self.trials)

    @property
    def mean(self) -> float:
        if not self.trials:
            return float('nan')
        return float(np.mean([t.value for t in self.trials]))

    @property
    def std_err(self) -> float:
        values = [t.value for t in self.trials]
        if len(values) < 2 or not all(math.isfinite(v) for v in values):
            return float('nan')
        return float(np.std(values, ddof=1) / math.sqrt(len(values)))

    @property
    def total_cost(self) -> float:
        return float(sum(t.elapsed for t in self.trials))

    def values_by_partition(self) -> Dict[str, float]:
        return {t.partition_id: t.value for t in self.trials if not t.failed}


class Leaderboard:
    """Candidates ranked by mean metric; eliminated candidates never come back"""

    def __init__(self, candidates: Sequence[Candidate], greater_is_better: bool):
        self.greater_is_better = greater_is_better
        self._entries: Dict[int, LeaderboardEntry] = {
            c.candidate_id: LeaderboardEntry(c) for c in candidates
        }

    def __len__(self) -> int:
        return len(self.survivors())

    def __contains__(self, candidate_id: int) -> bool:
        entry = self._entries.get(candidate_id)
        return entry is not None and entry.alive

    def entry(self, candidate_id: int) -> LeaderboardEntry:
        return self._entries[candidate_id]

    @property
    def entries(self) -> List[LeaderboardEntry]:
        return list(self._entries.values())

    def sort_key(self, entry: LeaderboardEntry) -> Tuple[float, float, int]:
        mean = entry.mean
        if math.isnan(mean):
            oriented = float('inf')
        else:
            oriented = -mean if self.greater_is_better else mean
        return (oriented, entry.total_cost, entry.candidate_id)

    def survivors(self) -> List[LeaderboardEntry]:
        """Surviving candidates, best first"""
        return sorted((e for e in self._entries.values() if e.alive), key=self.sort_key)

    def ranking(self) -> List[LeaderboardEntry]:
        """Survivors first, then eliminated candidates by elimination round (latest first)"""
        dropped = sorted(
            (e for e in self._entries.values() if not e.alive),
            key=lambda e: (-(e.eliminated_round or 0),) + self.sort_key(e)
        )
        return self.survivors() + dropped

    def record(self, trial: Trial):
        entry = self._entries[trial.candidate_id]
        if not entry.alive:
            raise ValueError(f"Candidate {trial.candidate_id} was already removed from the race")
        entry.trials.append(trial)

    def eliminate(self, candidate_id: int, round_number: int, status: str, reason: str):
        entry = self._entries[candidate_id]
        if not entry.alive:
            raise ValueError(f"Candidate {candidate_id} was already removed from the race")
        entry.status = status
        entry.eliminated_round = round_number
        entry.reason = reason

    def to_frame(self) -> pd.DataFrame:
        rows = []
        for rank, entry in enumerate(self.ranking(), start=1):
            rows.append({
                'rank': rank,
                'candidate_id': entry.candidate_id,
                'name': entry.candidate.name,
                'algorithm': entry.candidate.algorithm,
                'params': entry.candidate.params,
                'status': entry.status,
                'mean': entry.mean,
                'std_err': entry.std_err,
                'n_trials': entry.n_trials,
                'total_cost': entry.total_cost,
                'eliminated_round': entry.eliminated_round,
                'reason': entry.reason,
            })
        return pd.DataFrame(rows)


@dataclass(frozen=True)
class RoundSummary:
    round_number: int
    partition_id: str
    evaluated: Tuple[int, ...] = ()
    failed: Tuple[int, ...] = ()
    eliminated: Tuple[int, ...] = ()
    skipped: bool = False
    reason: Optional[str] = None


@dataclass
class RaceResult:
    """Everything a race produced: trials, final leaderboard and per-round history"""
    metric: str
    greater_is_better: bool
    trials: List[Trial]
    leaderboard: Leaderboard
    rounds: List[RoundSummary]
    skipped_partitions: List[Tuple[str, str]]
    stopped_early: bool = False

    @property
    def rounds_completed(self) -> int:
        return sum(1 for r in self.rounds if not r.skipped)

    def trials_frame(self) -> pd.DataFrame:
        return pd.DataFrame([t.to_dict() for t in self.trials])

    def leaderboard_frame(self) -> pd.DataFrame:
        return self.leaderboard.to_frame()

    def summary(self) -> Dict:
        survivors = self.leaderboard.survivors()
        return {
            'metric': self.metric,
            'candidates': len(self.leaderboard.entries),
            'survivors': [e.candidate.name for e in survivors],
            'eliminated': sum(1 for e in self.leaderboard.entries if e.status == ELIMINATED),
            'failed': sum(1 for e in self.leaderboard.entries if e.status == FAILED),
            'trials': len(self.trials),
            'rounds_completed': self.rounds_completed,
            'skipped_partitions': [pid for pid, _ in self.skipped_partitions],
            'stopped_early': self.stopped_early,
        }


def elimination_pvalues(values: np.ndarray, test: str = 'anova') -> Tuple[int, np.ndarray]:
    """
    One-sided p-values for "candidate is worse than the best".

    Args:
        values: candidates x partitions matrix, oriented so lower is better
        test: 'anova' (additive candidate + partition model) or 'paired_t'

    Returns:
        Row index of the best candidate and a p-value per row (the best gets 1.0)
    """
    n_candidates, n_partitions = values.shape
    means = values.mean(axis=1)
    best = int(np.argmin(means))
    pvalues = np.ones(n_candidates)

    if n_candidates < 2 or n_partitions < 2:
        return best, pvalues

    if test == 'anova':
        residuals = values - means[:, None] - values.mean(axis=0)[None, :] + values.mean()
        df = (n_candidates - 1) * (n_partitions - 1)
        mse = float((residuals ** 2).sum() / df)
        std_err = math.sqrt(2 * mse / n_partitions)

        for i in range(n_candidates):
            if i == best:
                continue
            diff = means[i] - means[best]
            if np.isclose(std_err, 0.0):
                pvalues[i] = 0.0 if diff > 1e-12 else 1.0
            else:
                pvalues[i] = stats.t.sf(diff / std_err, df)

    elif test == 'paired_t':
        for i in range(n_candidates):
            if i == best:
                continue
            diffs = values[i] - values[best]
            if np.allclose(diffs, diffs[0]):
                pvalues[i] = 0.0 if diffs[0] > 1e-12 else 1.0
            else:
                pvalues[i] = stats.ttest_rel(values[i], values[best], alternative='greater').pvalue

    else:
        raise InvalidConfiguration(f"Unknown elimination test '{test}', expected one of {ELIMINATION_TESTS}")

    return best, pvalues


class RaceController:
    """Evaluates candidates across partitions, eliminating poor performers between rounds"""

    def __init__(self, evaluator: Evaluator, min_rounds: int = 3, alpha: float = 0.05,
                 test: str = 'anova', n_jobs: Optional[int] = 1, backend: str = 'loky'):
        if min_rounds < 1:
            raise InvalidConfiguration(f"min_rounds must be at least 1, got {min_rounds}")
        if not 0 < alpha < 1:
            raise InvalidConfiguration(f"alpha must be between 0 and 1, got {alpha}")
        if test not in ELIMINATION_TESTS:
            raise InvalidConfiguration(f"Unknown elimination test '{test}', expected one of {ELIMINATION_TESTS}")

        self.evaluator = evaluator
        self.min_rounds = min_rounds
        self.alpha = alpha
        self.test = test
        self.n_jobs = n_jobs
        self.backend = backend

    def run(self, candidates: Sequence[Candidate], partitions: Sequence[Partition],
            dataset: Dataset, parallel: Optional[Parallel] = None) -> RaceResult:
        """
        Race the candidates over the partitions in order.

        Args:
            candidates: candidates to evaluate, with unique ids
            partitions: partitions in resampling order
            dataset: dataset the partitions index into
            parallel: an open joblib worker pool; one is opened for this call when omitted

        Returns:
            RaceResult with every trial and the final leaderboard
        """
        self._validate(candidates, partitions)

        if parallel is None:
            with Parallel(n_jobs=self.n_jobs, backend=self.backend) as pool:
                return self._race(candidates, partitions, dataset, pool)
        return self._race(candidates, partitions, dataset, parallel)

    def _validate(self, candidates: Sequence[Candidate], partitions: Sequence[Partition]):
        if not candidates:
            raise InvalidConfiguration("The race needs at least one candidate")
        if not partitions:
            raise InvalidConfiguration("The race needs at least one partition")

        candidate_ids = [c.candidate_id for c in candidates]
        if len(set(candidate_ids)) != len(candidate_ids):
            raise InvalidConfiguration("Candidate ids must be unique")

        partition_ids = [p.partition_id for p in partitions]
        if len(set(partition_ids)) != len(partition_ids):
            raise InvalidConfiguration("Partition ids must be unique")

    def _race(self, candidates: Sequence[Candidate], partitions: Sequence[Partition],
              dataset: Dataset, parallel: Parallel) -> RaceResult:
        leaderboard = Leaderboard(candidates, self.evaluator.greater_is_better)
        trials: List[Trial] = []
        rounds: List[RoundSummary] = []
        skipped: List[Tuple[str, str]] = []
        completed = 0
        stopped_early = False

        logger.info(
            f"Racing {len(candidates)} candidates over {len(partitions)} partitions "
            f"({self.evaluator.metric.name}, {self.test}, min_rounds={self.min_rounds}, alpha={self.alpha})"
        )

        for round_number, partition in enumerate(partitions, start=1):
            survivors = [e.candidate for e in leaderboard.survivors()]
            if not survivors:
                break

            try:
                self.evaluator.check_partition(partition, dataset)
            except PartitionError as e:
                logger.warning(f"Round {round_number}: skipping {partition.partition_id} ({e.reason})")
                skipped.append((partition.partition_id, e.reason))
                rounds.append(RoundSummary(round_number, partition.partition_id,
                                           skipped=True, reason=e.reason))
                continue

            # Join point: every survivor is scored on this partition before any elimination
            round_trials = parallel(
                delayed(self.evaluator.evaluate)(candidate, partition, dataset)
                for candidate in survivors
            )
            completed += 1

            failed = []
            for trial in round_trials:
                leaderboard.record(trial)
                trials.append(trial)
                if trial.failed:
                    leaderboard.eliminate(trial.candidate_id, round_number, FAILED, trial.error)
                    failed.append(trial.candidate_id)

            eliminated = []
            if completed >= self.min_rounds:
                eliminated = self._eliminate(leaderboard, round_number)

            rounds.append(RoundSummary(
                round_number, partition.partition_id,
                evaluated=tuple(c.candidate_id for c in survivors),
                failed=tuple(failed),
                eliminated=tuple(eliminated),
            ))
            logger.info(
                f"Round {round_number}/{len(partitions)} ({partition.partition_id}): "
                f"{len(survivors)} evaluated, {len(failed)} failed, {len(eliminated)} eliminated, "
                f"{len(leaderboard)} remaining"
            )

            if len(leaderboard) <= 1:
                stopped_early = round_number < len(partitions)
                break

        result = RaceResult(
            metric=self.evaluator.metric.name,
            greater_is_better=self.evaluator.greater_is_better,
            trials=trials,
            leaderboard=leaderboard,
            rounds=rounds,
            skipped_partitions=skipped,
            stopped_early=stopped_early,
        )
        logger.info(f"Race finished: {result.summary()}")
        return result

    def _eliminate(self, leaderboard: Leaderboard, round_number: int) -> List[int]:
        survivors = leaderboard.survivors()
        if len(survivors) < 2:
            return []

        # Only partitions every survivor was scored on keep the comparison paired
        by_partition = [e.values_by_partition() for e in survivors]
        shared = [pid for pid in by_partition[0] if all(pid in values for values in by_partition)]
        if len(shared) < 2:
            return []

        metric = self.evaluator.metric
        values = np.array([[metric.oriented(values[pid]) for pid in shared] for values in by_partition])
        best, pvalues = elimination_pvalues(values, self.test)

        eliminated = []
        for entry, pvalue in zip(survivors, pvalues):
            if pvalue < self.alpha:
                leaderboard.eliminate(
                    entry.candidate_id, round_number, ELIMINATED,
                    f"worse than {survivors[best].candidate.name} (p={pvalue:.4g}, {self.test})"
                )
                eliminated.append(entry.candidate_id)
        return eliminated
