# tests/test_race.py
import math

import numpy as np
import pytest

from model_race.racing.algorithms import default_grids
from model_race.racing.candidates import Candidate, CandidateSet
from model_race.racing.errors import InvalidConfiguration, NoSurvivors
from model_race.racing.evaluation import Evaluator, Trial
from model_race.racing.race import (
    ALIVE, ELIMINATED, FAILED, Leaderboard, RaceController, elimination_pvalues
)
from model_race.racing.resampling import Partition, Resampler
from model_race.racing.selection import Selector


def partition_number(partition):
    return int(partition.partition_id[-2:])


def spread_scores(candidate, partition):
    """RMSE 1.0, 1.5, ... by candidate plus a little per-partition noise"""
    noise = 0.02 * math.sin(partition_number(partition) * 1.7 + candidate.candidate_id)
    return 1.0 + 0.5 * (candidate.candidate_id - 1) + noise


class TestEliminationTests:

    def test_clearly_worse_rows_get_small_pvalues(self):
        values = np.array([
            [1.00, 1.02, 0.98, 1.01],
            [1.01, 0.99, 1.02, 1.00],
            [3.00, 3.02, 2.97, 3.01],
        ])
        for test in ('anova', 'paired_t'):
            best, pvalues = elimination_pvalues(values, test)
            assert best in (0, 1)
            assert pvalues[2] < 0.01
            assert pvalues[best] == 1.0
            assert pvalues[1 - best] > 0.05

    def test_constant_gap_without_noise(self):
        values = np.array([[1.0, 2.0, 3.0], [1.5, 2.5, 3.5]])
        _, pvalues = elimination_pvalues(values, 'paired_t')
        assert pvalues[1] == 0.0

    def test_identical_rows_never_eliminated(self):
        values = np.array([[1.0, 2.0, 3.0], [1.0, 2.0, 3.0]])
        for test in ('anova', 'paired_t'):
            _, pvalues = elimination_pvalues(values, test)
            assert list(pvalues) == [1.0, 1.0]

    def test_unknown_test(self):
        with pytest.raises(InvalidConfiguration):
            elimination_pvalues(np.ones((2, 3)), 'wilcoxon')


class TestLeaderboard:

    def test_removed_candidates_cannot_record_or_return(self):
        leaderboard = Leaderboard([Candidate(1, 'ridge'), Candidate(2, 'ridge')], greater_is_better=False)
        leaderboard.eliminate(2, 3, ELIMINATED, 'worse')

        assert 2 not in leaderboard
        assert len(leaderboard) == 1
        with pytest.raises(ValueError):
            leaderboard.record(Trial(2, 'Fold04', 'ridge', value=1.0))
        with pytest.raises(ValueError):
            leaderboard.eliminate(2, 4, ELIMINATED, 'again')

    def test_ranking_orders_by_oriented_mean(self):
        leaderboard = Leaderboard([Candidate(1, 'svm'), Candidate(2, 'svm')], greater_is_better=True)
        leaderboard.record(Trial(1, 'Fold01', 'svm', value=0.7))
        leaderboard.record(Trial(2, 'Fold01', 'svm', value=0.9))

        assert [e.candidate_id for e in leaderboard.survivors()] == [2, 1]
        frame = leaderboard.to_frame()
        assert list(frame['candidate_id']) == [2, 1]
        assert list(frame['rank']) == [1, 2]


class TestRaceController:

    def test_invalid_settings(self):
        evaluator = Evaluator('regression')
        with pytest.raises(InvalidConfiguration):
            RaceController(evaluator, min_rounds=0)
        with pytest.raises(InvalidConfiguration):
            RaceController(evaluator, alpha=1.5)
        with pytest.raises(InvalidConfiguration):
            RaceController(evaluator, test='friedman')

    def test_duplicate_candidate_ids_rejected(self, regression_dataset):
        partitions = Resampler(n_partitions=3).split(regression_dataset)
        with pytest.raises(InvalidConfiguration):
            RaceController(Evaluator('regression')).run(
                [Candidate(1, 'ridge'), Candidate(1, 'lasso')], partitions, regression_dataset
            )

    def test_scenario_a_race_down_to_one_winner(self, regression_dataset, linear_candidates,
                                                scripted_evaluator):
        partitions = Resampler(n_partitions=10).split(regression_dataset)
        evaluator = scripted_evaluator('regression', spread_scores, metric='rmse')

        result = RaceController(evaluator, min_rounds=3, alpha=0.05).run(
            linear_candidates, partitions, regression_dataset
        )

        # Nothing is eliminated before the minimum number of rounds
        assert result.rounds[0].eliminated == () and result.rounds[1].eliminated == ()
        assert 5 in result.rounds[2].eliminated

        survivors = result.leaderboard.survivors()
        assert [e.candidate_id for e in survivors] == [1]
        assert result.rounds_completed <= 10
        assert result.leaderboard.entry(5).status == ELIMINATED
        assert result.leaderboard.entry(5).eliminated_round == 3

        final_model = Selector(evaluator).select_and_refit(result.leaderboard, regression_dataset)
        assert final_model.candidate.candidate_id == 1
        assert len(final_model.predict(regression_dataset.features.head(5))) == 5

    def test_scenario_b_every_fit_fails(self, regression_dataset, linear_candidates, scripted_evaluator):
        def always_fails(candidate, partition):
            raise RuntimeError("singular matrix")

        partitions = Resampler(n_partitions=10).split(regression_dataset)
        evaluator = scripted_evaluator('regression', always_fails)
        result = RaceController(evaluator).run(linear_candidates, partitions, regression_dataset)

        assert len(result.leaderboard) == 0
        assert all(e.status == FAILED for e in result.leaderboard.entries)
        assert all('singular matrix' in e.reason for e in result.leaderboard.entries)
        # Failed candidates are not retried on later partitions
        assert len(evaluator.calls) == 5

        with pytest.raises(NoSurvivors):
            Selector(evaluator).select(result.leaderboard)

    def test_failure_is_distinguishable_from_statistical_elimination(self, regression_dataset,
                                                                     linear_candidates, scripted_evaluator):
        def candidate_two_breaks(candidate, partition):
            if candidate.candidate_id == 2:
                raise ValueError("bad parameters")
            return spread_scores(candidate, partition)

        partitions = Resampler(n_partitions=10).split(regression_dataset)
        evaluator = scripted_evaluator('regression', candidate_two_breaks)
        result = RaceController(evaluator).run(linear_candidates, partitions, regression_dataset)

        assert result.leaderboard.entry(2).status == FAILED
        assert result.leaderboard.entry(2).eliminated_round == 1
        assert result.leaderboard.entry(5).status == ELIMINATED
        summary = result.summary()
        assert summary['failed'] == 1
        assert summary['eliminated'] == 3

    def test_unusable_partition_is_skipped(self, classification_dataset, scripted_evaluator):
        labels = classification_dataset.labels.to_numpy()
        ones = np.flatnonzero(labels == 1)
        good = Resampler(n_partitions=4, stratify=True).split(classification_dataset)
        partitions = [Partition('Fold00', ones[:30], np.arange(len(labels))[:10])] + good

        evaluator = scripted_evaluator('classification', lambda c, p: 0.8)
        result = RaceController(evaluator).run(
            [Candidate(1, 'naive_bayes'), Candidate(2, 'naive_bayes')], partitions, classification_dataset
        )

        assert [pid for pid, _ in result.skipped_partitions] == ['Fold00']
        assert result.rounds[0].skipped
        assert 'Fold00' not in {t.partition_id for t in result.trials}
        assert result.rounds_completed == 4

    def test_monotonic_elimination(self, regression_dataset, linear_candidates, scripted_evaluator):
        partitions = Resampler(n_partitions=10).split(regression_dataset)
        evaluator = scripted_evaluator('regression', spread_scores)
        result = RaceController(evaluator, min_rounds=2, test='paired_t').run(
            linear_candidates, partitions, regression_dataset
        )

        removed_in = {}
        for summary in result.rounds:
            for candidate_id in summary.evaluated:
                assert candidate_id not in removed_in
            for candidate_id in summary.failed + summary.eliminated:
                removed_in[candidate_id] = summary.round_number

        for entry in result.leaderboard.entries:
            if entry.status != ALIVE:
                assert entry.n_trials == removed_in[entry.candidate_id]

    def test_idempotent_with_fixed_seed_and_partitions(self, regression_dataset):
        candidates = [
            Candidate(1, 'random_forest', {'n_estimators': 20, 'max_depth': 3}),
            Candidate(2, 'decision_tree', {'max_depth': 2}),
            Candidate(3, 'ridge', {'alpha': 1.0}),
        ]
        partitions = Resampler(n_partitions=4, random_state=11).split(regression_dataset)

        first = RaceController(Evaluator('regression', random_state=5), min_rounds=2).run(
            candidates, partitions, regression_dataset
        )
        second = RaceController(Evaluator('regression', random_state=5), min_rounds=2).run(
            candidates, partitions, regression_dataset
        )

        assert [(t.candidate_id, t.partition_id, t.value) for t in first.trials] == \
               [(t.candidate_id, t.partition_id, t.value) for t in second.trials]
        assert [e.candidate_id for e in first.leaderboard.ranking()] == \
               [e.candidate_id for e in second.leaderboard.ranking()]

    def test_parallel_pool_matches_sequential(self, regression_dataset):
        from joblib import Parallel

        candidates = [Candidate(1, 'ridge', {'alpha': 0.1}), Candidate(2, 'ridge', {'alpha': 10.0})]
        partitions = Resampler(n_partitions=3).split(regression_dataset)
        controller = RaceController(Evaluator('regression'), min_rounds=3)

        sequential = controller.run(candidates, partitions, regression_dataset)
        with Parallel(n_jobs=2, backend='threading') as pool:
            parallel = controller.run(candidates, partitions, regression_dataset, parallel=pool)

        assert [t.value for t in sequential.trials] == pytest.approx([t.value for t in parallel.trials])

    def test_partition_missing_a_class_is_skipped(self, multiclass_dataset):
        labels = multiclass_dataset.labels.to_numpy()
        rows = np.arange(len(labels))
        validation = np.flatnonzero(labels != 2)[:20]
        lopsided = Partition('Fold00', np.setdiff1d(rows, validation), validation)
        partitions = [lopsided] + Resampler(n_partitions=3, stratify=True).split(multiclass_dataset)

        candidates = [Candidate(1, 'naive_bayes'), Candidate(2, 'logistic_regression', {'C': 1.0})]
        evaluator = Evaluator('classification', 'roc_auc')
        result = RaceController(evaluator, min_rounds=3).run(candidates, partitions, multiclass_dataset)

        assert [pid for pid, _ in result.skipped_partitions] == ['Fold00']
        assert result.summary()['failed'] == 0
        assert result.rounds_completed == 3
        assert Selector(evaluator).select(result.leaderboard).candidate_id in (1, 2)

    def test_multiclass_race_with_default_grid(self, multiclass_dataset):
        candidates = CandidateSet(default_grids('classification'), 'classification').generate()
        partitions = Resampler(n_partitions=3, stratify=True).split(multiclass_dataset)
        evaluator = Evaluator('classification', 'roc_auc')

        result = RaceController(evaluator, min_rounds=3).run(candidates, partitions, multiclass_dataset)

        failures = {e.candidate.name: e.reason for e in result.leaderboard.entries if e.status == FAILED}
        assert failures == {}
        final_model = Selector(evaluator).select_and_refit(result.leaderboard, multiclass_dataset)
        probabilities = final_model.predict_proba(multiclass_dataset.features.head(4))
        assert probabilities.shape == (4, 3)


class TestSelector:

    def _leaderboard(self, values, elapsed=1.0):
        candidates = [Candidate(cid, 'ridge') for cid in values]
        leaderboard = Leaderboard(candidates, greater_is_better=False)
        for cid, value in values.items():
            leaderboard.record(Trial(cid, 'Fold01', 'ridge', metric='rmse', value=value, elapsed=elapsed))
        return leaderboard

    def test_scenario_d_tie_goes_to_lower_id(self):
        leaderboard = self._leaderboard({7: 2.0, 3: 2.0, 9: 2.5})
        best = Selector(Evaluator('regression')).select(leaderboard)
        assert best.candidate_id == 3

    def test_tie_on_mean_goes_to_lower_cost(self):
        candidates = [Candidate(1, 'ridge'), Candidate(2, 'ridge')]
        leaderboard = Leaderboard(candidates, greater_is_better=False)
        leaderboard.record(Trial(1, 'Fold01', 'ridge', value=2.0, elapsed=5.0))
        leaderboard.record(Trial(2, 'Fold01', 'ridge', value=2.0, elapsed=1.0))

        assert Selector(Evaluator('regression')).select(leaderboard).candidate_id == 2

    def test_no_survivors_reports_counts(self):
        leaderboard = self._leaderboard({1: 2.0, 2: 3.0})
        leaderboard.eliminate(1, 1, FAILED, 'broken')
        leaderboard.eliminate(2, 3, ELIMINATED, 'worse')

        with pytest.raises(NoSurvivors, match="1 eliminated by statistics, 1 failed to fit"):
            Selector(Evaluator('regression')).select(leaderboard)
