# model_race/agents/race_agent.py
import asyncio
import logging
import math
from dataclasses import asdict
from typing import Any, Dict, Optional

import pandas as pd
from sklearn.preprocessing import LabelEncoder

from model_race.config import Config, get_config
from model_race.racing.algorithms import default_grids
from model_race.racing.candidates import CandidateSet
from model_race.racing.evaluation import Evaluator, predict_scores
from model_race.racing.metrics import CLASSIFICATION, REGRESSION, calculate_metrics, get_metric
from model_race.racing.race import RaceController
from model_race.racing.resampling import Dataset, Resampler, initial_split
from model_race.racing.selection import Selector
from model_race.utils.logging_config import PipelineLogger, log_async_execution_time

logger = logging.getLogger(__name__)

def _finite(value: float) -> Optional[float]:
    """None for NaN or infinite values, which JSON cannot carry"""
    return float(value) if math.isfinite(value) else None

class ModelRaceAgent:
    """Agent that prepares the data, races the candidates and refits the winner"""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()

    async def prepare(self, state: dict) -> dict:
        """Drop unlabelled rows, detect the task, encode labels and hold out a test set"""
        logger.info("Preparing data for the race")

        try:
            data = state['raw_data']
            target_column = state['target_column']

            n_missing = int(data[target_column].isnull().sum())
            data = data.dropna(subset=[target_column]).reset_index(drop=True)
            if n_missing:
                state['execution_log'].append(f"Dropped {n_missing} rows with a missing target")

            task_type = self._determine_task_type(data[target_column])
            logger.info(f"Detected task type: {task_type}")

            # Classifiers race on integer labels 0..k-1
            label_encoder = None
            if task_type == CLASSIFICATION:
                label_encoder = LabelEncoder()
                data[target_column] = label_encoder.fit_transform(data[target_column])

            settings = self.config.resampling
            train_dataset, test_dataset = initial_split(
                Dataset(data, target_column),
                test_size=settings.TEST_SIZE,
                stratify=settings.STRATIFY,
                strata_bins=settings.STRATA_BINS,
                random_state=settings.RANDOM_STATE
            )

            metric = get_metric(state.get('metric') or self.config.race.METRIC, task_type)

            state.update({
                'task_type': task_type,
                'metric': metric.name,
                'label_encoder': label_encoder,
                'train_dataset': train_dataset,
                'test_dataset': test_dataset,
                'current_step': 'preparation',
                'next_action': 'candidate_generation'
            })
            state['execution_log'].append(
                f"Prepared {task_type} race on {metric.name}: "
                f"{train_dataset.n_rows} training rows, {test_dataset.n_rows} test rows"
            )
            return state

        except Exception as e:
            logger.error(f"Data preparation failed: {str(e)}")
            state['errors'].append(f"Preparation error: {str(e)}")
            state['next_action'] = 'error'
            return state

    async def generate_candidates(self, state: dict) -> dict:
        """Enumerate the candidate configurations to race"""
        logger.info("Generating candidates")

        try:
            settings = self.config.candidates
            grids = self._candidate_grids(state['task_type'])

            candidate_set = CandidateSet(
                grids,
                task=state['task_type'],
                method=settings.SEARCH_METHOD,
                size=settings.GRID_SIZE,
                levels=settings.LEVELS,
                random_state=self.config.resampling.RANDOM_STATE
            )
            candidates = candidate_set.generate()

            state.update({
                'candidates': candidates,
                'current_step': 'candidate_generation',
                'next_action': 'resampling'
            })
            state['execution_log'].append(
                f"Generated {len(candidates)} candidates across {len(grids)} algorithms "
                f"({settings.SEARCH_METHOD} search)"
            )
            return state

        except Exception as e:
            logger.error(f"Candidate generation failed: {str(e)}")
            state['errors'].append(f"Candidate generation error: {str(e)}")
            state['next_action'] = 'error'
            return state

    def _candidate_grids(self, task_type: str) -> Dict[str, Any]:
        """Configured grids, falling back to the curated defaults for the task"""
        defaults = default_grids(task_type)
        configured = self.config.candidates.PARAM_GRIDS or {}
        algorithms = self.config.candidates.ALGORITHMS

        if algorithms:
            return {name: configured.get(name, defaults.get(name)) for name in algorithms}
        if configured:
            return dict(configured)
        return defaults

    async def resample(self, state: dict) -> dict:
        """Split the training set into race partitions"""
        logger.info("Resampling the training set")

        try:
            settings = self.config.resampling
            resampler = Resampler(
                n_partitions=settings.N_PARTITIONS,
                method=settings.METHOD,
                stratify=settings.STRATIFY,
                strata_bins=settings.STRATA_BINS,
                random_state=settings.RANDOM_STATE
            )
            partitions = resampler.split(state['train_dataset'])

            state.update({
                'partitions': partitions,
                'current_step': 'resampling',
                'next_action': 'race'
            })
            state['execution_log'].append(
                f"Created {len(partitions)} {settings.METHOD} partitions"
                f"{' (stratified)' if settings.STRATIFY else ''}"
            )
            return state

        except Exception as e:
            logger.error(f"Resampling failed: {str(e)}")
            state['errors'].append(f"Resampling error: {str(e)}")
            state['next_action'] = 'error'
            return state

    def _evaluator(self, state: dict) -> Evaluator:
        return Evaluator(state['task_type'], state['metric'],
                         random_state=self.config.resampling.RANDOM_STATE)

    @log_async_execution_time
    async def run_race(self, state: dict) -> dict:
        """Race every candidate over the partitions"""
        settings = self.config.race

        try:
            with PipelineLogger("race") as step:
                controller = RaceController(
                    self._evaluator(state),
                    min_rounds=settings.MIN_ROUNDS,
                    alpha=settings.ALPHA,
                    test=settings.TEST,
                    n_jobs=settings.N_JOBS,
                    backend=settings.BACKEND
                )
                # Fitting is CPU bound, keep the event loop free
                result = await asyncio.to_thread(
                    controller.run, state['candidates'], state['partitions'], state['train_dataset']
                )
                summary = result.summary()
                step.log_metric("trials", summary['trials'])
                step.log_metric("survivors", len(summary['survivors']))

            state.update({
                'race_result': result,
                'current_step': 'race',
                'next_action': 'selection'
            })
            state['execution_log'].append(
                f"Race finished after {summary['rounds_completed']} rounds: "
                f"{len(summary['survivors'])} survivors, {summary['eliminated']} eliminated, "
                f"{summary['failed']} failed"
            )
            return state

        except Exception as e:
            logger.error(f"Race failed: {str(e)}")
            state['errors'].append(f"Race error: {str(e)}")
            state['next_action'] = 'error'
            return state

    async def select_model(self, state: dict) -> dict:
        """Pick the winner, refit it on the training set and score it on the test set"""
        logger.info("Selecting the race winner")

        try:
            result = state['race_result']
            evaluator = self._evaluator(state)
            selector = Selector(evaluator)

            entry = selector.select(result.leaderboard)
            final_model = await asyncio.to_thread(
                selector.refit, entry, state['train_dataset'], state.get('label_encoder')
            )

            test_dataset = state['test_dataset']
            test_metrics = self._score_test_set(final_model.estimator, test_dataset, state['task_type'])

            race_report = {
                'project_name': state.get('project_name'),
                'task_type': state['task_type'],
                'metric': result.metric,
                'greater_is_better': result.greater_is_better,
                'race_config': self.config.get_race_config(),
                'summary': result.summary(),
                'rounds': [asdict(r) for r in result.rounds],
                'winner': {
                    'candidate': entry.candidate.to_dict(),
                    'name': entry.candidate.name,
                    'resample_mean': _finite(entry.mean),
                    'resample_std_err': _finite(entry.std_err),
                    'n_trials': entry.n_trials,
                    'total_cost_seconds': entry.total_cost,
                },
                'test_metrics': test_metrics,
            }

            importance = final_model.feature_importance()
            if importance is not None:
                race_report['feature_importance'] = importance.head(20).to_dict()

            state.update({
                'final_model': final_model,
                'test_metrics': test_metrics,
                'race_report': race_report,
                'current_step': 'selection',
                'next_action': 'persistence'
            })
            state['execution_log'].append(
                f"Selected {entry.candidate.name} ({result.metric} {entry.mean:.4f} on resamples, "
                f"{test_metrics.get(result.metric, float('nan')):.4f} on the test set)"
            )
            return state

        except Exception as e:
            logger.error(f"Model selection failed: {str(e)}")
            state['errors'].append(f"Selection error: {type(e).__name__}: {str(e)}")
            state['next_action'] = 'error'
            return state

    def _score_test_set(self, estimator: Any, test_dataset: Dataset, task_type: str) -> Dict[str, float]:
        X_test, y_test = test_dataset.features, test_dataset.labels
        y_pred = estimator.predict(X_test)
        y_score = predict_scores(estimator, X_test) if task_type == CLASSIFICATION else None
        return calculate_metrics(task_type, y_test, y_pred, y_score)

    def _determine_task_type(self, y: pd.Series) -> str:
        """Determine if task is classification or regression"""
        if y.dtype in ['object', 'category', 'bool']:
            return CLASSIFICATION
        elif y.nunique() <= 20 and y.nunique() < len(y) * 0.1:
            return CLASSIFICATION
        else:
            return REGRESSION
