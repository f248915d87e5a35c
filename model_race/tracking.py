# model_race/tracking.py
import logging
import math
from typing import Any, Dict, Optional

import mlflow
import mlflow.sklearn

from model_race.racing.race import RaceResult
from model_race.racing.selection import FinalModel
from model_race.utils.logging_config import log_execution_time

logger = logging.getLogger(__name__)

class RaceTracker:
    """Logs a finished race to MLflow: one parent run, one nested run per candidate"""

    def __init__(self, tracking_uri: str, experiment_name: str, enabled: bool = True):
        self.tracking_uri = tracking_uri
        self.experiment_name = experiment_name
        self.enabled = enabled

    @log_execution_time
    def log_race(self, project_name: str, result: RaceResult,
                 final_model: Optional[FinalModel] = None,
                 test_metrics: Optional[Dict[str, float]] = None,
                 race_config: Optional[Dict[str, Any]] = None) -> Optional[str]:
        """Record the race; returns the parent run id, or None when tracking is disabled"""
        if not self.enabled:
            logger.info("MLflow tracking disabled, skipping race logging")
            return None

        mlflow.set_tracking_uri(self.tracking_uri)
        mlflow.set_experiment(self.experiment_name)

        with mlflow.start_run(run_name=project_name) as parent_run:
            mlflow.set_tag("project_name", project_name)
            if race_config:
                mlflow.log_params({k: str(v) for k, v in race_config.items()})

            summary = result.summary()
            mlflow.log_metric("candidates", summary['candidates'])
            mlflow.log_metric("eliminated", summary['eliminated'])
            mlflow.log_metric("failed", summary['failed'])
            mlflow.log_metric("trials", summary['trials'])
            mlflow.log_metric("rounds_completed", summary['rounds_completed'])

            for entry in result.leaderboard.ranking():
                candidate = entry.candidate
                with mlflow.start_run(run_name=candidate.name, nested=True):
                    mlflow.log_param("algorithm", candidate.algorithm)
                    for param, value in candidate.params.items():
                        mlflow.log_param(param, value)
                    mlflow.set_tag("status", entry.status)
                    if entry.reason:
                        mlflow.set_tag("reason", entry.reason[:250])

                    for step, trial in enumerate(entry.trials, start=1):
                        if not trial.failed:
                            mlflow.log_metric(result.metric, trial.value, step=step)
                    if math.isfinite(entry.mean):
                        mlflow.log_metric(f"mean_{result.metric}", entry.mean)
                    mlflow.log_metric("n_trials", entry.n_trials)
                    mlflow.log_metric("total_cost_seconds", entry.total_cost)

            if final_model is not None:
                mlflow.set_tag("winner", final_model.candidate.name)
                mlflow.log_metric(f"resample_{final_model.metric}", final_model.resample_score)
                for metric_name, value in (test_metrics or {}).items():
                    mlflow.log_metric(f"test_{metric_name}", value)
                mlflow.sklearn.log_model(final_model.estimator, "model")

            run_id = parent_run.info.run_id

        logger.info(f"Race logged to MLflow experiment '{self.experiment_name}' (run {run_id})")
        return run_id
