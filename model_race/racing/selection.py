# model_race/racing/selection.py
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import joblib
import numpy as np
import pandas as pd

from model_race.racing.candidates import Candidate
from model_race.racing.errors import FitError, NoSurvivors
from model_race.racing.evaluation import Evaluator, predict_scores
from model_race.racing.race import ELIMINATED, FAILED, Leaderboard, LeaderboardEntry
from model_race.racing.resampling import Dataset

logger = logging.getLogger(__name__)

MODEL_FILE = 'model.pkl'
LABEL_ENCODER_FILE = 'label_encoder.pkl'
METADATA_FILE = 'model_metadata.json'

Records = Union[pd.DataFrame, Mapping[str, Any], List[Mapping[str, Any]]]


@dataclass(frozen=True)
class FinalModel:
    """The winning candidate refit on the full training set"""
    candidate: Candidate
    estimator: Any
    task: str
    target: str
    feature_names: List[str]
    metric: str
    resample_score: float
    label_encoder: Optional[Any] = None
    trained_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def _as_frame(self, records: Records) -> pd.DataFrame:
        if isinstance(records, pd.DataFrame):
            frame = records
        elif isinstance(records, Mapping):
            frame = pd.DataFrame([records])
        else:
            frame = pd.DataFrame(list(records))
        # Missing features are imputed by the preprocessing step
        return frame.reindex(columns=self.feature_names)

    def predict(self, records: Records) -> np.ndarray:
        """Predicted value or class per input record"""
        predictions = self.estimator.predict(self._as_frame(records))
        if self.label_encoder is not None:
            predictions = self.label_encoder.inverse_transform(predictions.astype(int))
        return predictions

    def predict_proba(self, records: Records) -> pd.DataFrame:
        """Class probabilities per input record, columns named by class"""
        if self.task != 'classification':
            raise ValueError("Probabilities are only available for classification models")

        scores = predict_scores(self.estimator, self._as_frame(records))
        classes = self.estimator.classes_
        if self.label_encoder is not None:
            classes = self.label_encoder.inverse_transform(classes)
        return pd.DataFrame(scores, columns=[str(c) for c in classes])

    def feature_importance(self) -> Optional[pd.Series]:
        """Importance per encoded feature, if the fitted model exposes one"""
        model = self.estimator.named_steps['model']
        names = self.estimator.named_steps['preprocess'].get_feature_names_out()

        try:
            if hasattr(model, 'feature_importances_'):
                importance = pd.Series(model.feature_importances_, index=names)
            elif hasattr(model, 'coef_'):
                coef = np.asarray(model.coef_)
                if coef.ndim == 1:
                    importance = pd.Series(np.abs(coef), index=names)
                else:
                    # Multi-class: mean of absolute coefficients
                    importance = pd.Series(np.mean(np.abs(coef), axis=0), index=names)
            else:
                return None
        except ValueError as e:
            logger.warning(f"Could not extract feature importance: {str(e)}")
            return None

        return importance.sort_values(ascending=False)

    def metadata(self) -> Dict[str, Any]:
        return {
            'candidate': self.candidate.to_dict(),
            'model_type': type(self.estimator.named_steps['model']).__name__,
            'task': self.task,
            'target': self.target,
            'feature_names': list(self.feature_names),
            'metric': self.metric,
            'resample_score': self.resample_score,
            'classes': [str(c) for c in self.label_encoder.classes_] if self.label_encoder is not None else None,
            'trained_at': self.trained_at,
        }

    def save(self, directory: Union[str, Path]) -> Dict[str, Optional[str]]:
        """Write the model, optional label encoder and metadata into a directory"""
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)

        model_path = directory / MODEL_FILE
        joblib.dump(self.estimator, model_path)

        label_encoder_path = None
        if self.label_encoder is not None:
            label_encoder_path = directory / LABEL_ENCODER_FILE
            joblib.dump(self.label_encoder, label_encoder_path)

        metadata_path = directory / METADATA_FILE
        with open(metadata_path, 'w') as f:
            json.dump(self.metadata(), f, indent=2, default=str)

        logger.info(f"Saved final model {self.candidate.name} to {directory}")
        return {
            'model_file': str(model_path),
            'metadata_file': str(metadata_path),
            'label_encoder_file': str(label_encoder_path) if label_encoder_path else None,
        }

    @classmethod
    def load(cls, directory: Union[str, Path]) -> 'FinalModel':
        """Reload a model written by save()"""
        directory = Path(directory)
        metadata_path = directory / METADATA_FILE
        if not metadata_path.exists():
            raise FileNotFoundError(f"No model metadata found in {directory}")

        with open(metadata_path, 'r') as f:
            metadata = json.load(f)

        label_encoder_path = directory / LABEL_ENCODER_FILE
        label_encoder = joblib.load(label_encoder_path) if label_encoder_path.exists() else None

        return cls(
            candidate=Candidate.from_dict(metadata['candidate']),
            estimator=joblib.load(directory / MODEL_FILE),
            task=metadata['task'],
            target=metadata['target'],
            feature_names=metadata['feature_names'],
            metric=metadata['metric'],
            resample_score=metadata['resample_score'],
            label_encoder=label_encoder,
            trained_at=metadata['trained_at'],
        )


class Selector:
    """Picks the race winner and refits it on the full training set"""

    def __init__(self, evaluator: Evaluator):
        self.evaluator = evaluator

    def select(self, leaderboard: Leaderboard) -> LeaderboardEntry:
        """Best mean among survivors; ties go to the lower total cost, then the lower id"""
        survivors = leaderboard.survivors()

        if not survivors:
            entries = leaderboard.entries
            n_failed = sum(1 for e in entries if e.status == FAILED)
            n_eliminated = sum(1 for e in entries if e.status == ELIMINATED)
            raise NoSurvivors(
                f"No candidate survived the race: {len(entries)} candidates, "
                f"{n_eliminated} eliminated by statistics, {n_failed} failed to fit"
            )

        best = survivors[0]
        logger.info(
            f"Selected {best.candidate.name} with mean {self.evaluator.metric.name} "
            f"{best.mean:.4f} over {best.n_trials} partitions"
        )
        return best

    def refit(self, entry: LeaderboardEntry, dataset: Dataset,
              label_encoder: Optional[Any] = None) -> FinalModel:
        """Fit the selected candidate on every training row"""
        candidate = entry.candidate
        estimator = self.evaluator.build_estimator(candidate)

        try:
            estimator.fit(dataset.features, dataset.labels)
        except Exception as e:
            raise FitError(candidate.candidate_id, 'full_training_set', e) from e

        logger.info(f"Refit {candidate.name} on {dataset.n_rows} training rows")
        return FinalModel(
            candidate=candidate,
            estimator=estimator,
            task=self.evaluator.task,
            target=dataset.target,
            feature_names=dataset.feature_names,
            metric=self.evaluator.metric.name,
            resample_score=entry.mean,
            label_encoder=label_encoder,
        )

    def select_and_refit(self, leaderboard: Leaderboard, dataset: Dataset,
                         label_encoder: Optional[Any] = None) -> FinalModel:
        return self.refit(self.select(leaderboard), dataset, label_encoder)
