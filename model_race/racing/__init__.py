"""Model-selection racing: resampling, candidate generation, evaluation, racing and selection."""

from model_race.racing.candidates import Candidate, CandidateSet
from model_race.racing.errors import (
    RaceError, InvalidConfiguration, EmptyGrid, FitError, PartitionError, NoSurvivors
)
from model_race.racing.evaluation import Evaluator, Trial
from model_race.racing.race import Leaderboard, RaceController, RaceResult
from model_race.racing.resampling import Dataset, Partition, Resampler, initial_split
from model_race.racing.selection import FinalModel, Selector

__all__ = [
    "Candidate",
    "CandidateSet",
    "Dataset",
    "EmptyGrid",
    "Evaluator",
    "FinalModel",
    "FitError",
    "InvalidConfiguration",
    "Leaderboard",
    "NoSurvivors",
    "Partition",
    "PartitionError",
    "RaceController",
    "RaceError",
    "RaceResult",
    "Resampler",
    "Selector",
    "Trial",
    "initial_split",
]
