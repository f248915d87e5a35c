# model_race/racing/errors.py
from typing import Optional


class RaceError(Exception):
    """Base class for every failure raised by the racing harness"""


class InvalidConfiguration(RaceError):
    """Bad resampler, candidate set or race parameters supplied by the caller"""


class EmptyGrid(RaceError):
    """An algorithm in the candidate set has no parameter combinations"""

    def __init__(self, algorithm: str, message: Optional[str] = None):
        self.algorithm = algorithm
        super().__init__(message or f"Algorithm '{algorithm}' has zero parameter combinations")


class FitError(RaceError):
    """A single candidate could not be fitted or scored on a single partition"""

    def __init__(self, candidate_id: Optional[int], partition_id: Optional[str], cause: BaseException):
        self.candidate_id = candidate_id
        self.partition_id = partition_id
        self.cause = cause
        super().__init__(
            f"Candidate {candidate_id} failed on partition {partition_id}: "
            f"{type(cause).__name__}: {cause}"
        )


class PartitionError(RaceError):
    """A partition is unusable for every candidate"""

    def __init__(self, partition_id: str, reason: str):
        self.partition_id = partition_id
        self.reason = reason
        super().__init__(f"Partition {partition_id} is unusable: {reason}")


class NoSurvivors(RaceError):
    """The race finished without a usable candidate"""
