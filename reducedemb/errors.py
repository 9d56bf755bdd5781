"""
Error kinds raised by the reduction and evaluation engine.

Per-record errors (ExtractionError, DimensionMismatch) are recovered by
excluding the record; everything else aborts the run.
"""


class ReducedEmbError(Exception):
    """
    Base class for all engine errors.

    Attributes:
        stage: Pipeline stage that failed (e.g. "dataset", "cache", "search")
        record: Offending record path, when applicable
        dimension: Offending dimension or width, when applicable
    """

    stage = "engine"

    def __init__(self, message, stage=None, record=None, dimension=None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage
        self.record = record
        self.dimension = dimension

    def diagnostic(self):
        parts = [f"[{self.stage}] {self}"]
        if self.record is not None:
            parts.append(f"record={self.record}")
        if self.dimension is not None:
            parts.append(f"dimension={self.dimension}")
        return " ".join(parts)


class InvalidDatasetPath(ReducedEmbError):
    stage = "dataset"


class ExtractionError(ReducedEmbError):
    stage = "extraction"


class DimensionMismatch(ExtractionError):
    stage = "extraction"


class CacheCorruption(ReducedEmbError):
    stage = "cache"


class SearchTooLarge(ReducedEmbError):
    stage = "search"


class DegeneratePairSet(ReducedEmbError):
    stage = "evaluation"


class InvalidParameter(ReducedEmbError, ValueError):
    stage = "parameters"
