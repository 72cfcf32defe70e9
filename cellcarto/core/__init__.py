from .errors import (
    CartoError,
    DecodeError,
    DegradationEvent,
    EventLog,
    GeneNotFoundError,
    NoCoordinateSourceError,
    NotFoundError,
)
from .expression import GeneExpressionCache, SparseGeneResolver
from .filters import Debouncer, FilterKind, FilterPipeline, FilterPredicate
from .row_table import RowTable
from .sampling import FisherYatesSampler, sample, target_count
from .session import CartoSession

__all__ = [
    # Session
    "CartoSession",
    # Errors
    "CartoError",
    "NotFoundError",
    "DecodeError",
    "GeneNotFoundError",
    "NoCoordinateSourceError",
    "DegradationEvent",
    "EventLog",
    # Components
    "RowTable",
    "SparseGeneResolver",
    "GeneExpressionCache",
    "FilterPipeline",
    "FilterPredicate",
    "FilterKind",
    "Debouncer",
    "FisherYatesSampler",
    "sample",
    "target_count",
]
