"""Hessian-Free (truncated-Newton) optimization for parameterized models."""

from .caches import DeltaPool, VectorPool
from .cg import CGSolver, CGState, ConvergenceCriteria
from .concurrent_objective import ConcurrentObjective
from .damping import DampedObjective, DampingLearner
from .param_delta import ParamDelta, Parameter
from .samples import SliceSampleSet, VectorSample, vector_sample_set
from .trainer import Trainer, TrainerState
from .ui import ConsoleUI, NullUI

__all__ = [
    "CGSolver",
    "CGState",
    "ConcurrentObjective",
    "ConsoleUI",
    "ConvergenceCriteria",
    "DampedObjective",
    "DampingLearner",
    "DeltaPool",
    "NullUI",
    "ParamDelta",
    "Parameter",
    "SliceSampleSet",
    "Trainer",
    "TrainerState",
    "VectorPool",
    "VectorSample",
    "vector_sample_set",
]
