from .residuals import Residual, PriorResidual, AttitudeResidual, AttitudeError
from .losses import LossFunction, L2Loss, CauchyLoss
from .problem import Problem, OptimizationSummary
