from .types import (
    State,
    ProcessModel,
    Input,
    StateWithCovariance,
)
from . import batch
from . import lib
from . import utils

from .lib.groups import SO3
from .lib.states import (
    VectorState,
    GyroBiasState,
    IMUBiasState,
    MatrixLieGroupState,
    SO3State,
)
from .lib.imu import Gyro
from .lib.preintegration import (
    InvalidDurationError,
    FrozenIncrementError,
    AngularVelocityIncrement,
    PreintegratedAngularVelocity,
    integrate_measurements,
)
from .batch import (
    AttitudeResidual,
    AttitudeError,
    PriorResidual,
    Problem,
    L2Loss,
    CauchyLoss,
)

from .utils.common import (
    GaussianResult,
    GaussianResultList,
    MonteCarloResult,
    monte_carlo,
    randvec,
    jacobian,
)
