from .common import (
    GaussianResult,
    GaussianResultList,
    MonteCarloResult,
    monte_carlo,
    randvec,
    jacobian,
)
