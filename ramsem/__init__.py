from .errors import (
    SemError,
    CyclicModelError,
    MissingParameterError,
    DimensionMismatchError,
    SingularStructuralMatrixError,
    ExternalMatchError,
)
from .parametertable import (
    ParameterTable,
    update_partable,
    update_estimate,
    update_start,
    update_se_hessian,
    lavaan_params,
)
from .ram_matrices import RAMMatrices
from .implied import RAM
from .observed import SemObserved, SemObservedMissing
from .loss_functions import SemLossFunction, SemML, SemWLS, SemFIML, SemRidge, SemLoss
from .model import Sem, SemEnsemble
from .optimizers import OptimizationResult, get_optimizer, AVAILABLE_OPTIMIZERS
from .fit import SemFit, fit, start_simple, start_parameter_table
from .standard_errors import se_hessian, H_scaling
from .semopts import SemOptions
from .functions import jacobian, Gamma_ADF, vech, duplication_matrix
