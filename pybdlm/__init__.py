from .statespace.model import ModelStructure, StateSpaceModel, build_model
from .variance import InverseGammaPrior, InverseWishartPrior
from .gibbs import DLMGibbsSampler, GibbsConfig, Posterior
from .errors import ConfigurationError, NumericalFailureError, ChainAbortedError

__version__ = "0.1.0"
