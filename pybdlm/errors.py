class ConfigurationError(ValueError):
    """Raised when a model structure, parameter vector, prior or sampler
    setting is invalid. Always raised before any recursion runs."""


class NumericalFailureError(ArithmeticError):
    def __init__(self,
                 message: str,
                 timestep: int = None,
                 iteration: int = None):
        self.reason = message
        self.timestep = timestep
        self.iteration = iteration
        super().__init__(message)

    @property
    def message(self) -> str:
        location = []
        if self.iteration is not None:
            location.append(f"iteration {self.iteration}")
        if self.timestep is not None:
            location.append(f"time step {self.timestep}")
        if location:
            return f"{self.reason} ({', '.join(location)})"
        return self.reason

    def __str__(self):
        return self.message

    def __reduce__(self):
        # Chains that fail in a joblib worker are sent back to the parent process
        return self.__class__, (self.reason, self.timestep, self.iteration)


class ChainAbortedError(RuntimeError):
    def __init__(self,
                 chain_id: int,
                 iteration: int,
                 cause: Exception,
                 partial=None):
        self.chain_id = chain_id
        self.iteration = iteration
        self.cause = cause
        self.partial = partial
        self.message = f"""Chain {chain_id} aborted at iteration {iteration}: {cause}. The draws
                       completed before the failure are preserved in the 'partial' attribute.
                       Consider a combination of the following: (1) scaling your data,
                       (2) changing the starting parameter vector, and/or (3) using more
                       informative variance priors.
                       """
        super().__init__(self.message)

    def __reduce__(self):
        return self.__class__, (self.chain_id, self.iteration, self.cause, self.partial)
