# global_parameters.py


class GlobalParameters:
    def __init__(self, initial_params=None):
        """
        all parameters are defined with underscore, _, instead of spaces
        """
        self._params = {
            # Proximal (trust-region) weight lambda added to the diagonal of
            # the normal equations. 0 means plain weighted least squares; the
            # caller must then pin rigid motions with soft constraints.
            "proximal_weight": 0.0,
            # Penalty used for soft positional anchors.
            "soft_constraint_penalty": 1000.0,
            # Threads used for the per-element assembly phase. 1 runs serially.
            "num_workers": 1,
            # Elements handled per worker task.
            "chunk_size": 4096,
            # Cache the sparsity pattern of the weighted operator across
            # iterations (only the coefficients are recomputed).
            "reuse_sparsity_pattern": True,
            "max_iterations": 50,
            # Logging: path of a log file (None writes no file) and DEBUG level.
            "log_file": None,
            "debug": False,
            # Outer-loop stop: max vertex displacement between iterates.
            "tolerance": 1e-8,
        }
        if initial_params:
            self.update(initial_params)

    def __getattr__(self, name):
        """Attribute access for known parameter keys."""
        params = self.__dict__.get("_params")
        if params is not None and name in params:
            return params[name]
        raise AttributeError(
            f"{type(self).__name__!s} object has no attribute {name!r}"
        )

    def __setattr__(self, name, value):
        """Attribute assignment for known parameter keys."""
        if name == "_params":
            object.__setattr__(self, name, value)
            return
        params = self.__dict__.get("_params")
        if params is not None and name in params:
            params[name] = value
            return
        object.__setattr__(self, name, value)

    def get(self, key, default=None):
        """Retrieve a parameter value, or return a default if not found."""
        return self._params.get(key, default)

    def set(self, key, value):
        """Set or update a parameter."""
        self._params[key] = value

    def update(self, params):
        """Update multiple parameters at once."""
        self._params.update(params)

    def __contains__(self, key):
        return key in self._params

    def __repr__(self):
        return f"GlobalParameters({self._params})"

    def to_dict(self):
        """Convert the parameters to a dictionary for serialization."""
        return self._params
