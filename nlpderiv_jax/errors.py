"""Error taxonomy for derivative-operator synthesis.

Every error carries the label of the operator that triggered it
(``"grad"``, ``"cons_h[2]"``, ``"lag_h"``, ...) so that a failure deep inside
a backend can be traced back to the bundle entry that caused it.
"""


class DerivativeError(Exception):
    """Base class for all errors raised while building or applying operators.

    Attributes:
        operator: Label of the operator that raised the error.
    """

    def __init__(self, operator: str, message: str):
        super().__init__(f"{operator}: {message}")
        self.operator = operator


class BackendPreparationError(DerivativeError):
    """The AD backend could not build a differentiation plan.

    Raised while the bundle is being constructed, never from an apply call.
    """


class ShapeMismatchError(DerivativeError):
    """An array disagrees with the shape an operator was declared or prepared for."""


class ConfigurationError(DerivativeError):
    """The requested combination of operators, overrides and backend is unusable."""
