"""Exceptions raised by the reflector simulator."""


class InvalidGeometry(ValueError):
    """Degenerate or out-of-range geometry/configuration input.

    Raised for a zero-length source segment, a non-positive ellipse semi-axis,
    non-finite geometry parameters or an unusable simulation configuration.
    Fatal to the offending call only; previously derived state is untouched.
    """
    pass


class NumericalDegeneracy(ArithmeticError):
    """An intersection strategy cannot decide for this ray/ellipse pair.

    Raised by individual solver stages (vanishing leading coefficient,
    near-tangent discriminant, roots failing the residual check) and caught
    by the solver, which falls through to the next stage.  Never escapes the
    public API.
    """
    pass
