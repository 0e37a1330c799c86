"""
Dimensional-consistency filter for generated descriptors.

Primary features may be given physical units (e.g. {"a": "angstrom",
"E": "eV"}). Each candidate descriptor's unit is inferred from its AST with
pint; candidates such as `(a+E)` or `log(a)` are dimensionally inconsistent
and are rejected by the binary and unary generation stages.

Example:
    >>> dim_filter = DimensionFilter({"a": "m", "t": "s"}, ["a", "t"])
    >>> dim_filter("(a/t)")
    True
    >>> dim_filter("(a+t)")
    False
"""
import warnings

from .constants import PLACEHOLDER, PI_SYMBOL
from .descriptors import Leaf, Number, Unary, Binary, Shifted, as_descriptor
from .exceptions import ConfigurationError

# Pint -----------------------------------------------------------------
try:
    import pint
    PINT_AVAILABLE = True
except ImportError:
    PINT_AVAILABLE = False


class DimensionFilter:
    """Infers descriptor units and rejects dimensionally invalid ones.

    The filter is inactive (every descriptor passes) when no units are given
    or pint is not installed.
    """

    def __init__(self, primary_units=None, feature_names=None, ureg=None):
        self.primary_units = dict(primary_units or {})
        self.ureg = None
        self._units = {}
        if not self.primary_units:
            return
        if not PINT_AVAILABLE:
            warnings.warn("Pint not available. Generating descriptors without unit checks.")
            return

        self.ureg = ureg if ureg is not None else pint.UnitRegistry()
        for name, unit in self.primary_units.items():
            try:
                self._units[name] = self.ureg.Unit(unit) if isinstance(unit, str) else unit
            except (pint.UndefinedUnitError, ValueError, TypeError) as e:
                raise ConfigurationError(f"Invalid unit '{unit}' for feature '{name}': {e}") from e

        for name in feature_names or []:
            if name not in self._units and name != PLACEHOLDER:
                warnings.warn(f"No unit defined for '{name}'. Treating as dimensionless.")

    @property
    def active(self):
        return self.ureg is not None

    def unit_of(self, descriptor):
        """Unit of *descriptor*, or None when it is dimensionally invalid."""
        if not self.active:
            return None
        try:
            return self._unit(as_descriptor(descriptor))
        except pint.DimensionalityError:
            return None

    def __call__(self, descriptor):
        return not self.active or self.unit_of(descriptor) is not None

    def _unit(self, node):
        dimensionless = self.ureg.dimensionless
        if isinstance(node, Leaf):
            if node.name in (PLACEHOLDER, PI_SYMBOL):
                return dimensionless
            return self._units.get(node.name, dimensionless)
        if isinstance(node, Number):
            return dimensionless
        if isinstance(node, Shifted):
            # the inside constant carries the unit of its base feature
            return self._unit(node.child)
        if isinstance(node, Unary):
            u = self._unit(node.child)
            if node.op in ('log', 'exp', 'sin', 'cos'):
                if not u.dimensionless:
                    raise pint.DimensionalityError(u, dimensionless)
                return dimensionless
            if node.op == 'sqrt':
                return u ** 0.5
            return u
        if isinstance(node, Binary):
            u1, u2 = self._unit(node.left), self._unit(node.right)
            if node.op in ('+', '-'):
                if u1.dimensionality != u2.dimensionality:
                    raise pint.DimensionalityError(u1, u2)
                return u1
            if node.op == '*':
                return u1 * u2
            if node.op == '/':
                return u1 / u2
            if isinstance(node.right, Number):
                return u1 ** node.right.value
            if not (u1.dimensionless and u2.dimensionless):
                raise pint.DimensionalityError(u1, u2)
            return dimensionless
        raise TypeError(f"Not a descriptor node: {node!r}")
