"""
rtimpc Model Builder
====================

Algebraic interface for writing dynamics, constraints and objectives.

Expressions form an explicit tree of four node kinds: variable references,
constants, unary operations and binary operations. Evaluation and
differentiation are separate passes over that tree:

* ``Expression.diff(var)`` returns a new (simplified) expression tree,
* ``Expression.compile(layout)`` turns a tree into a plain Python closure
  ``fn(x, u, p, t)`` over numpy arrays,
* ``VectorFunction`` stacks several expressions and evaluates their values and
  Jacobians with respect to states, controls, parameters and time.

Example:
    >>> s, v = DifferentialState("s"), DifferentialState("v")
    >>> u = Control("u")
    >>> f = DifferentialEquation(0.0, 10.0)
    >>> f.add(dot(s) == v)
    >>> f.add(dot(v) == u - 0.2 * v**2)
    >>> bound = between(-1.0, u, 1.0)
"""

from __future__ import annotations

import itertools
import operator
from enum import Enum
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .exceptions import ConstructionError

Number = Union[int, float]
ExprLike = Union["Expression", Number]

_serial = itertools.count()


class VariableKind(Enum):
    """Kinds of leaf variables."""
    DIFFERENTIAL_STATE = "differential_state"
    CONTROL = "control"
    PARAMETER = "parameter"
    TIME = "time"

    def __str__(self) -> str:
        return self.value


class Expression:
    """
    Base class of all expression tree nodes.

    Arithmetic operators build new nodes; comparison operators build
    ``Constraint`` objects.
    """

    # Make numpy scalars defer to our reflected operators
    __array_ufunc__ = None

    # Comparison operators return constraints, so identity hashing is used
    __hash__ = object.__hash__

    def __init__(self) -> None:
        self._diff_cache: Dict[int, Expression] = {}
        self._variables: Optional[Dict[int, Variable]] = None

    # Arithmetic
    def __add__(self, other: ExprLike) -> "Expression":
        return _add(self, as_expression(other))

    def __radd__(self, other: ExprLike) -> "Expression":
        return _add(as_expression(other), self)

    def __sub__(self, other: ExprLike) -> "Expression":
        return _sub(self, as_expression(other))

    def __rsub__(self, other: ExprLike) -> "Expression":
        return _sub(as_expression(other), self)

    def __mul__(self, other: ExprLike) -> "Expression":
        return _mul(self, as_expression(other))

    def __rmul__(self, other: ExprLike) -> "Expression":
        return _mul(as_expression(other), self)

    def __truediv__(self, other: ExprLike) -> "Expression":
        return _div(self, as_expression(other))

    def __rtruediv__(self, other: ExprLike) -> "Expression":
        return _div(as_expression(other), self)

    def __pow__(self, other: ExprLike) -> "Expression":
        return _pow(self, as_expression(other))

    def __rpow__(self, other: ExprLike) -> "Expression":
        return _pow(as_expression(other), self)

    def __neg__(self) -> "Expression":
        return _neg(self)

    def __pos__(self) -> "Expression":
        return self

    # Comparison operators for constraints
    def __le__(self, other: ExprLike) -> "Constraint":
        if isinstance(other, Expression) and not isinstance(other, Constant):
            return Constraint(self - other, -np.inf, 0.0)
        return Constraint(self, -np.inf, _as_float(other))

    def __ge__(self, other: ExprLike) -> "Constraint":
        if isinstance(other, Expression) and not isinstance(other, Constant):
            return Constraint(self - other, 0.0, np.inf)
        return Constraint(self, _as_float(other), np.inf)

    def __eq__(self, other: ExprLike) -> "Constraint":  # type: ignore[override]
        if isinstance(other, Expression) and not isinstance(other, Constant):
            return Constraint(self - other, 0.0, 0.0)
        value = _as_float(other)
        return Constraint(self, value, value)

    # Tree interface
    def children(self) -> Tuple["Expression", ...]:
        return ()

    def variables(self) -> Dict[int, "Variable"]:
        """Free variables of the expression, keyed by serial number."""
        if self._variables is None:
            found: Dict[int, Variable] = {}
            for child in self.children():
                found.update(child.variables())
            self._variables = found
        return self._variables

    def depends_on(self, var: "Variable") -> bool:
        return var.serial in self.variables()

    def diff(self, var: "Variable") -> "Expression":
        """Symbolic partial derivative with respect to ``var``."""
        cached = self._diff_cache.get(var.serial)
        if cached is None:
            if not self.depends_on(var):
                cached = ZERO
            else:
                cached = self._diff(var)
            self._diff_cache[var.serial] = cached
        return cached

    def _diff(self, var: "Variable") -> "Expression":
        raise NotImplementedError

    def compile(self, layout: "VariableLayout") -> Callable:
        """Return a closure ``fn(x, u, p, t) -> float``."""
        raise NotImplementedError

    def evaluate(self, values: Optional[Mapping["Variable", Number]] = None) -> float:
        """
        Evaluate at explicit variable values.

        Args:
            values: Mapping from variables to numbers

        Returns:
            Expression value
        """
        values = values or {}
        env = {var.serial: np.float64(value) for var, value in values.items()}
        missing = [v.name for s, v in self.variables().items() if s not in env]
        if missing:
            raise KeyError(f"No value given for {', '.join(sorted(missing))}")
        return float(self._evaluate(env))

    def _evaluate(self, env: Dict[int, np.float64]) -> np.float64:
        raise NotImplementedError

    @property
    def is_constant(self) -> bool:
        return isinstance(self, Constant)


class Constant(Expression):
    """Constant leaf."""

    def __init__(self, value: Number) -> None:
        super().__init__()
        self.value = np.float64(value)
        self._variables = {}

    def __repr__(self) -> str:
        return f"{float(self.value):g}"

    def _diff(self, var: "Variable") -> Expression:
        return ZERO

    def compile(self, layout: "VariableLayout") -> Callable:
        value = self.value
        return lambda x, u, p, t: value

    def _evaluate(self, env):
        return self.value


ZERO = Constant(0.0)
ONE = Constant(1.0)


class Variable(Expression):
    """
    Named scalar leaf variable.

    Attributes:
        name: Variable name
        kind: VariableKind of the variable
        serial: Creation order, used for deterministic indexing
    """

    kind: VariableKind = VariableKind.PARAMETER

    def __init__(self, name: Optional[str] = None) -> None:
        super().__init__()
        self.serial = next(_serial)
        self.name = name or f"{self.kind.value}_{self.serial}"
        self._variables = {self.serial: self}

    def __repr__(self) -> str:
        return self.name

    def _diff(self, var: "Variable") -> Expression:
        return ONE

    def compile(self, layout: "VariableLayout") -> Callable:
        slot, index = layout.locate(self)
        if slot == 0:
            return lambda x, u, p, t: x[index]
        if slot == 1:
            return lambda x, u, p, t: u[index]
        if slot == 2:
            return lambda x, u, p, t: p[index]
        return lambda x, u, p, t: t

    def _evaluate(self, env):
        return env[self.serial]


class DifferentialState(Variable):
    """State x_i governed by a differential equation."""
    kind = VariableKind.DIFFERENTIAL_STATE


class Control(Variable):
    """Piecewise-constant control input, a free decision variable."""
    kind = VariableKind.CONTROL


class Parameter(Variable):
    """Time-invariant free variable (for example a free horizon length T)."""
    kind = VariableKind.PARAMETER


class TimeVariable(Variable):
    """The independent time variable."""
    kind = VariableKind.TIME

    def __init__(self, name: str = "t") -> None:
        super().__init__(name)


class IntermediateState(Expression):
    """
    Named intermediate expression of (x, u, p, t).

    Carries no state of its own; it is recomputed wherever referenced.
    """

    def __init__(self, expression: ExprLike, name: Optional[str] = None) -> None:
        super().__init__()
        self.expression = as_expression(expression)
        self.name = name or "intermediate"

    def __repr__(self) -> str:
        return self.name

    def children(self) -> Tuple[Expression, ...]:
        return (self.expression,)

    def _diff(self, var: "Variable") -> Expression:
        return self.expression.diff(var)

    def compile(self, layout: "VariableLayout") -> Callable:
        return self.expression.compile(layout)

    def _evaluate(self, env):
        return self.expression._evaluate(env)


# name -> (numpy function, derivative of f(a) with respect to a)
_UNARY: Dict[str, Tuple[Callable, Callable[[Expression], Expression]]] = {
    "sin": (np.sin, lambda a: cos(a)),
    "cos": (np.cos, lambda a: -sin(a)),
    "tan": (np.tan, lambda a: 1.0 / cos(a) ** 2),
    "exp": (np.exp, lambda a: exp(a)),
    "log": (np.log, lambda a: 1.0 / a),
    "sqrt": (np.sqrt, lambda a: 0.5 / sqrt(a)),
    "tanh": (np.tanh, lambda a: 1.0 - tanh(a) ** 2),
    "atan": (np.arctan, lambda a: 1.0 / (1.0 + a ** 2)),
}


class UnaryOp(Expression):
    """Elementary function applied to one operand."""

    def __init__(self, op: str, operand: Expression) -> None:
        super().__init__()
        if op not in _UNARY and op != "neg":
            raise ValueError(f"Unknown unary operation '{op}'")
        self.op = op
        self.operand = operand

    def __repr__(self) -> str:
        if self.op == "neg":
            return f"-({self.operand!r})"
        return f"{self.op}({self.operand!r})"

    def children(self) -> Tuple[Expression, ...]:
        return (self.operand,)

    def _diff(self, var: "Variable") -> Expression:
        inner = self.operand.diff(var)
        if self.op == "neg":
            return _neg(inner)
        return _mul(_UNARY[self.op][1](self.operand), inner)

    def compile(self, layout: "VariableLayout") -> Callable:
        f = self.operand.compile(layout)
        if self.op == "neg":
            return lambda x, u, p, t: -f(x, u, p, t)
        fn = _UNARY[self.op][0]
        return lambda x, u, p, t: fn(f(x, u, p, t))

    def _evaluate(self, env):
        value = self.operand._evaluate(env)
        if self.op == "neg":
            return -value
        return _UNARY[self.op][0](value)


_BINARY: Dict[str, Callable] = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": operator.truediv,
    "**": operator.pow,
}


class BinaryOp(Expression):
    """Arithmetic operation on two operands."""

    def __init__(self, op: str, lhs: Expression, rhs: Expression) -> None:
        super().__init__()
        if op not in _BINARY:
            raise ValueError(f"Unknown binary operation '{op}'")
        self.op = op
        self.lhs = lhs
        self.rhs = rhs

    def __repr__(self) -> str:
        return f"({self.lhs!r} {self.op} {self.rhs!r})"

    def children(self) -> Tuple[Expression, ...]:
        return (self.lhs, self.rhs)

    def _diff(self, var: "Variable") -> Expression:
        a, b = self.lhs, self.rhs
        da, db = a.diff(var), b.diff(var)
        if self.op == "+":
            return _add(da, db)
        if self.op == "-":
            return _sub(da, db)
        if self.op == "*":
            return _add(_mul(da, b), _mul(a, db))
        if self.op == "/":
            return _sub(_div(da, b), _div(_mul(a, db), _pow(b, Constant(2.0))))
        # a ** b
        if isinstance(b, Constant):
            return _mul(_mul(b, _pow(a, Constant(b.value - 1.0))), da)
        return _mul(self, _add(_mul(db, log(a)), _div(_mul(b, da), a)))

    def compile(self, layout: "VariableLayout") -> Callable:
        f = self.lhs.compile(layout)
        g = self.rhs.compile(layout)
        fn = _BINARY[self.op]
        return lambda x, u, p, t: fn(f(x, u, p, t), g(x, u, p, t))

    def _evaluate(self, env):
        return _BINARY[self.op](self.lhs._evaluate(env), self.rhs._evaluate(env))


def _as_float(value: ExprLike) -> float:
    if isinstance(value, Constant):
        return float(value.value)
    if isinstance(value, Expression):
        raise TypeError(f"Expected a number, got expression {value!r}")
    return float(value)


def as_expression(value: ExprLike) -> Expression:
    """Wrap numbers as constants; pass expressions through."""
    if isinstance(value, Expression):
        return value
    if isinstance(value, (int, float, np.integer, np.floating)):
        return Constant(value)
    raise TypeError(f"Cannot use {type(value).__name__} in an expression")


def _fold(op: str, a: Constant, b: Constant) -> Constant:
    with np.errstate(all="ignore"):
        return Constant(_BINARY[op](a.value, b.value))


def _is(value: Expression, number: float) -> bool:
    return isinstance(value, Constant) and value.value == number


def _add(a: Expression, b: Expression) -> Expression:
    if isinstance(a, Constant) and isinstance(b, Constant):
        return _fold("+", a, b)
    if _is(a, 0.0):
        return b
    if _is(b, 0.0):
        return a
    return BinaryOp("+", a, b)


def _sub(a: Expression, b: Expression) -> Expression:
    if isinstance(a, Constant) and isinstance(b, Constant):
        return _fold("-", a, b)
    if _is(b, 0.0):
        return a
    if _is(a, 0.0):
        return _neg(b)
    return BinaryOp("-", a, b)


def _mul(a: Expression, b: Expression) -> Expression:
    if isinstance(a, Constant) and isinstance(b, Constant):
        return _fold("*", a, b)
    if _is(a, 0.0) or _is(b, 0.0):
        return ZERO
    if _is(a, 1.0):
        return b
    if _is(b, 1.0):
        return a
    return BinaryOp("*", a, b)


def _div(a: Expression, b: Expression) -> Expression:
    if isinstance(a, Constant) and isinstance(b, Constant):
        return _fold("/", a, b)
    if _is(a, 0.0):
        return ZERO
    if _is(b, 1.0):
        return a
    return BinaryOp("/", a, b)


def _pow(a: Expression, b: Expression) -> Expression:
    if isinstance(a, Constant) and isinstance(b, Constant):
        return _fold("**", a, b)
    if _is(b, 0.0):
        return ONE
    if _is(b, 1.0):
        return a
    return BinaryOp("**", a, b)


def _neg(a: Expression) -> Expression:
    if isinstance(a, Constant):
        return Constant(-a.value)
    if isinstance(a, UnaryOp) and a.op == "neg":
        return a.operand
    return UnaryOp("neg", a)


def _unary(op: str, value: ExprLike) -> Expression:
    value = as_expression(value)
    if isinstance(value, Constant):
        with np.errstate(all="ignore"):
            return Constant(_UNARY[op][0](value.value))
    return UnaryOp(op, value)


def sin(value: ExprLike) -> Expression:
    return _unary("sin", value)


def cos(value: ExprLike) -> Expression:
    return _unary("cos", value)


def tan(value: ExprLike) -> Expression:
    return _unary("tan", value)


def exp(value: ExprLike) -> Expression:
    return _unary("exp", value)


def log(value: ExprLike) -> Expression:
    return _unary("log", value)


def sqrt(value: ExprLike) -> Expression:
    return _unary("sqrt", value)


def tanh(value: ExprLike) -> Expression:
    return _unary("tanh", value)


def atan(value: ExprLike) -> Expression:
    return _unary("atan", value)


class Constraint:
    """
    Constraint ``lower <= expression <= upper``.

    Built by comparison operators or ``between``. Equalities have
    ``lower == upper``. A constraint with lower > upper cannot be constructed.

    Attributes:
        expression: Constrained expression
        lower: Lower bound (may be -inf)
        upper: Upper bound (may be +inf)
        name: Optional constraint name
    """

    def __init__(
        self,
        expression: Expression,
        lower: float,
        upper: float,
        name: Optional[str] = None,
    ) -> None:
        lower, upper = float(lower), float(upper)
        if np.isnan(lower) or np.isnan(upper):
            raise ConstructionError(f"NaN bound on {expression!r}")
        if lower > upper:
            raise ConstructionError(
                f"infeasible bound {lower} <= {expression!r} <= {upper}"
            )
        self.expression = expression
        self.lower = lower
        self.upper = upper
        self.name = name

    def __repr__(self) -> str:
        name_str = f"{self.name}: " if self.name else ""
        if self.is_equality:
            return f"{name_str}{self.expression!r} == {self.lower:g}"
        return f"{name_str}{self.lower:g} <= {self.expression!r} <= {self.upper:g}"

    def __bool__(self) -> bool:
        raise TypeError(
            "Constraints have no truth value; chained comparisons like "
            "'a <= x <= b' are not supported, use between(a, x, b)"
        )

    @property
    def is_equality(self) -> bool:
        return self.lower == self.upper

    @property
    def bound_variable(self) -> Optional[Variable]:
        """The variable if the constraint is a plain bound on one variable."""
        if isinstance(self.expression, Variable) and not isinstance(self.expression, TimeVariable):
            return self.expression
        return None


def between(lower: Number, expression: ExprLike, upper: Number) -> Constraint:
    """Box constraint ``lower <= expression <= upper``."""
    return Constraint(as_expression(expression), lower, upper)


class Derivative:
    """Left-hand side ``dot(x)`` of a differential equation."""

    def __init__(self, state: DifferentialState) -> None:
        if not isinstance(state, DifferentialState):
            raise ConstructionError(f"dot() expects a DifferentialState, got {state!r}")
        self.state = state

    def __repr__(self) -> str:
        return f"dot({self.state!r})"

    def __eq__(self, rhs: ExprLike) -> "StateEquation":  # type: ignore[override]
        return StateEquation(self.state, as_expression(rhs))

    __hash__ = object.__hash__


def dot(state: DifferentialState) -> Derivative:
    """Time derivative of a differential state."""
    return Derivative(state)


class StateEquation:
    """One line ``dot(state) == rhs`` of a differential equation."""

    def __init__(self, state: DifferentialState, rhs: Expression) -> None:
        self.state = state
        self.rhs = rhs

    def __repr__(self) -> str:
        return f"dot({self.state!r}) == {self.rhs!r}"


class DifferentialEquation:
    """
    Differential equation x' = f(x, u, p, t) on [t0, tf].

    Every state may be defined exactly once. ``tf`` may be a Parameter for
    free final time problems. When t0/tf are omitted the horizon of the
    OCP the equation is attached to is used.

    Example:
        >>> T = Parameter("T")
        >>> f = DifferentialEquation(0.0, T)
        >>> f.add(dot(s) == v)
    """

    def __init__(
        self,
        t0: Optional[Number] = None,
        tf: Optional[Union[Number, Parameter]] = None,
    ) -> None:
        self.t0 = None if t0 is None else float(t0)
        if tf is None or isinstance(tf, Parameter):
            self.tf: Optional[Union[float, Parameter]] = tf
        elif isinstance(tf, Expression):
            raise ConstructionError("tf must be a number or a Parameter")
        else:
            self.tf = float(tf)
            if self.t0 is not None and not self.tf > self.t0:
                raise ConstructionError(f"tf ({self.tf}) must be greater than t0 ({self.t0})")
        self._equations: Dict[int, StateEquation] = {}

    def add(self, equation: StateEquation) -> "DifferentialEquation":
        """Add ``dot(state) == rhs``; returns self for chaining."""
        if not isinstance(equation, StateEquation):
            raise ConstructionError(f"expected dot(state) == expression, got {equation!r}")
        if equation.state.serial in self._equations:
            raise ConstructionError(
                f"state '{equation.state.name}' already has a differential equation"
            )
        self._equations[equation.state.serial] = equation
        return self

    def __lshift__(self, equation: StateEquation) -> "DifferentialEquation":
        return self.add(equation)

    @property
    def states(self) -> List[DifferentialState]:
        """States in definition order."""
        return [eq.state for eq in self._equations.values()]

    @property
    def right_hand_sides(self) -> List[Expression]:
        return [eq.rhs for eq in self._equations.values()]

    @property
    def n_states(self) -> int:
        return len(self._equations)

    def __len__(self) -> int:
        return len(self._equations)

    def __repr__(self) -> str:
        return f"DifferentialEquation(states={[s.name for s in self.states]})"


class VariableLayout:
    """
    Ordering of states, controls and parameters into the x, u, p vectors.
    """

    def __init__(
        self,
        states: Sequence[Variable],
        controls: Sequence[Variable],
        parameters: Sequence[Variable],
    ) -> None:
        self.states = list(states)
        self.controls = list(controls)
        self.parameters = list(parameters)
        self._slots: Dict[int, Tuple[int, int]] = {}
        for slot, group in enumerate((self.states, self.controls, self.parameters)):
            for index, var in enumerate(group):
                self._slots[var.serial] = (slot, index)

    @property
    def n_states(self) -> int:
        return len(self.states)

    @property
    def n_controls(self) -> int:
        return len(self.controls)

    @property
    def n_parameters(self) -> int:
        return len(self.parameters)

    def locate(self, var: Variable) -> Tuple[int, int]:
        """Return (slot, index); slot 0/1/2/3 = state/control/parameter/time."""
        if isinstance(var, TimeVariable):
            return 3, 0
        try:
            return self._slots[var.serial]
        except KeyError:
            raise ConstructionError(f"variable '{var.name}' is not part of the problem") from None

    def __contains__(self, var: Variable) -> bool:
        return isinstance(var, TimeVariable) or var.serial in self._slots


class VectorFunction:
    """
    Stacked expressions with compiled values and sparse Jacobians.

    Args:
        expressions: Component expressions (m,)
        layout: Variable ordering

    Example:
        >>> fn = VectorFunction([v, u - v], layout)
        >>> values, Jx, Ju, Jp, Jt = fn.jacobians(x, u, p, t)
    """

    def __init__(self, expressions: Sequence[ExprLike], layout: VariableLayout) -> None:
        self.expressions = [as_expression(e) for e in expressions]
        self.layout = layout
        self._values = [e.compile(layout) for e in self.expressions]

        # (row, slot, column, compiled derivative) for every structural nonzero
        self._entries: List[Tuple[int, int, int, Callable]] = []
        for row, expr in enumerate(self.expressions):
            for var in sorted(expr.variables().values(), key=lambda v: v.serial):
                slot, col = layout.locate(var)
                derivative = expr.diff(var)
                if _is(derivative, 0.0):
                    continue
                self._entries.append((row, slot, col, derivative.compile(layout)))

    @property
    def size(self) -> int:
        return len(self.expressions)

    def __call__(self, x: np.ndarray, u: np.ndarray, p: np.ndarray, t: float) -> np.ndarray:
        t = np.float64(t)
        return np.array([f(x, u, p, t) for f in self._values], dtype=np.float64)

    def jacobians(
        self,
        x: np.ndarray,
        u: np.ndarray,
        p: np.ndarray,
        t: float,
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """
        Evaluate values and first-order Jacobians.

        Returns:
            (values (m,), d/dx (m, n_x), d/du (m, n_u), d/dp (m, n_p), d/dt (m,))
        """
        t = np.float64(t)
        m = self.size
        values = np.array([f(x, u, p, t) for f in self._values], dtype=np.float64)
        blocks = [
            np.zeros((m, self.layout.n_states)),
            np.zeros((m, self.layout.n_controls)),
            np.zeros((m, self.layout.n_parameters)),
            np.zeros((m, 1)),
        ]
        for row, slot, col, fn in self._entries:
            blocks[slot][row, col] += fn(x, u, p, t)
        return values, blocks[0], blocks[1], blocks[2], blocks[3][:, 0]
