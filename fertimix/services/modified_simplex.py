"""
Modified (revised) simplex method for small linear programs.

Follows the textbook formulation of H. A. Taha, "Operations Research:
An Introduction" (7th ed.): the basis inverse is recomputed from scratch on
every iteration, the initial basis is found by brute-force enumeration of
column combinations.

The search space is deliberately bounded:
  - at most MAX_COMBINATIONS candidate bases are considered,
  - at most MAX_STEPS pivots are made.
Exceeding either bound is reported as an ordinary exception.
"""
from typing import List, Optional, Sequence, Tuple
from dataclasses import dataclass, field
from enum import Enum
import logging
import math
import sys

import numpy as np

from fertimix.services.mixture_rules import SolverConfig

logger = logging.getLogger(__name__)


# =============================================================================
# ERRORS
# =============================================================================

class SimplexError(Exception):
    """Base class for every way a solve can fail."""
    kind = "simplex_error"


class NotFeasibleError(SimplexError):
    """No entering variable can improve a non-optimal basis."""
    kind = "not_feasible"

    def __init__(self, message: str = "problem is not feasible"):
        super().__init__(message)


class BigTaskError(SimplexError):
    """The initial basis search space exceeds the combination ceiling."""
    kind = "big_task"

    def __init__(self, matrix: np.ndarray, combinations: int = 0):
        super().__init__(
            f"the problem is too big: {combinations} candidate bases "
            f"for a {matrix.shape[0]}x{matrix.shape[1]} matrix"
        )
        self.matrix = matrix
        self.combinations = combinations


class UnboundedError(SimplexError):
    """The objective decreases without limit."""
    kind = "unbounded"

    def __init__(self, message: str = "problem is not bounded"):
        super().__init__(message)


class TooManyStepsError(SimplexError):
    """The pivot ceiling has been reached."""
    kind = "too_many_steps"

    def __init__(self, steps: int = 0):
        super().__init__(f"maximum number of execution steps has been reached ({steps})")
        self.steps = steps


class NoBaseSolutionError(SimplexError):
    """No combination of columns gives a feasible starting basis."""
    kind = "no_base_solution"

    def __init__(self, message: str = "no base solution exists"):
        super().__init__(message)


# =============================================================================
# COMBINATIONS
# =============================================================================

class Combinator:
    """
    Iterates over all k-subsets of range(n) without repetition, in
    lexicographic order. Used to enumerate candidate initial bases.

    The first subset is (0, 1, ..., k-1). Each next one is produced by
    finding the rightmost position that can still grow without hitting its
    right neighbour, incrementing it and resetting everything to its right
    to consecutive values. Iteration stops after (n-k, ..., n-1).
    """

    def __init__(self, n: int, k: int):
        self.n = n
        self.k = k
        self._used = list(range(k))
        self._first_step = True

    def sequence_len(self) -> int:
        """Number of subsets the iterator produces, C(n, k)."""
        if self.k > self.n:
            return 0
        return math.comb(self.n, self.k)

    def __iter__(self):
        return self

    def __next__(self) -> Tuple[int, ...]:
        if self.k > self.n:
            raise StopIteration
        if self._first_step:
            self._first_step = False
            return tuple(self._used)
        used = self._used
        for i in range(self.k - 1, -1, -1):
            max_current = self.n - 1 if i + 1 == self.k else used[i + 1] - 1
            if used[i] < max_current:
                used[i] += 1
                for t in range(i + 1, self.k):
                    used[t] = used[t - 1] + 1
                return tuple(used)
        raise StopIteration


# =============================================================================
# CONSTRAINTS
# =============================================================================

class ConstraintOp(Enum):
    EQUAL = "="
    LESS = "<"
    LESS_OR_EQUAL = "<="
    GREATER = ">"
    GREATER_OR_EQUAL = ">="

    def mirrored(self) -> "ConstraintOp":
        """Operator obtained after multiplying both sides by -1."""
        return _MIRRORED_OPS[self]

    @property
    def is_inequality(self) -> bool:
        return self is not ConstraintOp.EQUAL

    @property
    def slack_sign(self) -> float:
        """Coefficient of the slack/surplus column, 0.0 for equalities."""
        if self in (ConstraintOp.LESS, ConstraintOp.LESS_OR_EQUAL):
            return 1.0
        if self in (ConstraintOp.GREATER, ConstraintOp.GREATER_OR_EQUAL):
            return -1.0
        return 0.0


_MIRRORED_OPS = {
    ConstraintOp.EQUAL: ConstraintOp.EQUAL,
    ConstraintOp.LESS: ConstraintOp.GREATER,
    ConstraintOp.GREATER: ConstraintOp.LESS,
    ConstraintOp.LESS_OR_EQUAL: ConstraintOp.GREATER_OR_EQUAL,
    ConstraintOp.GREATER_OR_EQUAL: ConstraintOp.LESS_OR_EQUAL,
}


@dataclass(frozen=True)
class Constraint:
    left: np.ndarray  # row of the "A" matrix
    op: ConstraintOp
    right: float  # the "b" value


def normalize_constraint(constraint: Constraint) -> Constraint:
    """
    Bring a constraint to the form with a non-negative right-hand side.

    Matrix assembly and the basis search both rely on b >= 0, so a negative
    right side is fixed by negating the whole row and mirroring the operator.
    """
    if constraint.right >= 0.0:
        return constraint
    return Constraint(
        left=-constraint.left,
        op=constraint.op.mirrored(),
        right=-constraint.right,
    )


# =============================================================================
# SOLUTIONS
# =============================================================================

@dataclass
class BasisSolution:
    basis_cols: List[int]
    non_basis_cols: List[int]


@dataclass(frozen=True)
class LPSolution:
    function_value: float
    params: Tuple[float, ...] = field(default_factory=tuple)


def find_basis_solution(
    matrix: np.ndarray,
    max_combinations: Optional[int] = None,
) -> BasisSolution:
    """
    Find the initial basis for the first iteration of the modified simplex.

    The basis matrix must be invertible (det(B) != 0) and the solution of
    BX = b must not contain negative components, since all x >= 0.

    Args:
        matrix: Augmented matrix as built by LPTask.get_source_matrix()
        max_combinations: Ceiling on the number of candidate bases

    Returns:
        The first feasible basis in lexicographic column order

    Raises:
        BigTaskError: The search space exceeds max_combinations
        NoBaseSolutionError: No candidate basis is feasible
    """
    if max_combinations is None:
        max_combinations = SolverConfig.get_max_combinations()

    # the basis size equals the number of constraint rows
    basis_size = matrix.shape[0] - 1
    num_cols = matrix.shape[1] - 1
    body = matrix[:-1, :]
    b = body[:, -1]

    combinator = Combinator(num_cols, basis_size)
    combinations = combinator.sequence_len()
    if combinations > max_combinations:
        logger.warning(
            f"[Basis] {combinations} candidate bases exceed the limit of {max_combinations}"
        )
        raise BigTaskError(matrix.copy(), combinations)

    for basis_cols in combinator:
        cols = list(basis_cols)
        inv_basis = _inverse(body[:, cols])
        if inv_basis is None:
            continue
        x_n = inv_basis @ b
        if x_n.size == 0 or x_n.min() >= 0.0:
            non_basis_cols = [i for i in range(num_cols) if i not in basis_cols]
            logger.debug(f"[Basis] Initial basis found: {cols}")
            return BasisSolution(basis_cols=cols, non_basis_cols=non_basis_cols)

    logger.info(f"[Basis] None of {combinations} candidate bases is feasible")
    raise NoBaseSolutionError()


# =============================================================================
# LP TASK
# =============================================================================

class LPTask:
    """Linear programming task: minimize func_vec . x subject to constraints, x >= 0."""

    def __init__(self, func_vec: Sequence[float]):
        self.func_vec = np.array(func_vec, dtype=float)
        self.constraints: List[Constraint] = []

    @property
    def num_vars(self) -> int:
        return len(self.func_vec)

    def add_constr(self, left: Sequence[float], op: ConstraintOp, right: float):
        """Add a constraint, normalizing it to a non-negative right-hand side."""
        left_vec = np.array(left, dtype=float)
        if left_vec.shape != self.func_vec.shape:
            raise ValueError(
                f"Constraint vector length {left_vec.shape[0]} does not match "
                f"objective vector length {self.num_vars}"
            )
        self.constraints.append(normalize_constraint(Constraint(left_vec, op, float(right))))

    def get_source_matrix(self) -> np.ndarray:
        """
        Return the augmented matrix A with slack/surplus columns added.

        Layout: one row per constraint plus the objective row at the bottom;
        decision variable columns, then one slack column per inequality, then
        the right-hand side column.
        """
        num_slacks = sum(1 for c in self.constraints if c.op.is_inequality)
        num_rows = len(self.constraints) + 1
        num_cols = self.num_vars + num_slacks + 1
        source = np.zeros((num_rows, num_cols), dtype=float)

        slack_idx = 0
        for i, constraint in enumerate(self.constraints):
            source[i, :self.num_vars] = constraint.left
            if constraint.op.is_inequality:
                source[i, self.num_vars + slack_idx] = constraint.op.slack_sign
                slack_idx += 1
            source[i, -1] = constraint.right

        source[-1, :self.num_vars] = self.func_vec
        return source

    def solve_min(
        self,
        max_steps: Optional[int] = None,
        max_combinations: Optional[int] = None,
    ) -> LPSolution:
        """
        Minimize the objective.

        Raises:
            SimplexError: One of its subclasses, depending on why no optimum
                could be reached
        """
        if max_steps is None:
            max_steps = SolverConfig.get_max_steps()

        source = self.get_source_matrix()
        basis = find_basis_solution(source, max_combinations)
        if not basis.non_basis_cols:
            # the system has no non-basic variables to pivot on
            raise NotFeasibleError()

        body = source[:-1, :]
        cost_row = source[-1, :]
        b = body[:, -1]

        steps = 0
        while True:
            if steps > max_steps:
                logger.warning(f"[Simplex] Step limit {max_steps} reached")
                raise TooManyStepsError(steps)

            c_b = cost_row[basis.basis_cols]
            inv_b = _inverse(body[:, basis.basis_cols])
            if inv_b is None:
                logger.warning(f"[Simplex] Singular basis {basis.basis_cols} at step {steps}")
                raise NotFeasibleError()
            x_b = inv_b @ b
            no_b = body[:, basis.non_basis_cols]
            no_c = cost_row[basis.non_basis_cols]
            z_minus_c = c_b @ inv_b @ no_b - no_c

            # every z - c <= 0 in a minimization problem means the optimum
            if np.all(z_minus_c <= 0.0):
                func_val = float(c_b @ x_b)
                params = []
                for i in range(self.num_vars):
                    if i in basis.basis_cols:
                        params.append(float(x_b[basis.basis_cols.index(i)]))
                    else:
                        params.append(0.0)
                logger.debug(f"[Simplex] Optimum {func_val} after {steps} steps")
                return LPSolution(function_value=func_val, params=tuple(params))

            intr_vec_ind = _entering_index(z_minus_c)
            if intr_vec_ind is None:
                raise NotFeasibleError()

            # leaving variable
            direction = inv_b @ body[:, basis.non_basis_cols[intr_vec_ind]]
            excl_vec_ind = _leaving_index(x_b, direction)

            entering = basis.non_basis_cols.pop(intr_vec_ind)
            basis.basis_cols.append(entering)
            leaving = basis.basis_cols.pop(excl_vec_ind)
            basis.non_basis_cols.append(leaving)
            steps += 1
            logger.debug(f"[Simplex] Step {steps}: column {entering} in, column {leaving} out")


def _entering_index(z_minus_c: np.ndarray) -> Optional[int]:
    """Position of the largest strictly positive reduced cost, last one on ties."""
    best = None
    for i, value in enumerate(z_minus_c):
        # NaN > 0.0 is False, so NaN never enters
        if value > 0.0 and (best is None or value >= z_minus_c[best]):
            best = i
    return best


def _leaving_index(x_b: np.ndarray, direction: np.ndarray) -> int:
    """
    Ratio test: position of the smallest x_b[i] / direction[i] over the rows
    with a finite positive direction, first one on ties.

    Zero ratios of degenerate rows are eligible and win over positive ones.

    Raises:
        UnboundedError: No row is eligible or the winning ratio is NaN
    """
    best = None
    best_ratio = 0.0
    for i, coef in enumerate(direction):
        if not (math.isfinite(coef) and coef > 0.0):
            continue
        ratio = x_b[i] / coef
        if best is None or ratio < best_ratio:
            best = i
            best_ratio = ratio
    if best is None or math.isnan(best_ratio):
        raise UnboundedError()
    return best


def _inverse(basis: np.ndarray) -> Optional[np.ndarray]:
    """Inverse of a basis matrix, None when it is singular."""
    if abs(np.linalg.det(basis)) <= sys.float_info.min:
        return None
    try:
        return np.linalg.inv(basis)
    except np.linalg.LinAlgError:
        return None


def solve(task: LPTask) -> LPSolution:
    """Solve an LP task for its minimum with the configured limits."""
    return task.solve_min()
