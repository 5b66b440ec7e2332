"""
Tests for the modified simplex engine.

Covers:
1. Combinations enumeration order and count
2. Constraint normalization to a non-negative right side
3. Augmented matrix layout
4. Known LP instances
5. Failure modes: big task, no base solution, unbounded, step ceiling
"""
import numpy as np
import pytest

from fertimix.services import modified_simplex
from fertimix.services.mixture_rules import SolverConfig
from fertimix.services.modified_simplex import (
    BigTaskError,
    Combinator,
    Constraint,
    ConstraintOp,
    LPSolution,
    LPTask,
    NoBaseSolutionError,
    NotFeasibleError,
    SimplexError,
    TooManyStepsError,
    UnboundedError,
    find_basis_solution,
    normalize_constraint,
    solve,
)

TOLERANCE = 1e-12


@pytest.fixture(autouse=True)
def default_limits():
    """Run every test with the limits from the bundled config file."""
    SolverConfig.reload()
    yield
    SolverConfig.reload()


def task_two_vars() -> LPTask:
    """MIN x1 + x2 must be 0.9 at (0.2, 0.7)."""
    task = LPTask([1., 1.])
    task.add_constr([3., 2.], ConstraintOp.GREATER_OR_EQUAL, 2.)
    task.add_constr([1., 4.], ConstraintOp.GREATER_OR_EQUAL, 3.)
    return task


def task_seven_vars() -> LPTask:
    task = LPTask([1., 1., 1., 1., 1., 1., 1.])
    task.add_constr([0., 0.08, 0.16, 0., 0., 0., 0.], ConstraintOp.GREATER_OR_EQUAL, 0.2)
    task.add_constr([0., 0.08, 0.16, 0., 0., 0., 0.], ConstraintOp.LESS_OR_EQUAL, 0.5)
    task.add_constr([0.6, 0.35, 0., 0.16, 0., 0., 0.], ConstraintOp.GREATER_OR_EQUAL, 1.7)
    task.add_constr([0.6, 0.35, 0., 0.16, 0., 0., 0.], ConstraintOp.LESS_OR_EQUAL, 1.9)
    task.add_constr([0., 0., 0., 0.16, 0.34, 0.12, 0.], ConstraintOp.GREATER_OR_EQUAL, 1.7)
    task.add_constr([0., 0., 0., 0.16, 0.34, 0.12, 0.], ConstraintOp.LESS_OR_EQUAL, 1.9)
    task.add_constr([0., 0., 0., 0.16, 0., 0.52, 0.19], ConstraintOp.EQUAL, 1.0)
    return task


class TestCombinator:
    """Tests for the combinations iterator."""

    def test_five_choose_three_order(self):
        c = Combinator(5, 3)
        assert c.sequence_len() == 10

        result = list(c)

        assert len(result) == c.sequence_len()
        assert result == [
            (0, 1, 2), (0, 1, 3), (0, 1, 4), (0, 2, 3), (0, 2, 4),
            (0, 3, 4), (1, 2, 3), (1, 2, 4), (1, 3, 4), (2, 3, 4),
        ]

    def test_exhausted_iterator_stays_exhausted(self):
        c = Combinator(3, 3)
        assert list(c) == [(0, 1, 2)]
        assert list(c) == []

    def test_k_greater_than_n_yields_nothing(self):
        c = Combinator(2, 3)
        assert c.sequence_len() == 0
        assert list(c) == []

    def test_sequence_len_large(self):
        assert Combinator(40, 10).sequence_len() == 847660528


class TestNormalization:
    """Constraints with a negative right side are mirrored."""

    @pytest.mark.parametrize("op,expected", [
        (ConstraintOp.EQUAL, ConstraintOp.EQUAL),
        (ConstraintOp.LESS, ConstraintOp.GREATER),
        (ConstraintOp.GREATER, ConstraintOp.LESS),
        (ConstraintOp.LESS_OR_EQUAL, ConstraintOp.GREATER_OR_EQUAL),
        (ConstraintOp.GREATER_OR_EQUAL, ConstraintOp.LESS_OR_EQUAL),
    ])
    def test_negative_right_side_mirrors_operator(self, op, expected):
        normalized = normalize_constraint(Constraint(np.array([1., -2.]), op, -3.))

        assert normalized.right == 3.
        assert normalized.op is expected
        assert list(normalized.left) == [-1., 2.]

    def test_non_negative_right_side_is_kept(self):
        constraint = Constraint(np.array([1., 2.]), ConstraintOp.LESS, 0.)
        assert normalize_constraint(constraint) is constraint

    def test_add_constr_normalizes(self):
        task = LPTask([1., 1.])
        task.add_constr([2., 3.], ConstraintOp.LESS_OR_EQUAL, -4.)

        constraint = task.constraints[0]
        assert constraint.right == 4.
        assert constraint.op is ConstraintOp.GREATER_OR_EQUAL

    def test_length_mismatch_is_rejected(self):
        task = LPTask([1., 1.])
        with pytest.raises(ValueError):
            task.add_constr([1., 2., 3.], ConstraintOp.EQUAL, 1.)


class TestSourceMatrix:
    """Augmented matrix: constraints, slack columns, RHS, objective row."""

    def test_inequalities_get_slack_columns(self):
        matrix = task_two_vars().get_source_matrix()

        assert matrix.shape == (3, 5)
        assert matrix.tolist() == [
            [3., 2., -1., 0., 2.],
            [1., 4., 0., -1., 3.],
            [1., 1., 0., 0., 0.],
        ]

    def test_equality_has_no_slack_and_less_gets_plus_one(self):
        task = LPTask([1., 2.])
        task.add_constr([1., 1.], ConstraintOp.EQUAL, 1.)
        task.add_constr([1., 0.], ConstraintOp.LESS, 5.)

        matrix = task.get_source_matrix()

        assert matrix.tolist() == [
            [1., 1., 0., 1.],
            [1., 0., 1., 5.],
            [1., 2., 0., 0.],
        ]


class TestKnownProblems:
    """Instances with known optima."""

    def test_two_greater_constraints(self):
        solution = task_two_vars().solve_min()

        assert solution.function_value == pytest.approx(0.9, abs=TOLERANCE)
        assert solution.params == pytest.approx((0.2, 0.7), abs=TOLERANCE)

    def test_mixed_constraints_with_negative_costs(self):
        task = LPTask([1., -2.])
        task.add_constr([1., 1.], ConstraintOp.GREATER_OR_EQUAL, 1.)
        task.add_constr([2., -3.], ConstraintOp.GREATER_OR_EQUAL, 1.)
        task.add_constr([4., -5.], ConstraintOp.EQUAL, 6.)

        solution = solve(task)

        assert solution.function_value == pytest.approx(-1.5, abs=TOLERANCE)
        assert solution.params == pytest.approx((6.5, 4.0), abs=TOLERANCE)

    def test_four_vars_mixture_like(self):
        task = LPTask([1., 1., 1., 1.])
        task.add_constr([0., 0., 0., 0.08], ConstraintOp.GREATER_OR_EQUAL, 0.4)
        task.add_constr([0., 0., 0., 0.08], ConstraintOp.LESS_OR_EQUAL, 0.5)
        task.add_constr([0.19, 0., 0.16, 0.], ConstraintOp.EQUAL, 1.0)
        task.add_constr([0., 0.34, 0.16, 0.], ConstraintOp.GREATER_OR_EQUAL, 1.7)
        task.add_constr([0., 0.34, 0.16, 0.], ConstraintOp.LESS_OR_EQUAL, 1.9)
        task.add_constr([0., 0., 0.16, 0.35], ConstraintOp.GREATER_OR_EQUAL, 1.7)
        task.add_constr([0., 0., 0.16, 0.35], ConstraintOp.LESS_OR_EQUAL, 1.9)

        solution = task.solve_min()

        assert solution.function_value == pytest.approx(14.970007739938081, abs=TOLERANCE)
        assert solution.params == pytest.approx(
            (4.473684210526317, 4.5588235294117645, 0.9375000000000003, 5.0), abs=TOLERANCE
        )

    def test_seven_vars(self):
        solution = task_seven_vars().solve_min()

        assert solution.function_value == pytest.approx(10.119343891402714, abs=TOLERANCE)
        assert solution.params == pytest.approx(
            (1.375, 2.5, 0.0, 0.0, 4.321266968325792, 1.9230769230769231, 0.0), abs=TOLERANCE
        )

    def test_repeated_solves_are_identical(self):
        task = task_seven_vars()
        first = task.solve_min()
        second = task.solve_min()

        assert first == second
        assert isinstance(first, LPSolution)

    def test_pivot_from_initial_basis(self):
        """Initial basis (x1) is not optimal, one pivot moves to x2."""
        task = LPTask([1., 0.])
        task.add_constr([1., 1.], ConstraintOp.EQUAL, 1.)

        solution = task.solve_min()

        assert solution.function_value == 0.0
        assert solution.params == (0.0, 1.0)


class TestFailures:
    """Every failure surfaces as a typed SimplexError."""

    def test_big_task_raised_without_enumeration(self, monkeypatch):
        calls = {"next": 0}
        original_next = Combinator.__next__

        def counting_next(self):
            calls["next"] += 1
            return original_next(self)

        monkeypatch.setattr(modified_simplex.Combinator, "__next__", counting_next)

        task = LPTask([1.] * 30)
        for i in range(10):
            row = [0.] * 30
            row[i] = 1.
            task.add_constr(row, ConstraintOp.GREATER_OR_EQUAL, 1.)

        with pytest.raises(BigTaskError) as exc_info:
            task.solve_min()

        assert calls["next"] == 0
        assert exc_info.value.kind == "big_task"
        assert exc_info.value.matrix.shape == (11, 41)
        assert exc_info.value.combinations == 847660528

    def test_big_task_respects_explicit_ceiling(self):
        # C(4, 2) = 6 candidate bases
        with pytest.raises(BigTaskError):
            task_two_vars().solve_min(max_combinations=5)

    def test_no_base_solution(self):
        task = LPTask([1., 1.])
        task.add_constr([1., 1.], ConstraintOp.EQUAL, -1.)

        with pytest.raises(NoBaseSolutionError) as exc_info:
            task.solve_min()
        assert exc_info.value.kind == "no_base_solution"

    def test_no_base_solution_direct(self):
        task = LPTask([1., 1.])
        task.add_constr([1., 1.], ConstraintOp.EQUAL, -1.)

        with pytest.raises(NoBaseSolutionError):
            find_basis_solution(task.get_source_matrix())

    def test_no_non_basic_columns_is_not_feasible(self):
        task = LPTask([1.])
        task.add_constr([1.], ConstraintOp.EQUAL, 1.)

        with pytest.raises(NotFeasibleError):
            task.solve_min()

    def test_unbounded(self):
        task = LPTask([-1., 0.])
        task.add_constr([1., -1.], ConstraintOp.EQUAL, 0.)

        with pytest.raises(UnboundedError):
            task.solve_min()

    def test_too_many_steps(self):
        task = LPTask([1., 0.])
        task.add_constr([1., 1.], ConstraintOp.EQUAL, 1.)

        with pytest.raises(TooManyStepsError):
            task.solve_min(max_steps=0)

    def test_step_ceiling_from_config(self, monkeypatch):
        monkeypatch.setattr(SolverConfig, "_config", {"max_steps": 0})
        task = LPTask([1., 0.])
        task.add_constr([1., 1.], ConstraintOp.EQUAL, 1.)

        with pytest.raises(TooManyStepsError):
            solve(task)


def assert_feasible(task: LPTask, solution: LPSolution, tol: float = 1e-9):
    x = np.array(solution.params)
    assert np.all(x >= -tol)
    for constraint in task.constraints:
        lhs = float(constraint.left @ x)
        if constraint.op is ConstraintOp.EQUAL:
            assert lhs == pytest.approx(constraint.right, abs=tol)
        elif constraint.op in (ConstraintOp.LESS, ConstraintOp.LESS_OR_EQUAL):
            assert lhs <= constraint.right + tol
        else:
            assert lhs >= constraint.right - tol
    assert float(task.func_vec @ x) == pytest.approx(solution.function_value, abs=tol)


class TestRatioTest:
    """Leaving row selection, degenerate rows and NaN handling."""

    def test_degenerate_row_leaves_first(self):
        # x_b[0] == 0 gives a zero ratio which beats the positive one
        x_b = np.array([0., 2.])
        direction = np.array([1., 1.])
        assert modified_simplex._leaving_index(x_b, direction) == 0

    def test_first_minimum_wins(self):
        x_b = np.array([4., 1., 2.])
        direction = np.array([1., 1., 2.])
        assert modified_simplex._leaving_index(x_b, direction) == 1

    def test_rows_without_positive_finite_direction_are_skipped(self):
        x_b = np.array([0., 0., 0., 3.])
        direction = np.array([-1., 0., np.nan, 1.5])
        assert modified_simplex._leaving_index(x_b, direction) == 3

    def test_no_eligible_row_is_unbounded(self):
        with pytest.raises(UnboundedError):
            modified_simplex._leaving_index(np.array([1., 1.]), np.array([-1., 0.]))

    def test_nan_winning_ratio_is_unbounded(self):
        with pytest.raises(UnboundedError):
            modified_simplex._leaving_index(np.array([np.nan, 1.]), np.array([1., 1.]))

    def test_degenerate_problem_stays_feasible(self):
        task = LPTask([0., 2., 0.])
        task.add_constr([2., -2., -1.], ConstraintOp.GREATER_OR_EQUAL, -2.)
        task.add_constr([2., 2., -2.], ConstraintOp.LESS_OR_EQUAL, 2.)
        task.add_constr([-1., 1., 1.], ConstraintOp.EQUAL, 1.)

        solution = task.solve_min()

        assert solution.function_value == pytest.approx(0.0, abs=TOLERANCE)
        assert_feasible(task, solution)

    def test_known_optimum_is_feasible(self):
        task = task_seven_vars()
        assert_feasible(task, task.solve_min())


class TestNumericalFailures:
    """Numerical trouble inside the iteration stays a SimplexError."""

    def test_nan_reduced_cost_is_not_feasible(self):
        task = LPTask([np.nan, 0.])
        task.add_constr([1., 1.], ConstraintOp.EQUAL, 1.)

        with pytest.raises(NotFeasibleError):
            task.solve_min()

    def test_singular_basis_during_iteration(self, monkeypatch):
        real_inv = np.linalg.inv
        calls = {"inv": 0}

        def failing_after_start(matrix):
            calls["inv"] += 1
            if calls["inv"] > 1:
                raise np.linalg.LinAlgError("Singular matrix")
            return real_inv(matrix)

        monkeypatch.setattr(np.linalg, "inv", failing_after_start)
        task = LPTask([1., 0.])
        task.add_constr([1., 1.], ConstraintOp.EQUAL, 1.)

        with pytest.raises(NotFeasibleError):
            task.solve_min()

    def test_unbounded_objective_raises_typed_error(self):
        # min x1 - 3 x2 with x2 free to grow
        task = LPTask([1., -3.])
        task.add_constr([-1., 3.], ConstraintOp.GREATER_OR_EQUAL, 1.)
        task.add_constr([-3., 2.], ConstraintOp.GREATER_OR_EQUAL, -1.)
        task.add_constr([-3., 0.], ConstraintOp.LESS_OR_EQUAL, -2.)

        with pytest.raises(SimplexError):
            task.solve_min()
