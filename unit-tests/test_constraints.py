"""
Unit tests for the predicate constraint systems and the LP backends.
"""

import unittest

import numpy as np
import torch

import constraints
from constraints import LinearConstraints, LPStatus, get_lp_solver, set_lp_solver
from exceptions import DimensionError

SOLVERS = ['gurobi', 'scipy']


class TestLinearConstraintsStructure(unittest.TestCase):

    def test_rows_must_match_offsets(self):
        with self.assertRaises(DimensionError):
            LinearConstraints(torch.zeros((3, 2)), torch.zeros(2))

    def test_bounds_must_match_variables(self):
        with self.assertRaises(DimensionError):
            LinearConstraints(torch.zeros((1, 2)), torch.zeros(1), lb=torch.zeros(3))

    def test_unit_box(self):
        c = LinearConstraints.unit_box(3)
        self.assertEqual(c.num_variables, 3)
        self.assertEqual(c.num_constraints, 6)
        self.assertTrue(c.has_finite_bounds)
        self.assertTrue(torch.equal(c.lb, -torch.ones(3, dtype=c.lb.dtype)))

    def test_empty_has_no_rows_and_infinite_bounds(self):
        c = LinearConstraints.empty(2)
        self.assertEqual(c.num_constraints, 0)
        self.assertFalse(c.has_finite_bounds)

    def test_add_halfspace_appends_rows(self):
        c = LinearConstraints.unit_box(2)
        c_new = c.add_halfspace(torch.tensor([1.0, 1.0]), torch.tensor([0.5]))

        self.assertEqual(c.num_constraints, 4)
        self.assertEqual(c_new.num_constraints, 5)
        self.assertTrue(torch.allclose(c_new.C[-1], torch.tensor([1.0, 1.0], dtype=c_new.C.dtype)))

    def test_add_halfspace_checks_width(self):
        with self.assertRaises(DimensionError):
            LinearConstraints.unit_box(2).add_halfspace(torch.ones((1, 3)), torch.ones(1))

    def test_extend_pads_old_rows(self):
        c = LinearConstraints.unit_box(2)
        C_new = torch.tensor([[1.0, 0.0, -1.0]])
        c_new = c.extend(1, C_new, torch.tensor([0.0]), torch.tensor([0.0]), torch.tensor([2.0]))

        self.assertEqual(c_new.num_variables, 3)
        self.assertEqual(c_new.num_constraints, 5)
        self.assertTrue((c_new.C[:4, 2] == 0).all())
        self.assertEqual(c_new.lb[2].item(), 0.0)
        self.assertEqual(c_new.ub[2].item(), 2.0)

    def test_block_diag(self):
        c = LinearConstraints.unit_box(2).block_diag(LinearConstraints.unit_box(1))

        self.assertEqual(c.num_variables, 3)
        self.assertEqual(c.num_constraints, 6)
        self.assertTrue((c.C[:4, 2] == 0).all())
        self.assertTrue((c.C[4:, :2] == 0).all())

    def test_is_close(self):
        c = LinearConstraints.unit_box(2)
        perturbed = LinearConstraints(c.C + 1E-6, c.d, c.lb, c.ub)
        different = LinearConstraints(c.C + 1E-2, c.d, c.lb, c.ub)

        self.assertTrue(c.is_close(perturbed))
        self.assertFalse(c.is_close(different))
        self.assertFalse(c.is_close(c.add_halfspace(torch.ones(2), torch.ones(1))))
        self.assertFalse(c.is_close(LinearConstraints.unit_box(3)))

    def test_is_close_compares_infinite_bounds_by_position(self):
        c = LinearConstraints(torch.ones((1, 2)), torch.ones(1))
        self.assertTrue(c.is_close(LinearConstraints(torch.ones((1, 2)), torch.ones(1))))
        self.assertFalse(c.is_close(LinearConstraints(torch.ones((1, 2)), torch.ones(1),
                                                      lb=torch.tensor([-np.inf, 0.0]))))

    def test_contains(self):
        c = LinearConstraints.unit_box(2).add_halfspace(torch.tensor([1.0, 1.0]), torch.tensor([0.0]))
        points = torch.tensor([[0.0, 0.0], [0.5, 0.5], [-1.0, 0.9], [2.0, -2.0]])

        inside = c.contains(points)
        self.assertEqual(inside.tolist(), [True, False, True, False])
        self.assertTrue(c.contains(torch.tensor([-0.5, 0.2])))


class TestLinearConstraintsLP(unittest.TestCase):

    def setUp(self):
        # Triangle alpha_1, alpha_2 >= 0, alpha_1 + alpha_2 <= 1
        self.triangle = LinearConstraints(torch.tensor([[-1.0, 0.0], [0.0, -1.0], [1.0, 1.0]]),
                                          torch.tensor([0.0, 0.0, 1.0]))
        self.infeasible = LinearConstraints.unit_box(2).add_halfspace(
            torch.tensor([1.0, 1.0]), torch.tensor([-3.0]))

    def test_feasibility(self):
        for solver in SOLVERS:
            with self.subTest(solver=solver):
                self.assertTrue(self.triangle.is_feasible(solver))
                self.assertFalse(self.infeasible.is_feasible(solver))

    def test_minimize_maximize(self):
        for solver in SOLVERS:
            with self.subTest(solver=solver):
                direction = torch.tensor([1.0, 2.0])
                low = self.triangle.minimize(direction, offset=1.0, solver=solver)
                high = self.triangle.maximize(direction, offset=1.0, solver=solver)

                self.assertEqual(low.status, LPStatus.OPTIMAL)
                self.assertAlmostEqual(low.value, 1.0, places=6)
                self.assertAlmostEqual(high.value, 3.0, places=6)
                self.assertEqual(high.point.shape, (2,))

    def test_bounds_of_empty_region(self):
        for solver in SOLVERS:
            with self.subTest(solver=solver):
                self.assertIsNone(self.infeasible.bounds_of(torch.tensor([1.0, 0.0]), solver=solver))
                result = self.infeasible.minimize(torch.tensor([1.0, 0.0]), solver=solver)
                self.assertFalse(result.feasible)
                self.assertIsNone(result.value)

    def test_unbounded(self):
        c = LinearConstraints(torch.tensor([[1.0, 0.0]]), torch.tensor([1.0]))
        for solver in SOLVERS:
            with self.subTest(solver=solver):
                result = c.minimize(torch.tensor([1.0, 0.0]), solver=solver)
                self.assertEqual(result.status, LPStatus.UNBOUNDED)
                self.assertEqual(result.value, -np.inf)
                self.assertAlmostEqual(c.maximize(torch.tensor([1.0, 0.0]), solver=solver).value,
                                       1.0, places=6)

    def test_variable_box(self):
        for solver in SOLVERS:
            with self.subTest(solver=solver):
                triangle = LinearConstraints(self.triangle.C, self.triangle.d)
                lb, ub = triangle.get_variable_box(solver)

                self.assertTrue(torch.allclose(lb, torch.zeros(2, dtype=lb.dtype), atol=1E-7))
                self.assertTrue(torch.allclose(ub, torch.ones(2, dtype=ub.dtype), atol=1E-7))
                self.assertIs(triangle.get_variable_box(solver), triangle.get_variable_box(solver))

    def test_bounds_of_variable_index(self):
        for solver in SOLVERS:
            with self.subTest(solver=solver):
                self.assertEqual(self.triangle.bounds_of(1, solver=solver),
                                 self.triangle.bounds_of(torch.tensor([0.0, 1.0]), solver=solver))
                low, high = self.triangle.bounds_of(0, offset=2.0, solver=solver)
                self.assertAlmostEqual(low, 2.0, places=6)
                self.assertAlmostEqual(high, 3.0, places=6)

        with self.assertRaises(IndexError):
            self.triangle.bounds_of(2)

    def test_zero_variables(self):
        c = LinearConstraints.empty(0)
        self.assertTrue(c.is_feasible())
        self.assertEqual(c.minimize(torch.zeros(0)).value, 0.0)


class TestSolverRegistry(unittest.TestCase):

    def tearDown(self):
        constraints._default_solver = None

    def test_unknown_solver(self):
        with self.assertRaises(ValueError):
            get_lp_solver('cplex')
        with self.assertRaises(ValueError):
            set_lp_solver('cplex')

    def test_cached_instances(self):
        self.assertIs(get_lp_solver('scipy'), get_lp_solver('scipy'))
        self.assertEqual(get_lp_solver('gurobi').name, 'gurobi')

    def test_set_default(self):
        set_lp_solver('scipy')
        self.assertEqual(get_lp_solver().name, 'scipy')


if __name__ == '__main__':
    unittest.main()
