import logging
import threading
from typing import NamedTuple, Optional

import numpy as np
import torch
import scipy.optimize
import gurobipy as gp
from gurobipy import GRB

import config
from utils import to_tensor, to_numpy
from exceptions import DimensionError, SolverError

logger = logging.getLogger()


class LPStatus:
    OPTIMAL = 'OPTIMAL'
    INFEASIBLE = 'INFEASIBLE'
    UNBOUNDED = 'UNBOUNDED'
    UNKNOWN = 'UNKNOWN'


class LPResult(NamedTuple):
    status: str
    value: Optional[float] = None
    point: Optional[np.ndarray] = None

    @property
    def feasible(self):
        return self.status != LPStatus.INFEASIBLE


INFEASIBLE = LPResult(LPStatus.INFEASIBLE)


class LPSolver:
    """Solves min/max c^T a s.t. C a <= d, lb <= a <= ub on numpy arrays."""

    name = None

    def solve(self, c, C, d, lb, ub, sense='min'):
        raise NotImplementedError


class GurobiLPSolver(LPSolver):
    name = 'gurobi'

    def __init__(self):
        # Gurobi environments must not be shared between threads
        self._local = threading.local()

    @property
    def env(self):
        env = getattr(self._local, 'env', None)
        if env is None:
            env = gp.Env(empty=True)
            env.setParam('OutputFlag', 0)
            env.start()
            self._local.env = env
        return env

    def solve(self, c, C, d, lb, ub, sense='min'):
        lb = np.where(np.isinf(lb), -GRB.INFINITY, lb)
        ub = np.where(np.isinf(ub), GRB.INFINITY, ub)

        model = gp.Model('star_lp', env=self.env)
        try:
            alpha = model.addMVar(c.shape[0], lb=lb, ub=ub, name='alpha')
            if C.shape[0] > 0:
                model.addMConstr(C, alpha, GRB.LESS_EQUAL, d)

            model_sense = GRB.MINIMIZE if sense == 'min' else GRB.MAXIMIZE
            model.setMObjective(None, c, 0.0, xc=alpha, sense=model_sense)
            model.optimize()

            if model.Status == GRB.INF_OR_UNBD:
                model.reset()
                model.Params.DualReductions = 0
                model.optimize()

            status = model.Status
            if status == GRB.OPTIMAL:
                return LPResult(LPStatus.OPTIMAL, model.ObjVal, np.array(alpha.X))
            if status == GRB.INFEASIBLE:
                return INFEASIBLE
            if status == GRB.UNBOUNDED:
                return LPResult(LPStatus.UNBOUNDED, -np.inf if sense == 'min' else np.inf)

            raise SolverError('Gurobi returned status {}'.format(status))
        finally:
            model.dispose()


class ScipyLPSolver(LPSolver):
    name = 'scipy'

    def solve(self, c, C, d, lb, ub, sense='min'):
        sign = 1.0 if sense == 'min' else -1.0
        bounds = [(None if np.isinf(lo) else float(lo), None if np.isinf(hi) else float(hi))
                  for lo, hi in zip(lb, ub)]

        if C.shape[0] > 0:
            res = scipy.optimize.linprog(sign * c, A_ub=C, b_ub=d, bounds=bounds, method='highs')
        else:
            res = scipy.optimize.linprog(sign * c, bounds=bounds, method='highs')

        if res.status == 0:
            return LPResult(LPStatus.OPTIMAL, sign * res.fun, res.x)
        if res.status == 2:
            return INFEASIBLE
        if res.status == 3:
            return LPResult(LPStatus.UNBOUNDED, -sign * np.inf)

        raise SolverError('linprog failed: {}'.format(res.message))


_solver_types = {
    'gurobi': GurobiLPSolver,
    'scipy': ScipyLPSolver,
}
_solvers = {}
_default_solver = None


def set_lp_solver(name):
    global _default_solver
    if name not in _solver_types:
        raise ValueError('Unknown LP solver: {}. Use one of {}'.format(
            name, list(_solver_types.keys())))
    _default_solver = name


def get_lp_solver(name=None):
    if isinstance(name, LPSolver):
        return name

    if name is None:
        name = _default_solver if _default_solver is not None else config.config.lp_solver[0]

    if name not in _solver_types:
        raise ValueError('Unknown LP solver: {}. Use one of {}'.format(
            name, list(_solver_types.keys())))

    if name not in _solvers:
        _solvers[name] = _solver_types[name]()
    return _solvers[name]


def _bounds_close(a, b, tol):
    a_inf = torch.isinf(a)
    if not torch.equal(a_inf, torch.isinf(b)):
        return False
    if not torch.equal(a[a_inf], b[a_inf]):
        return False
    return torch.linalg.norm(a[~a_inf] - b[~a_inf]).item() <= tol


class LinearConstraints:
    """
    Polyhedron {alpha : C alpha <= d, lb <= alpha <= ub} over the free
    variables of a set. Objects are never modified after construction, so
    sets produced by affine maps may share them.
    """

    def __init__(self, C, d, lb=None, ub=None):
        C = to_tensor(C)
        d = to_tensor(d).reshape(-1)

        if C.dim() != 2:
            raise DimensionError(
                'Constraint matrix must be 2-dimensional, got shape {}'.format(tuple(C.shape)))
        if C.shape[0] != d.numel():
            raise DimensionError('Inconsistency between the constraint matrix ({} rows) '
                                 'and the constraint vector ({} entries)'.format(C.shape[0], d.numel()))

        num_variables = C.shape[1]
        if lb is None:
            lb = torch.full((num_variables,), -np.inf, dtype=C.dtype)
        if ub is None:
            ub = torch.full((num_variables,), np.inf, dtype=C.dtype)
        lb = to_tensor(lb).reshape(-1)
        ub = to_tensor(ub).reshape(-1)

        if lb.numel() != num_variables or ub.numel() != num_variables:
            raise DimensionError('Variable bounds of length {}/{} for {} variables'.format(
                lb.numel(), ub.numel(), num_variables))

        self._C = C
        self._d = d
        self._lb = lb
        self._ub = ub

        self._box = None
        self._box_computed = False

    @classmethod
    def from_bounds(cls, lb, ub):
        lb = to_tensor(lb).reshape(-1)
        ub = to_tensor(ub).reshape(-1)
        eye = torch.eye(lb.numel(), dtype=lb.dtype)
        C = torch.cat([eye, -eye], 0)
        d = torch.cat([ub, -lb], 0)
        return cls(C, d, lb, ub)

    @classmethod
    def unit_box(cls, num_variables):
        ones = torch.ones(num_variables, dtype=config.config.dtype[0])
        return cls.from_bounds(-ones, ones)

    @classmethod
    def empty(cls, num_variables):
        dtype = config.config.dtype[0]
        return cls(torch.zeros((0, num_variables), dtype=dtype), torch.zeros(0, dtype=dtype))

    @property
    def C(self):
        return self._C

    @property
    def d(self):
        return self._d

    @property
    def lb(self):
        return self._lb

    @property
    def ub(self):
        return self._ub

    @property
    def num_variables(self):
        return self._C.shape[1]

    @property
    def num_constraints(self):
        return self._C.shape[0]

    @property
    def has_finite_bounds(self):
        return bool(torch.isfinite(self._lb).all() and torch.isfinite(self._ub).all())

    def __repr__(self):
        return 'LinearConstraints(num_variables={}, num_constraints={})'.format(
            self.num_variables, self.num_constraints)

    def add_halfspace(self, H, g):
        H = to_tensor(H)
        g = to_tensor(g).reshape(-1)
        if H.dim() == 1:
            H = H.view(1, -1)

        if H.shape[1] != self.num_variables:
            raise DimensionError('Halfspace over {} variables added to constraints over {}'.format(
                H.shape[1], self.num_variables))
        if H.shape[0] != g.numel():
            raise DimensionError('Halfspace matrix has {} rows but {} offsets'.format(
                H.shape[0], g.numel()))

        return LinearConstraints(torch.cat([self.C, H], 0), torch.cat([self.d, g], 0),
                                 self.lb, self.ub)

    def extend(self, num_new, C_new=None, d_new=None, lb_new=None, ub_new=None):
        """
        Adds num_new free variables. Existing rows get zero coefficients for
        them; C_new rows span the old and the new variables.
        """
        dtype = self.C.dtype
        k = self.num_variables

        C = torch.cat([self.C, torch.zeros((self.num_constraints, num_new), dtype=dtype)], 1)
        d = self.d

        if C_new is not None:
            C_new = to_tensor(C_new)
            d_new = to_tensor(d_new).reshape(-1)
            if C_new.dim() != 2 or C_new.shape[1] != k + num_new:
                raise DimensionError('New constraint rows must span {} variables, got shape {}'.format(
                    k + num_new, tuple(C_new.shape)))
            if C_new.shape[0] != d_new.numel():
                raise DimensionError('New constraint rows ({}) and offsets ({}) differ'.format(
                    C_new.shape[0], d_new.numel()))
            C = torch.cat([C, C_new], 0)
            d = torch.cat([d, d_new], 0)

        if lb_new is None:
            lb_new = torch.full((num_new,), -np.inf, dtype=dtype)
        if ub_new is None:
            ub_new = torch.full((num_new,), np.inf, dtype=dtype)

        lb = torch.cat([self.lb, to_tensor(lb_new).reshape(-1)])
        ub = torch.cat([self.ub, to_tensor(ub_new).reshape(-1)])

        return LinearConstraints(C, d, lb, ub)

    def block_diag(self, other):
        dtype = self.C.dtype
        m1, k1 = self.C.shape
        m2, k2 = other.C.shape

        top = torch.cat([self.C, torch.zeros((m1, k2), dtype=dtype)], 1)
        bottom = torch.cat([torch.zeros((m2, k1), dtype=dtype), other.C], 1)

        return LinearConstraints(torch.cat([top, bottom], 0),
                                 torch.cat([self.d, other.d], 0),
                                 torch.cat([self.lb, other.lb]),
                                 torch.cat([self.ub, other.ub]))

    def is_close(self, other, tol=None):
        if tol is None:
            tol = config.config.constraint_tolerance[0]

        if self is other:
            return True
        if self.num_variables != other.num_variables:
            return False
        if self.num_constraints != other.num_constraints:
            return False

        if torch.linalg.norm(self.C - other.C).item() > tol:
            return False
        if torch.linalg.norm(self.d - other.d).item() > tol:
            return False

        return _bounds_close(self.lb, other.lb, tol) and _bounds_close(self.ub, other.ub, tol)

    def contains(self, alpha, tol=None):
        if tol is None:
            tol = config.config.containment_tolerance[0]

        alpha = to_tensor(alpha)
        squeeze = alpha.dim() == 1
        alpha = alpha.view(-1, self.num_variables)

        inside = (alpha.matmul(self.C.transpose(0, 1)) <= self.d + tol).all(1)
        inside &= (alpha >= self.lb - tol).all(1)
        inside &= (alpha <= self.ub + tol).all(1)

        if squeeze:
            return bool(inside[0])
        return inside

    def _solve(self, objective, sense, solver):
        if self.num_variables == 0:
            if (self.d < 0).any():
                return INFEASIBLE
            return LPResult(LPStatus.OPTIMAL, 0.0, np.zeros(0))

        c = to_numpy(objective).reshape(-1)
        if c.shape[0] != self.num_variables:
            raise DimensionError('Objective over {} variables for constraints over {}'.format(
                c.shape[0], self.num_variables))

        solver = get_lp_solver(solver)
        return solver.solve(c, to_numpy(self.C), to_numpy(self.d),
                            to_numpy(self.lb), to_numpy(self.ub), sense)

    def minimize(self, objective, offset=0.0, solver=None):
        res = self._solve(objective, 'min', solver)
        if res.value is None:
            return res
        return res._replace(value=res.value + float(offset))

    def maximize(self, objective, offset=0.0, solver=None):
        res = self._solve(objective, 'max', solver)
        if res.value is None:
            return res
        return res._replace(value=res.value + float(offset))

    def is_feasible(self, solver=None):
        objective = torch.zeros(self.num_variables, dtype=self.C.dtype)
        return self._solve(objective, 'min', solver).feasible

    def bounds_of(self, direction, offset=0.0, solver=None):
        if isinstance(direction, int):
            if not 0 <= direction < self.num_variables:
                raise IndexError('Variable {} out of range for {} variables'.format(
                    direction, self.num_variables))
            index = direction
            direction = torch.zeros(self.num_variables, dtype=self.C.dtype)
            direction[index] = 1.0

        low = self.minimize(direction, offset, solver)
        if not low.feasible:
            return None
        high = self.maximize(direction, offset, solver)
        if not high.feasible:
            return None
        return low.value, high.value

    def get_variable_box(self, solver=None):
        if self._box_computed:
            return self._box

        k = self.num_variables
        dtype = self.C.dtype
        lb = torch.empty(k, dtype=dtype)
        ub = torch.empty(k, dtype=dtype)
        box = (lb, ub)

        if k == 0 and not self.is_feasible(solver):
            box = None

        for j in range(k):
            bounds = self.bounds_of(j, solver=solver)
            if bounds is None:
                box = None
                break
            lb[j], ub[j] = bounds

        self._box = box
        self._box_computed = True
        return box

    def estimate_variable_box(self, solver=None):
        if self.has_finite_bounds:
            return self.lb, self.ub
        return self.get_variable_box(solver)
