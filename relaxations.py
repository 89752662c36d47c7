import logging

import torch

import config
from utils import to_tensor, positive_negative
from constraints import LinearConstraints
from exceptions import DimensionError, ShapeError

logger = logging.getLogger()


def _as_row(x):
    return to_tensor(x).reshape(1, -1)


def _affine_arguments(W, b, num_dimensions):
    W = to_tensor(W)
    if W.dim() == 1:
        W = W.view(1, -1)

    if W.dim() != 2 or W.shape[1] != num_dimensions:
        raise DimensionError('Inconsistency between the weight matrix of shape {} '
                             'and a set of dimension {}'.format(tuple(W.shape), num_dimensions))

    if b is None:
        b = torch.zeros(W.shape[0], dtype=W.dtype)
    else:
        b = to_tensor(b).reshape(-1)
        if b.numel() != W.shape[0]:
            raise DimensionError('Inconsistency between the weight matrix with {} rows '
                                 'and the bias vector with {} entries'.format(W.shape[0], b.numel()))

    return W, b


def _interval_sum(lb, ub, A):
    # Bounds of alpha @ A for lb <= alpha <= ub, where 0 * inf counts as 0
    A_pos, A_neg = positive_negative(A)
    lb = lb.view(-1, 1)
    ub = ub.view(-1, 1)
    zeros = torch.zeros_like(A)

    lower = torch.where(A_pos > 0, A_pos * lb, zeros) + torch.where(A_neg < 0, A_neg * ub, zeros)
    upper = torch.where(A_pos > 0, A_pos * ub, zeros) + torch.where(A_neg < 0, A_neg * lb, zeros)

    return lower.sum(0), upper.sum(0)


class Box:
    def __init__(self, lb, ub):
        lb = to_tensor(lb)
        ub = to_tensor(ub)

        if lb.shape != ub.shape:
            raise DimensionError('Lower bound of shape {} and upper bound of shape {}'.format(
                tuple(lb.shape), tuple(ub.shape)))

        lb = lb.reshape(-1)
        ub = ub.reshape(-1)

        if (lb > ub).any():
            invalid = (lb > ub).nonzero(as_tuple=False).view(-1).tolist()
            raise ValueError('Lower bound exceeds upper bound at dimensions {}'.format(invalid))

        self._lb = lb
        self._ub = ub

    @property
    def type(self):
        return 'box'

    @property
    def lb(self):
        return self._lb

    @property
    def ub(self):
        return self._ub

    @property
    def center(self):
        return 0.5 * (self.lb + self.ub)

    @property
    def num_dimensions(self):
        return self.lb.numel()

    def __repr__(self):
        return 'Box(num_dimensions={})'.format(self.num_dimensions)

    def get_bounds(self):
        return self.lb, self.ub

    def get_generators(self):
        bounds_difference = (self.ub - self.lb) / 2
        A = torch.diag(bounds_difference)

        isDimensionWide = bounds_difference > 0
        if not isDimensionWide.all():
            A = A[isDimensionWide, :]

        return A

    def to_star(self):
        A = self.get_generators()
        return Star(self.center, A, LinearConstraints.unit_box(A.shape[0]))

    def to_zonotope(self):
        return Zonotope(self.center, self.get_generators())

    def affine_map(self, W, b=None):
        W, b = _affine_arguments(W, b, self.num_dimensions)

        center = self.center.matmul(W.transpose(0, 1)) + b
        radius = ((self.ub - self.lb) / 2).matmul(W.abs().transpose(0, 1))

        return Box(center - radius, center + radius)

    def contains(self, point, tol=0.0):
        point = to_tensor(point).reshape(-1)
        if point.numel() != self.num_dimensions:
            raise DimensionError('Point of dimension {} for a box of dimension {}'.format(
                point.numel(), self.num_dimensions))

        return bool(((point >= self.lb - tol) & (point <= self.ub + tol)).all())

    def sample(self, num_samples=None, generator=None):
        if num_samples is None:
            num_samples = config.config.num_samples[0]

        noise = torch.rand((num_samples, self.num_dimensions),
                           dtype=self.lb.dtype, generator=generator)
        return self.lb + (self.ub - self.lb) * noise


class Zonotope:
    def __init__(self, a0, A=None):
        a0 = _as_row(a0)
        if A is None:
            A = torch.zeros((0, a0.shape[1]), dtype=a0.dtype)
        A = to_tensor(A)

        if A.dim() != 2 or A.shape[1] != a0.shape[1]:
            raise DimensionError('Generators of shape {} for a center of dimension {}'.format(
                tuple(A.shape), a0.shape[1]))

        self._a0 = a0
        self._A = A
        self._lb = None
        self._ub = None

    @property
    def type(self):
        return 'zonotope'

    @property
    def a0(self):
        return self._a0

    @property
    def A(self):
        return self._A

    @property
    def center(self):
        return self._a0.view(-1)

    @property
    def num_dimensions(self):
        return self.a0.shape[1]

    @property
    def num_epsilons(self):
        return self.A.shape[0]

    @property
    def lb(self):
        if self._lb is None:
            self.update_bounds()
        return self._lb

    @property
    def ub(self):
        if self._ub is None:
            self.update_bounds()
        return self._ub

    def update_bounds(self):
        A_abs = self.A.abs().sum(0)
        self._lb = self.center - A_abs
        self._ub = self.center + A_abs

    def __repr__(self):
        return 'Zonotope(num_dimensions={}, num_epsilons={})'.format(
            self.num_dimensions, self.num_epsilons)

    def get_bounds(self):
        return self.lb, self.ub

    def affine_map(self, W, b=None):
        W, b = _affine_arguments(W, b, self.num_dimensions)
        return Zonotope(self.a0.matmul(W.transpose(0, 1)) + b, self.A.matmul(W.transpose(0, 1)))

    def minkowski_sum(self, other):
        if other.num_dimensions != self.num_dimensions:
            raise DimensionError('Minkowski sum of zonotopes of dimension {} and {}'.format(
                self.num_dimensions, other.num_dimensions))

        if isinstance(other, Box):
            other = other.to_zonotope()

        return Zonotope(self.a0 + other.a0, torch.cat([self.A, other.A], 0))

    def to_star(self):
        return Star(self.a0, self.A, LinearConstraints.unit_box(self.num_epsilons))

    def to_box(self):
        return Box(self.lb, self.ub)

    def contains(self, point, tol=None, solver=None):
        return self.to_star().contains(point, tol, solver)

    def sample(self, num_samples=None, generator=None):
        if num_samples is None:
            num_samples = config.config.num_samples[0]

        epsilons = 2 * torch.rand((num_samples, self.num_epsilons),
                                  dtype=self.A.dtype, generator=generator) - 1
        return self.a0 + epsilons.matmul(self.A)


class Star:
    """
    Set {a0 + alpha @ A : C alpha <= d, lb <= alpha <= ub}.

    a0 is a row of shape (1, n), the generators are the k rows of A and the
    predicate over the k free variables alpha is a LinearConstraints object.
    Affine maps only touch a0 and A, so the predicate is shared between a
    star and all its images.
    """

    def __init__(self, a0, A=None, constraints=None):
        a0 = _as_row(a0)
        num_dimensions = a0.shape[1]

        if A is None:
            A = torch.zeros((0, num_dimensions), dtype=a0.dtype)
        A = to_tensor(A)

        if A.dim() != 2 or A.shape[1] != num_dimensions:
            raise DimensionError('Generators of shape {} for a center of dimension {}'.format(
                tuple(A.shape), num_dimensions))

        if constraints is None:
            constraints = LinearConstraints.unit_box(A.shape[0])
        elif isinstance(constraints, (tuple, list)):
            constraints = LinearConstraints(*constraints)

        if constraints.num_variables != A.shape[0]:
            raise DimensionError('Inconsistency between {} generators and constraints '
                                 'over {} variables'.format(A.shape[0], constraints.num_variables))

        self._a0 = a0
        self._A = A
        self._constraints = constraints

    @classmethod
    def from_box(cls, lb, ub):
        return Box(lb, ub).to_star()

    @classmethod
    def from_zonotope(cls, z):
        return z.to_star()

    @property
    def type(self):
        return 'star'

    @property
    def a0(self):
        return self._a0

    @property
    def A(self):
        return self._A

    @property
    def center(self):
        return self._a0.view(-1)

    @property
    def constraints(self):
        return self._constraints

    @property
    def C(self):
        return self._constraints.C

    @property
    def d(self):
        return self._constraints.d

    @property
    def num_dimensions(self):
        return self.a0.shape[1]

    @property
    def num_variables(self):
        return self.A.shape[0]

    @property
    def num_constraints(self):
        return self._constraints.num_constraints

    def __repr__(self):
        return 'Star(num_dimensions={}, num_variables={}, num_constraints={})'.format(
            self.num_dimensions, self.num_variables, self.num_constraints)

    def affine_map(self, W, b=None):
        W, b = _affine_arguments(W, b, self.num_dimensions)
        return Star(self.a0.matmul(W.transpose(0, 1)) + b,
                    self.A.matmul(W.transpose(0, 1)),
                    self.constraints)

    def minkowski_sum(self, other):
        if isinstance(other, (Box, Zonotope)):
            other = other.to_star()

        if other.num_dimensions != self.num_dimensions:
            raise DimensionError('Minkowski sum of stars of dimension {} and {}'.format(
                self.num_dimensions, other.num_dimensions))

        return Star(self.a0 + other.a0, torch.cat([self.A, other.A], 0),
                    self.constraints.block_diag(other.constraints))

    def intersect_halfspace(self, H, g, prune_empty=False, solver=None):
        H = to_tensor(H)
        g = to_tensor(g).reshape(-1)
        if H.dim() == 1:
            H = H.view(1, -1)

        if H.shape[1] != self.num_dimensions:
            raise DimensionError('Halfspace of dimension {} for a star of dimension {}'.format(
                H.shape[1], self.num_dimensions))
        if H.shape[0] != g.numel():
            raise DimensionError('Halfspace matrix has {} rows but {} offsets'.format(
                H.shape[0], g.numel()))

        # H (a0 + alpha A) <= g  <=>  (H A^T) alpha <= g - H a0
        constraints = self.constraints.add_halfspace(
            H.matmul(self.A.transpose(0, 1)), g - H.matmul(self.center))
        star = Star(self.a0, self.A, constraints)

        if prune_empty and star.is_empty(solver):
            return None
        return star

    def is_empty(self, solver=None):
        return not self.constraints.is_feasible(solver)

    def get_range(self, idx_dim, solver=None):
        if not 0 <= idx_dim < self.num_dimensions:
            raise IndexError('Dimension {} out of range for a star of dimension {}'.format(
                idx_dim, self.num_dimensions))

        return self.constraints.bounds_of(self.A[:, idx_dim], self.a0[0, idx_dim].item(), solver)

    def get_bounds(self, solver=None):
        dtype = self.a0.dtype
        lb = torch.empty(self.num_dimensions, dtype=dtype)
        ub = torch.empty(self.num_dimensions, dtype=dtype)

        for idx_dim in range(self.num_dimensions):
            bounds = self.get_range(idx_dim, solver)
            if bounds is None:
                return None
            lb[idx_dim], ub[idx_dim] = bounds

        return lb, ub

    def estimate_range(self, idx_dim, solver=None):
        if not 0 <= idx_dim < self.num_dimensions:
            raise IndexError('Dimension {} out of range for a star of dimension {}'.format(
                idx_dim, self.num_dimensions))

        box = self.constraints.estimate_variable_box(solver)
        if box is None:
            return None

        lower, upper = _interval_sum(box[0], box[1], self.A[:, [idx_dim]])
        center = self.a0[0, idx_dim].item()
        return center + lower.item(), center + upper.item()

    def estimate_bounds(self, solver=None):
        box = self.constraints.estimate_variable_box(solver)
        if box is None:
            return None

        lower, upper = _interval_sum(box[0], box[1], self.A)
        return self.center + lower, self.center + upper

    def get_zonotope(self, solver=None):
        box = self.constraints.estimate_variable_box(solver)
        if box is None:
            return None

        lb, ub = box
        if not (torch.isfinite(lb).all() and torch.isfinite(ub).all()):
            raise ValueError('An unbounded star has no zonotope enclosure')

        # Rescale the variable box to [-1, 1]
        mid = (lb + ub) / 2
        radius = (ub - lb) / 2

        a0 = self.a0 + mid.matmul(self.A)
        A = radius.view(-1, 1) * self.A
        A = A[A.abs().sum(1) > 0, :]

        return Zonotope(a0, A)

    def contains(self, point, tol=None, solver=None):
        if tol is None:
            tol = config.config.containment_tolerance[0]

        point = to_tensor(point).reshape(-1)
        if point.numel() != self.num_dimensions:
            raise DimensionError('Point of dimension {} for a star of dimension {}'.format(
                point.numel(), self.num_dimensions))

        offset = point - self.center
        if self.num_variables == 0:
            return bool((offset.abs() <= tol).all()) and not self.is_empty(solver)

        # |alpha @ A - offset| <= tol
        At = self.A.transpose(0, 1)
        constraints = self.constraints.add_halfspace(
            torch.cat([At, -At], 0), torch.cat([offset + tol, -offset + tol], 0))

        return constraints.is_feasible(solver)

    def sample_predicate(self, num_samples=None, generator=None, solver=None):
        if num_samples is None:
            num_samples = config.config.num_samples[0]

        dtype = self.a0.dtype
        box = self.constraints.get_variable_box(solver)
        if box is None:
            return torch.zeros((0, self.num_variables), dtype=dtype)

        if self.num_variables == 0:
            return torch.zeros((num_samples, 0), dtype=dtype)

        lb, ub = box
        if not (torch.isfinite(lb).all() and torch.isfinite(ub).all()):
            raise ValueError('Cannot sample from an unbounded star')

        samples = []
        num_accepted = 0
        for _ in range(config.config.sample_iterations[0]):
            noise = torch.rand((num_samples, self.num_variables), dtype=dtype, generator=generator)
            alpha = lb + (ub - lb) * noise
            alpha = alpha[self.constraints.contains(alpha)]

            samples.append(alpha)
            num_accepted += alpha.shape[0]
            if num_accepted >= num_samples:
                break

        if num_accepted < num_samples:
            logger.info('Rejection sampling accepted {} of {} points'.format(num_accepted, num_samples))

        return torch.cat(samples, 0)[:num_samples]

    def sample(self, num_samples=None, generator=None, solver=None):
        alpha = self.sample_predicate(num_samples, generator, solver)
        return self.a0 + alpha.matmul(self.A)

    def to_star2d(self, height, width):
        from image_star import Star2D

        if self.num_dimensions != height * width:
            raise ShapeError('Star of dimension {} cannot be reshaped to {}x{}'.format(
                self.num_dimensions, height, width))
        return Star2D.from_star(self, height, width)

    def zero_dimensions(self, indices):
        a0 = self.a0.clone()
        A = self.A.clone()
        a0[:, indices] = 0
        A[:, indices] = 0
        return Star(a0, A, self.constraints)

    def scale_dimensions(self, indices, slope, intercept=0.0):
        slope = to_tensor(slope)
        intercept = to_tensor(intercept)

        a0 = self.a0.clone()
        A = self.A.clone()
        a0[:, indices] = a0[:, indices] * slope + intercept
        A[:, indices] = A[:, indices] * slope
        return Star(a0, A, self.constraints)
