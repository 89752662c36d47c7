import logging
from abc import ABC, abstractmethod
from time import time
from typing import NamedTuple

import torch
from joblib import Parallel, delayed

import config
from utils import to_tensor
from relaxations import Box, Zonotope, Star

logger = logging.getLogger()


class Relaxation(NamedTuple):
    # Pairs (slope, intercept): y >= slope * x + intercept for lower,
    # y <= slope * x + intercept for upper
    lower: list
    upper: list
    output_lb: float
    output_ub: float


def _as_star(input_set):
    if isinstance(input_set, (Box, Zonotope)):
        return input_set.to_star()
    return input_set


class ActivationTransformer(ABC):
    """
    Elementwise activation function acting on star sets.

    Subclasses describe the function per neuron through stable_piece,
    relaxation and zono_relaxation. Piecewise linear functions additionally
    list their linear pieces for exact splitting.
    """

    name = None
    supports_exact = True

    # (lo, hi, slope, intercept): the function is slope * x + intercept on
    # lo <= x <= hi, None meaning unbounded
    pieces = ()

    @abstractmethod
    def evaluate(self, x):
        pass

    def __call__(self, x):
        return self.evaluate(x)

    def __repr__(self):
        return '{}()'.format(self.__class__.__name__)

    def _f(self, x):
        return self.evaluate(torch.tensor(float(x), dtype=config.config.dtype[0])).item()

    def overlapping_pieces(self, l, u):
        pieces = [p for p in self.pieces
                  if (p[0] is None or p[0] < u) and (p[1] is None or p[1] > l)]

        if not pieces:
            # l == u on a breakpoint
            pieces = [p for p in self.pieces
                      if (p[0] is None or p[0] <= l) and (p[1] is None or l <= p[1])][:1]
        return pieces

    def stable_piece(self, l, u):
        pieces = self.overlapping_pieces(l, u)
        if len(pieces) == 1:
            return pieces[0][2], pieces[0][3]
        return None

    @abstractmethod
    def relaxation(self, l, u):
        pass

    def zono_relaxation(self, l, u):
        piece = self.stable_piece(l, u)
        if piece is not None:
            return piece[0], piece[1], piece[1]

        # Chord slope, offsets of f(x) - slope * x are extreme at the
        # interval ends or at breakpoints
        slope = (self._f(u) - self._f(l)) / (u - l)
        xs = [l, u]
        for lo, hi, _, _ in self.pieces:
            xs += [x for x in (lo, hi) if x is not None and l < x < u]

        offsets = [self._f(x) - slope * x for x in xs]
        return slope, min(offsets), max(offsets)

    def reach(self, input_set, method=None, **kwargs):
        if method is None:
            method = config.config.reach_method[0]

        methods = {
            'exact-star': self.reach_exact,
            'approx-star': self.reach_star_approx,
            'approx-star-fast': self.reach_star_approx_fast,
            'approx-zono': self.reach_zono_approx,
        }

        if method not in methods:
            logger.error('Unknown reachability method: {}'.format(method))
            raise ValueError('Unknown reachability method: {}. Choose one of {}'.format(
                method, list(methods.keys())))

        if method == 'exact-star':
            return self.reach_exact(input_set, **kwargs)

        input_sets = input_set if isinstance(input_set, (list, tuple)) else [input_set]
        output_sets = [methods[method](s, **kwargs) for s in input_sets]
        return [s for s in output_sets if s is not None]

    def get_neuron_bounds(self, star, use_lp=True, solver=None, indices=None):
        bounds = star.estimate_bounds(solver)
        if bounds is None:
            return None

        lb, ub = bounds[0].clone(), bounds[1].clone()
        if not use_lp:
            return lb, ub

        if indices is None:
            indices = range(star.num_dimensions)

        for i in indices:
            if self.stable_piece(lb[i].item(), ub[i].item()) is not None:
                continue

            bounds = star.get_range(i, solver)
            if bounds is None:
                return None

            lb[i] = max(lb[i].item(), bounds[0])
            ub[i] = min(ub[i].item(), bounds[1])
            if lb[i] > ub[i]:
                lb[i] = ub[i]

        return lb, ub

    def approximate_star(self, star, lb, ub, indices=None):
        """
        Applies the activation to the neurons in indices (all by default).
        Stable neurons are substituted, every other neuron y_i gets a new
        free variable bounded by its relaxation.
        """
        if indices is None:
            indices = range(star.num_dimensions)

        a0 = star.a0.clone()
        A = star.A.clone()
        relaxed = []

        for i in indices:
            l, u = lb[i].item(), ub[i].item()
            piece = self.stable_piece(l, u)

            if piece is not None:
                slope, intercept = piece
                a0[0, i] = slope * a0[0, i] + intercept
                A[:, i] = slope * A[:, i]
            else:
                relaxed.append((i, self.relaxation(l, u)))

        if not relaxed:
            return Star(a0, A, star.constraints)

        dtype = star.a0.dtype
        num_variables = star.num_variables
        num_new = len(relaxed)

        rows, offsets = [], []
        lb_new = torch.empty(num_new, dtype=dtype)
        ub_new = torch.empty(num_new, dtype=dtype)
        A_new = torch.zeros((num_new, star.num_dimensions), dtype=dtype)

        for idx_new, (i, relaxation) in enumerate(relaxed):
            x_center = star.a0[0, i].item()
            x_generators = star.A[:, i]

            # y >= s x + t  <=>  s A_i alpha - y <= -(s a0_i + t)
            for slope, intercept in relaxation.lower:
                row = torch.zeros(num_variables + num_new, dtype=dtype)
                row[:num_variables] = slope * x_generators
                row[num_variables + idx_new] = -1.0
                rows.append(row)
                offsets.append(-(slope * x_center + intercept))

            # y <= s x + t  <=>  -s A_i alpha + y <= s a0_i + t
            for slope, intercept in relaxation.upper:
                row = torch.zeros(num_variables + num_new, dtype=dtype)
                row[:num_variables] = -slope * x_generators
                row[num_variables + idx_new] = 1.0
                rows.append(row)
                offsets.append(slope * x_center + intercept)

            lb_new[idx_new] = relaxation.output_lb
            ub_new[idx_new] = relaxation.output_ub

            a0[0, i] = 0.0
            A[:, i] = 0.0
            A_new[idx_new, i] = 1.0

        constraints = star.constraints.extend(
            num_new, torch.stack(rows, 0), torch.tensor(offsets, dtype=dtype), lb_new, ub_new)

        return Star(a0, torch.cat([A, A_new], 0), constraints)

    def reach_star_approx(self, star, solver=None):
        star = _as_star(star)
        bounds = self.get_neuron_bounds(star, use_lp=True, solver=solver)
        if bounds is None:
            return None
        return self.approximate_star(star, *bounds)

    def reach_star_approx_fast(self, star, solver=None):
        star = _as_star(star)
        bounds = self.get_neuron_bounds(star, use_lp=False, solver=solver)
        if bounds is None:
            return None
        return self.approximate_star(star, *bounds)

    def reach_zono_approx(self, z, solver=None):
        if isinstance(z, Star):
            z = z.get_zonotope(solver)
            if z is None:
                return None
        elif isinstance(z, Box):
            z = z.to_zonotope()

        lb, ub = z.get_bounds()
        dtype = z.a0.dtype

        relaxations = [self.zono_relaxation(lb[i].item(), ub[i].item()) for i in range(z.num_dimensions)]
        lambdas = torch.tensor([r[0] for r in relaxations], dtype=dtype)
        mu_lower = torch.tensor([r[1] for r in relaxations], dtype=dtype)
        mu_upper = torch.tensor([r[2] for r in relaxations], dtype=dtype)

        a0 = z.a0 * lambdas + (mu_lower + mu_upper) / 2.0
        A = z.A * lambdas

        # New error terms for the neurons with a nonzero offset range
        radius = (mu_upper - mu_lower) / 2.0
        A_ext = torch.diag(radius)
        A_ext = A_ext[radius > 0, :]

        return Zonotope(a0, torch.cat((A, A_ext), 0))

    def split_neuron(self, star, idx_neuron, solver=None):
        bounds = star.get_range(idx_neuron, solver)
        if bounds is None:
            return []

        l, u = bounds
        pieces = self.overlapping_pieces(l, u)
        if len(pieces) == 1:
            _, _, slope, intercept = pieces[0]
            return [star.scale_dimensions([idx_neuron], slope, intercept)]

        e = torch.zeros(star.num_dimensions, dtype=star.a0.dtype)
        e[idx_neuron] = 1.0

        stars = []
        for lo, hi, slope, intercept in pieces:
            s = star
            if lo is not None and l < lo:
                s = s.intersect_halfspace(-e, -lo)
            if hi is not None and u > hi:
                s = s.intersect_halfspace(e, hi)
            stars.append(s.scale_dimensions([idx_neuron], slope, intercept))

        return stars

    def widen(self, stars, indices, use_lp=True, solver=None):
        stars_new = []
        for s in stars:
            bounds = self.get_neuron_bounds(s, use_lp, solver, indices)
            if bounds is None:
                continue
            stars_new.append(self.approximate_star(s, bounds[0], bounds[1], indices))
        return stars_new

    def reach_exact_single(self, star, solver=None, max_stars=None, deadline=None):
        star = _as_star(star)

        if star.is_empty(solver):
            return [], True

        bounds = star.estimate_bounds(solver)
        if bounds is None:
            return [], True
        lb, ub = bounds

        # Neurons that are stable on the estimate are substituted once
        splits = []
        a0 = star.a0.clone()
        A = star.A.clone()
        for i in range(star.num_dimensions):
            pieces = self.overlapping_pieces(lb[i].item(), ub[i].item())
            if len(pieces) == 1:
                _, _, slope, intercept = pieces[0]
                a0[0, i] = slope * a0[0, i] + intercept
                A[:, i] = slope * A[:, i]
            else:
                splits.append(i)

        stars = [Star(a0, A, star.constraints)]

        for idx_split, i in enumerate(splits):
            if deadline is not None and time() > deadline:
                logger.warning('Timeout reached, over-approximating {} pending neurons on {} stars'.format(
                    len(splits) - idx_split, len(stars)))
                return self.widen(stars, splits[idx_split:], use_lp=False, solver=solver), False

            if max_stars is not None and len(stars) >= max_stars:
                logger.warning('Reached {} stars, over-approximating {} pending neurons'.format(
                    len(stars), len(splits) - idx_split))
                return self.widen(stars, splits[idx_split:], use_lp=True, solver=solver), False

            stars_new = []
            for s in stars:
                stars_new.extend(self.split_neuron(s, i, solver))
            stars = stars_new

        logger.info('{}: {} ambiguous neurons, {} output stars'.format(
            self.name, len(splits), len(stars)))

        return stars, True

    def reach_exact(self, stars, solver=None, n_jobs=None, max_stars=None, deadline=None,
                    return_exactness=False):
        if not self.supports_exact:
            raise NotImplementedError('Exact reachability is not available for {}'.format(self.name))

        if not isinstance(stars, (list, tuple)):
            stars = [stars]
        if n_jobs is None:
            n_jobs = config.config.n_jobs[0]
        if max_stars is None:
            max_stars = config.config.max_stars[0]

        if n_jobs == 1 or len(stars) <= 1:
            results = [self.reach_exact_single(s, solver, max_stars, deadline) for s in stars]
        else:
            results = Parallel(n_jobs=n_jobs, require='sharedmem')(
                delayed(self.reach_exact_single)(s, solver, max_stars, deadline) for s in stars)

        output_stars = [s for stars_new, _ in results for s in stars_new]
        isExact = all(exact for _, exact in results)

        if return_exactness:
            return output_stars, isExact
        return output_stars


class PosLin(ActivationTransformer):
    name = 'poslin'
    pieces = (
        (None, 0.0, 0.0, 0.0),
        (0.0, None, 1.0, 0.0),
    )

    def evaluate(self, x):
        return torch.relu(to_tensor(x))

    def relaxation(self, l, u):
        lam = u / (u - l)
        return Relaxation([(0.0, 0.0), (1.0, 0.0)], [(lam, -lam * l)], 0.0, u)


class SatLin(ActivationTransformer):
    name = 'satlin'
    pieces = (
        (None, 0.0, 0.0, 0.0),
        (0.0, 1.0, 1.0, 0.0),
        (1.0, None, 0.0, 1.0),
    )

    def evaluate(self, x):
        return torch.clamp(to_tensor(x), 0.0, 1.0)

    def relaxation(self, l, u):
        if l < 0 and u <= 1:
            lam = u / (u - l)
            return Relaxation([(0.0, 0.0), (1.0, 0.0)], [(lam, -lam * l)], 0.0, u)

        if l >= 0:
            # 0 <= l < 1 < u
            lam = (1 - l) / (u - l)
            return Relaxation([(lam, l - lam * l)], [(1.0, 0.0), (0.0, 1.0)], l, 1.0)

        # l < 0 and u > 1
        return Relaxation([(0.0, 0.0), (1.0 / u, 0.0)],
                          [(1.0 / (1 - l), -l / (1 - l)), (0.0, 1.0)], 0.0, 1.0)


class SShapedActivation(ActivationTransformer):
    """Smooth sigmoid-like function, convex below 0 and concave above."""

    supports_exact = False

    @abstractmethod
    def derivative(self, x):
        pass

    def _df(self, x):
        return self.derivative(torch.tensor(float(x), dtype=config.config.dtype[0])).item()

    def stable_piece(self, l, u):
        if l == u:
            return 0.0, self._f(l)
        return None

    def relaxation(self, l, u):
        fl, fu = self._f(l), self._f(u)
        dl, du = self._df(l), self._df(u)
        chord = (fu - fl) / (u - l)

        if u <= 0:
            lower = [(dl, fl - dl * l), (du, fu - du * u)]
            upper = [(chord, fl - chord * l)]
        elif l >= 0:
            lower = [(chord, fl - chord * l)]
            upper = [(dl, fl - dl * l), (du, fu - du * u)]
        else:
            lam = min(dl, du)
            lower = [(lam, fl - lam * l)]
            upper = [(lam, fu - lam * u)]

        return Relaxation(lower, upper, fl, fu)

    def zono_relaxation(self, l, u):
        if l == u:
            return 0.0, self._f(l), self._f(l)

        # f - lam * x is monotone on [l, u] for the smaller end slope
        lam = min(self._df(l), self._df(u))
        return lam, self._f(l) - lam * l, self._f(u) - lam * u


class LogSig(SShapedActivation):
    name = 'logsig'

    def evaluate(self, x):
        return torch.sigmoid(to_tensor(x))

    def derivative(self, x):
        s = torch.sigmoid(to_tensor(x))
        return s * (1 - s)


class TanSig(SShapedActivation):
    name = 'tansig'

    def evaluate(self, x):
        return torch.tanh(to_tensor(x))

    def derivative(self, x):
        return 1 - torch.tanh(to_tensor(x)) ** 2


ACTIVATIONS = {
    'poslin': PosLin,
    'relu': PosLin,
    'satlin': SatLin,
    'logsig': LogSig,
    'sigmoid': LogSig,
    'tansig': TanSig,
    'tanh': TanSig,
}


def get_activation(name):
    if name not in ACTIVATIONS:
        raise ValueError('Unknown activation: {}. Choose one of {}'.format(name, list(ACTIVATIONS.keys())))
    return ACTIVATIONS[name]()
