import logging

import torch
import torch.nn.functional as F
from joblib import Parallel, delayed

import config
from utils import to_tensor, pair, padding4
from constraints import LinearConstraints
from relaxations import Box, Star
from exceptions import DimensionError, ShapeError, ConstraintMismatchError

logger = logging.getLogger()


def feature_map_size(input_size, filter_size, stride=1, dilation=1):
    size = (input_size - (filter_size - 1) * dilation - 1) // stride + 1

    if size < 1:
        raise DimensionError('Filter of size {} with dilation {} does not fit an input of size {}'.format(
            filter_size, dilation, input_size))
    return size


def compute_feature_map(input, filter, stride=1, dilation=1):
    """
    Cross-correlation of an (h, w) matrix, or of a batch of matrices of shape
    (b, h, w), with a single (fh, fw) filter. The input is expected to be
    padded already.
    """
    x = to_tensor(input)
    W = to_tensor(filter)
    stride = pair(stride)
    dilation = pair(dilation)

    if W.dim() != 2:
        raise DimensionError('Filter must be a matrix, got shape {}'.format(tuple(W.shape)))

    isSingleMatrix = x.dim() == 2
    if isSingleMatrix:
        x = x.unsqueeze(0)
    if x.dim() != 3:
        raise DimensionError('Input must be a matrix or a batch of matrices, got shape {}'.format(
            tuple(x.shape)))

    # Raises for filters that do not fit
    feature_map_size(x.shape[1], W.shape[0], stride[0], dilation[0])
    feature_map_size(x.shape[2], W.shape[1], stride[1], dilation[1])

    y = F.conv2d(x.unsqueeze(1), W.view(1, 1, W.shape[0], W.shape[1]),
                 stride=stride, dilation=dilation).squeeze(1)

    if isSingleMatrix:
        return y[0]
    return y


class Star2D:
    """
    Star over an (h, w) matrix: V[0] is the center, V[1:] are the basis
    matrices of the free variables of constraints.
    """

    def __init__(self, V, constraints):
        if isinstance(V, (list, tuple)):
            V = [to_tensor(v) for v in V]
            shapes = set(tuple(v.shape) for v in V)
            if len(shapes) != 1:
                raise DimensionError('Basis matrices of different shapes: {}'.format(sorted(shapes)))
            V = torch.stack(V, 0)
        else:
            V = to_tensor(V)

        if V.dim() != 3 or V.shape[0] < 1:
            raise DimensionError('Basis must have shape (k+1, h, w), got {}'.format(tuple(V.shape)))

        if isinstance(constraints, (tuple, list)):
            constraints = LinearConstraints(*constraints)

        if V.shape[0] != constraints.num_variables + 1:
            raise DimensionError('Inconsistency between {} basis matrices and constraints '
                                 'over {} variables'.format(V.shape[0], constraints.num_variables))

        self._V = V
        self._constraints = constraints

    @classmethod
    def from_star(cls, star, height, width):
        if star.num_dimensions != height * width:
            raise ShapeError('Star of dimension {} cannot be reshaped to {}x{}'.format(
                star.num_dimensions, height, width))

        V = torch.cat([star.a0, star.A], 0).reshape(star.num_variables + 1, height, width)
        return cls(V, star.constraints)

    @property
    def V(self):
        return self._V

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
    def center(self):
        return self._V[0]

    @property
    def height(self):
        return self._V.shape[1]

    @property
    def width(self):
        return self._V.shape[2]

    @property
    def dim(self):
        return self.height, self.width

    @property
    def num_variables(self):
        return self._V.shape[0] - 1

    def __repr__(self):
        return 'Star2D(dim={}, num_variables={})'.format(self.dim, self.num_variables)

    def to_star(self):
        num_pixels = self.height * self.width
        return Star(self.V[0].reshape(1, num_pixels),
                    self.V[1:].reshape(self.num_variables, num_pixels),
                    self.constraints)

    def sum(self, other):
        if self.dim != other.dim:
            raise DimensionError('Inconsistent dimensions between input sets: {} and {}'.format(
                self.dim, other.dim))

        if self.num_variables != other.num_variables:
            raise ConstraintMismatchError('Inconsistent number of predicate variables: {} and {}'.format(
                self.num_variables, other.num_variables))

        if not self.constraints.is_close(other.constraints):
            raise ConstraintMismatchError('Inconsistent predicate constraints between input sets')

        return Star2D(self.V + other.V, self.constraints)

    def zero_padding(self, top=0, bottom=0, left=0, right=0):
        return Star2D(F.pad(self.V, (left, right, top, bottom)), self.constraints)

    def translate(self, offset):
        V = self.V.clone()
        V[0] = V[0] + to_tensor(offset)
        return Star2D(V, self.constraints)

    def map_basis(self, func):
        return Star2D(func(self.V), self.constraints)

    def estimate_bounds(self, solver=None):
        bounds = self.to_star().estimate_bounds(solver)
        if bounds is None:
            return None
        return bounds[0].view(self.dim), bounds[1].view(self.dim)


class ImageStar:
    """
    Multi-channel image set: one Star2D per channel, all over the same free
    variables, with an optional box representation IM + [LB, UB] of shape
    (height, width, num_channels).
    """

    def __init__(self, star2ds, IM=None, LB=None, UB=None):
        star2ds = list(star2ds)

        if star2ds:
            dims = set(s.dim for s in star2ds)
            if len(dims) != 1:
                raise DimensionError('Channels of different sizes: {}'.format(sorted(dims)))
            height, width = star2ds[0].dim
        else:
            height, width = 0, 0

        box = [IM, LB, UB]
        if any(x is not None for x in box):
            if any(x is None for x in box):
                raise ValueError('Box representation needs IM, LB and UB')

            box = [to_tensor(x) for x in box]
            box = [x.unsqueeze(-1) if x.dim() == 2 else x for x in box]
            for x in box:
                if tuple(x.shape) != (height, width, len(star2ds)):
                    raise DimensionError('Box representation of shape {} for an image of shape {}'.format(
                        tuple(x.shape), (height, width, len(star2ds))))
            IM, LB, UB = box

        self._star2ds = star2ds
        self._height = height
        self._width = width
        self._IM = IM
        self._LB = LB
        self._UB = UB

    @classmethod
    def from_box_bounds(cls, IM, LB, UB):
        IM = to_tensor(IM)
        LB = to_tensor(LB)
        UB = to_tensor(UB)

        if IM.shape != LB.shape or IM.shape != UB.shape:
            raise DimensionError('Inconsistency between center image and attack bound matrices: '
                                 '{}, {}, {}'.format(tuple(IM.shape), tuple(LB.shape), tuple(UB.shape)))

        if IM.dim() == 2:
            IM, LB, UB = IM.unsqueeze(-1), LB.unsqueeze(-1), UB.unsqueeze(-1)
        elif IM.dim() != 3:
            raise DimensionError('Box images must be (h, w) or (h, w, c), got {}'.format(tuple(IM.shape)))

        height, width, num_channels = IM.shape

        # One box over all channels, so every channel shares the free variables
        lb = (IM + LB).permute(2, 0, 1).reshape(-1)
        ub = (IM + UB).permute(2, 0, 1).reshape(-1)
        image = cls.from_star(Box(lb, ub).to_star(), num_channels, height, width)

        return cls(image.star2ds, IM, LB, UB)

    @classmethod
    def from_per_channel_sets(cls, star2ds):
        return cls(star2ds)

    @classmethod
    def from_flattened(cls, stars, height, width):
        if height < 1 or width < 1:
            raise ValueError('Invalid image size {}x{}'.format(height, width))
        return cls([Star2D.from_star(s, height, width) for s in stars])

    @classmethod
    def from_star(cls, star, num_channels, height, width):
        if star.num_dimensions != num_channels * height * width:
            raise ShapeError('Star of dimension {} cannot be reshaped to {}x{}x{}'.format(
                star.num_dimensions, num_channels, height, width))

        V = torch.cat([star.a0, star.A], 0).reshape(star.num_variables + 1, num_channels, height, width)
        return cls([Star2D(V[:, i].contiguous(), star.constraints) for i in range(num_channels)])

    @classmethod
    def empty(cls):
        return cls([])

    @property
    def star2ds(self):
        return list(self._star2ds)

    @property
    def num_channels(self):
        return len(self._star2ds)

    @property
    def height(self):
        return self._height

    @property
    def width(self):
        return self._width

    @property
    def shape(self):
        return self.num_channels, self.height, self.width

    @property
    def num_variables(self):
        return self._star2ds[0].num_variables if self._star2ds else 0

    @property
    def IM(self):
        return self._IM

    @property
    def LB(self):
        return self._LB

    @property
    def UB(self):
        return self._UB

    @property
    def is_empty(self):
        return not self._star2ds

    @property
    def has_box_representation(self):
        return self._IM is not None

    def __repr__(self):
        return 'ImageStar(shape={}, num_variables={})'.format(self.shape, self.num_variables)

    def to_stars(self):
        return [s.to_star() for s in self._star2ds]

    def to_star(self):
        if self.is_empty:
            raise ValueError('The image star is empty')

        constraints = self._star2ds[0].constraints
        for s in self._star2ds[1:]:
            if not s.constraints.is_close(constraints):
                raise ConstraintMismatchError('Channels do not share the predicate constraints')

        V = torch.stack([s.V for s in self._star2ds], 1)
        V = V.reshape(V.shape[0], -1)
        return Star(V[0:1], V[1:], constraints)

    def extract_channel(self, index):
        if self.is_empty:
            raise ValueError('The image star is empty')
        if not 0 <= index < self.num_channels:
            raise IndexError('Channel index {} out of range for {} channels'.format(
                index, self.num_channels))

        if not self.has_box_representation:
            return ImageStar([self._star2ds[index]])

        channel = slice(index, index + 1)
        return ImageStar([self._star2ds[index]],
                         self.IM[:, :, channel], self.LB[:, :, channel], self.UB[:, :, channel])

    def zero_padding(self, top=0, bottom=0, left=0, right=0):
        if min(top, bottom, left, right) < 0:
            raise ValueError('Invalid padding size ({}, {}, {}, {})'.format(top, bottom, left, right))
        if self.is_empty:
            raise ValueError('The image star is empty')

        star2ds = [s.zero_padding(top, bottom, left, right) for s in self._star2ds]
        if not self.has_box_representation:
            return ImageStar(star2ds)

        def pad(X):
            return F.pad(X.permute(2, 0, 1), (left, right, top, bottom)).permute(1, 2, 0)

        return ImageStar(star2ds, pad(self.IM), pad(self.LB), pad(self.UB))

    def convolve(self, filters, padding=0, stride=1, dilation=1, bias=None, n_jobs=None):
        if self.is_empty:
            raise ValueError('The image star is empty')

        filters = to_tensor(filters)
        if filters.dim() == 2:
            filters = filters.view(1, 1, filters.shape[0], filters.shape[1])
        elif filters.dim() == 3:
            filters = filters.unsqueeze(0)
        elif filters.dim() != 4:
            raise DimensionError('Filters must have shape (cout, cin, fh, fw), got {}'.format(
                tuple(filters.shape)))

        num_filters = filters.shape[0]
        if filters.shape[1] != self.num_channels:
            raise DimensionError('Inconsistency between filters with {} input channels and '
                                 'an image star with {} channels'.format(filters.shape[1], self.num_channels))

        if bias is not None:
            bias = to_tensor(bias).reshape(-1)
            if bias.numel() != num_filters:
                raise DimensionError('{} bias entries for {} filters'.format(bias.numel(), num_filters))

        if n_jobs is None:
            n_jobs = config.config.n_jobs[0]

        top, bottom, left, right = padding4(padding)
        # Convolution mixes pixels, so the box representation is dropped
        star2ds = self.zero_padding(top, bottom, left, right).star2ds

        def convolve_channel(idx_filter):
            channel = None
            for idx_channel, s in enumerate(star2ds):
                W = filters[idx_filter, idx_channel]
                s_new = s.map_basis(lambda V: compute_feature_map(V, W, stride, dilation))
                channel = s_new if channel is None else channel.sum(s_new)

            if bias is not None:
                channel = channel.translate(bias[idx_filter])
            return channel

        if n_jobs == 1 or num_filters == 1:
            channels = [convolve_channel(idx_filter) for idx_filter in range(num_filters)]
        else:
            channels = Parallel(n_jobs=n_jobs, require='sharedmem')(
                delayed(convolve_channel)(idx_filter) for idx_filter in range(num_filters))

        return ImageStar(channels)

    def average_pooling(self, kernel_size, stride=None, padding=0, ceil_mode=False,
                        count_include_pad=True):
        if self.is_empty:
            raise ValueError('The image star is empty')

        kernel_size = pair(kernel_size)
        stride = kernel_size if stride is None else pair(stride)
        padding = pair(padding)

        def pool(V):
            return F.avg_pool2d(V.unsqueeze(1), kernel_size, stride, padding,
                                ceil_mode, count_include_pad).squeeze(1)

        return ImageStar([s.map_basis(pool) for s in self._star2ds])

    def estimate_bounds(self, solver=None):
        if self.is_empty:
            raise ValueError('The image star is empty')

        if self.has_box_representation:
            return self.IM + self.LB, self.IM + self.UB

        lower, upper = [], []
        for s in self._star2ds:
            bounds = s.estimate_bounds(solver)
            if bounds is None:
                return None
            lower.append(bounds[0])
            upper.append(bounds[1])

        return torch.stack(lower, -1), torch.stack(upper, -1)
