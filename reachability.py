import logging
from time import time

import torch
import torch.nn.functional as F
from joblib import Parallel, delayed
from tqdm import tqdm

import config
from utils import to_tensor, pair, TimeLogger
from relaxations import Box, Zonotope, Star
from image_star import ImageStar, feature_map_size
from activations import PosLin, SatLin, LogSig, TanSig
from constraints import get_lp_solver
from exceptions import ReachabilityError, DimensionError

logger = logging.getLogger()

ACTIVATION_LAYERS = (torch.nn.ReLU, torch.nn.Hardtanh, torch.nn.Sigmoid, torch.nn.Tanh)


class Reach_Net:
    """
    Propagates input sets layer by layer through a feedforward network.
    relaxation_at_layers[i] holds the list of sets before layer i, the last
    entry the output sets.
    """

    methods = ['exact-star', 'approx-star', 'approx-star-fast', 'approx-zono']

    def __init__(self, net, method=None, lp_solver=None, n_jobs=None, max_stars=None,
                 timeout=None, verbosity=0):
        if method is None:
            method = config.config.reach_method[0]
        if method not in self.methods:
            raise ValueError('Unknown reachability method: {}. Choose one of {}'.format(
                method, self.methods))

        self.net = net
        self.layers = list(net.layers) if hasattr(net, 'layers') else list(net)

        self.method = method
        self.lp_solver = get_lp_solver(lp_solver)
        self.n_jobs = config.config.n_jobs[0] if n_jobs is None else n_jobs
        self.max_stars = config.config.max_stars[0] if max_stars is None else max_stars
        self.timeout = config.config.timeout[0] if timeout is None else timeout
        self.verbosity = verbosity

        self.relaxation_at_layers = []
        self.shapes = []
        self.failures = []
        self.widened_layers = set()
        self.deadline = None
        self.timelogger = TimeLogger()

    @property
    def widened(self):
        return bool(self.widened_layers)

    @property
    def is_exact(self):
        return self.method == 'exact-star' and not self.widened and not self.failures

    @property
    def shape(self):
        # (channels, height, width) of the current sets, None once flattened
        return self.shapes[-1]

    def reach(self, input_set):
        if isinstance(input_set, tuple) and len(input_set) == 2 \
                and isinstance(input_set[0], torch.Tensor):
            self.initialize_from_bounds(*input_set)
        else:
            self.initialize_from_set(input_set)

        self.forward_pass()
        return self.relaxation_at_layers[-1]

    def initialize_from_bounds(self, lower_bound, upper_bound):
        lower_bound = to_tensor(lower_bound)
        upper_bound = to_tensor(upper_bound)

        if lower_bound.shape != upper_bound.shape:
            raise DimensionError('Lower bound of shape {} and upper bound of shape {}'.format(
                tuple(lower_bound.shape), tuple(upper_bound.shape)))

        if lower_bound.dim() == 4 and lower_bound.shape[0] == 1:
            lower_bound = lower_bound[0]
            upper_bound = upper_bound[0]

        if lower_bound.dim() == 3 and self.method != 'approx-zono':
            # (c, h, w) -> (h, w, c) box representation
            lower_bound = lower_bound.permute(1, 2, 0)
            upper_bound = upper_bound.permute(1, 2, 0)
            IM = (lower_bound + upper_bound) / 2
            input_set = ImageStar.from_box_bounds(IM, lower_bound - IM, upper_bound - IM)
            self.initialize_from_set(input_set)

        elif lower_bound.dim() == 3:
            z = Box(lower_bound, upper_bound).to_zonotope()
            self.initialize_from_set(z, tuple(lower_bound.shape))

        else:
            b = Box(lower_bound.reshape(-1), upper_bound.reshape(-1))
            self.initialize_from_set(b)

    def initialize_from_set(self, input_set, shape=None):
        input_sets = list(input_set) if isinstance(input_set, (list, tuple)) else [input_set]

        sets = []
        for s in input_sets:
            if isinstance(s, ImageStar):
                shape = s.shape
                if self.method == 'approx-zono':
                    s = s.to_star().get_zonotope(self.lp_solver)
            elif isinstance(s, Box):
                s = s.to_zonotope() if self.method == 'approx-zono' else s.to_star()
            elif isinstance(s, Zonotope):
                s = s if self.method == 'approx-zono' else s.to_star()
            elif isinstance(s, Star):
                s = s.get_zonotope(self.lp_solver) if self.method == 'approx-zono' else s
            else:
                raise TypeError('Unsupported input set: {}'.format(type(s).__name__))

            if s is not None:
                sets.append(s)

        self.relaxation_at_layers = [sets]
        self.shapes = [shape]
        self.failures = []
        self.widened_layers = set()

    def truncate(self, layer=0):
        self.relaxation_at_layers = self.relaxation_at_layers[:layer + 1]
        self.shapes = self.shapes[:layer + 1]
        self.failures = [f for f in self.failures if f[0] < layer]
        self.widened_layers = set(i for i in self.widened_layers if i < layer)

    def forward_pass(self, start_layer=0):

        if start_layer < 0:
            start_layer += len(self.layers)

        self.truncate(start_layer)
        self.deadline = time() + self.timeout if self.timeout is not None else None

        disable_tqdm = self.verbosity < 2
        for idx_layer in tqdm(range(start_layer, len(self.layers)), disable=disable_tqdm):
            self.apply_layer(idx_layer)

        logger.debug('Layer timings:\n{}'.format(self.timelogger.print_summary()))

    def apply_layer(self, idx_layer):
        layer = self.layers[idx_layer]
        timer_name = '{}: {}'.format(idx_layer, layer.__class__.__name__)
        self.timelogger.start_timer(timer_name)

        if isinstance(layer, torch.nn.Linear):
            self.apply_linear_layer(idx_layer)
        elif isinstance(layer, torch.nn.Conv2d):
            self.apply_convolutional_layer(idx_layer)
        elif isinstance(layer, torch.nn.AvgPool2d):
            self.apply_pooling_layer(idx_layer)
        elif isinstance(layer, torch.nn.Flatten):
            self.apply_flatten_layer(idx_layer)
        elif isinstance(layer, ACTIVATION_LAYERS):
            self.apply_activation_layer(idx_layer)
        else:
            self.timelogger.stop_timer(timer_name)
            logger.error('Unknown layer: {}'.format(layer))
            raise NotImplementedError('Layer {} is not supported'.format(layer))

        self.timelogger.stop_timer(timer_name)
        logger.debug('Layer {} ({}): {} sets'.format(
            idx_layer, layer.__class__.__name__, len(self.relaxation_at_layers[-1])))

    def apply_to_set(self, idx_layer, idx_set, func, s):
        try:
            return func(s), None
        except ReachabilityError as err:
            logger.error('Layer {}, set {}: branch aborted: {}'.format(idx_layer, idx_set, err))
            return [], (idx_layer, idx_set, str(err))

    def map_sets(self, idx_layer, func, shape, parallel=False):
        sets = self.relaxation_at_layers[-1]

        if parallel and self.n_jobs != 1 and len(sets) > 1:
            results = Parallel(n_jobs=self.n_jobs, require='sharedmem')(
                delayed(self.apply_to_set)(idx_layer, idx_set, func, s) for idx_set, s in enumerate(sets))
        else:
            results = [self.apply_to_set(idx_layer, idx_set, func, s) for idx_set, s in enumerate(sets)]

        sets_new = []
        for result, failure in results:
            if failure is not None:
                self.failures.append(failure)
            if isinstance(result, list):
                sets_new.extend(result)
            elif result is not None:
                sets_new.append(result)

        self.relaxation_at_layers.append(sets_new)
        self.shapes.append(shape)

    def apply_linear_layer(self, idx_layer):
        layer = self.layers[idx_layer]
        W = to_tensor(layer.weight)
        b = to_tensor(layer.bias) if layer.bias is not None else None

        def linear(s):
            if isinstance(s, ImageStar):
                s = s.to_star()
            return s.affine_map(W, b)

        self.map_sets(idx_layer, linear, None)

    def apply_convolutional_layer(self, idx_layer):
        layer = self.layers[idx_layer]

        if isinstance(layer.padding, str) or layer.groups != 1:
            raise NotImplementedError('Only convolutions with groups=1 and numeric padding are supported')
        if layer.padding_mode != 'zeros':
            raise NotImplementedError('Padding mode {} is not supported'.format(layer.padding_mode))
        if self.shape is None:
            raise DimensionError('Convolution on flattened sets at layer {}'.format(idx_layer))

        W = to_tensor(layer.weight)
        b = to_tensor(layer.bias) if layer.bias is not None else None
        padding = pair(layer.padding)
        stride = pair(layer.stride)
        dilation = pair(layer.dilation)

        c, h, w = self.shape
        shape_new = (W.shape[0],
                     feature_map_size(h + 2 * padding[0], W.shape[2], stride[0], dilation[0]),
                     feature_map_size(w + 2 * padding[1], W.shape[3], stride[1], dilation[1]))

        def convolve(s):
            if isinstance(s, Zonotope):
                a0 = F.conv2d(s.a0.view(1, c, h, w), W, b, stride, padding, dilation)
                A = F.conv2d(s.A.view(s.num_epsilons, c, h, w), W, None, stride, padding, dilation)
                return Zonotope(a0.reshape(1, -1), A.reshape(s.num_epsilons, a0.numel()))

            if isinstance(s, Star):
                s = ImageStar.from_star(s, c, h, w)
            return s.convolve(W, padding, stride, dilation, b, self.n_jobs)

        self.map_sets(idx_layer, convolve, shape_new)

    def apply_pooling_layer(self, idx_layer):
        layer = self.layers[idx_layer]

        if self.shape is None:
            raise DimensionError('Pooling on flattened sets at layer {}'.format(idx_layer))
        if layer.divisor_override is not None:
            raise NotImplementedError('Average pooling with divisor_override is not supported')

        kernel_size = pair(layer.kernel_size)
        stride = kernel_size if layer.stride is None else pair(layer.stride)
        padding = pair(layer.padding)

        c, h, w = self.shape
        shape_new = tuple(F.avg_pool2d(torch.zeros((1, c, h, w)), kernel_size, stride, padding,
                                       layer.ceil_mode, layer.count_include_pad).shape[1:])

        def pool(s):
            if isinstance(s, Zonotope):
                a0 = F.avg_pool2d(s.a0.view(1, c, h, w), kernel_size, stride, padding,
                                  layer.ceil_mode, layer.count_include_pad)
                A = F.avg_pool2d(s.A.view(s.num_epsilons, c, h, w), kernel_size, stride, padding,
                                 layer.ceil_mode, layer.count_include_pad)
                return Zonotope(a0.reshape(1, -1), A.reshape(s.num_epsilons, a0.numel()))

            if isinstance(s, Star):
                s = ImageStar.from_star(s, c, h, w)
            return s.average_pooling(kernel_size, stride, padding, layer.ceil_mode,
                                     layer.count_include_pad)

        self.map_sets(idx_layer, pool, shape_new)

    def apply_flatten_layer(self, idx_layer):

        def flatten(s):
            if isinstance(s, ImageStar):
                return s.to_star()
            return s

        self.map_sets(idx_layer, flatten, None)

    def get_activation(self, layer):
        if isinstance(layer, torch.nn.ReLU):
            return PosLin()
        if isinstance(layer, torch.nn.Hardtanh):
            if layer.min_val != 0 or layer.max_val != 1:
                raise NotImplementedError('Only Hardtanh(0, 1) is supported, got Hardtanh({}, {})'.format(
                    layer.min_val, layer.max_val))
            return SatLin()
        if isinstance(layer, torch.nn.Sigmoid):
            return LogSig()
        if isinstance(layer, torch.nn.Tanh):
            return TanSig()

        raise NotImplementedError('Layer {} is not an activation'.format(layer))

    def apply_activation_layer(self, idx_layer):
        activation = self.get_activation(self.layers[idx_layer])
        shape = self.shape
        num_sets = len(self.relaxation_at_layers[-1])

        method = self.method
        if method == 'exact-star' and not activation.supports_exact:
            logger.info('Layer {}: {} has no exact transformer, using approx-star'.format(
                idx_layer, activation.name))
            self.widened_layers.add(idx_layer)
            method = 'approx-star'
        elif method == 'exact-star' and num_sets >= self.max_stars:
            logger.warning('Layer {}: {} incoming sets reach the budget of {}, using approx-star'.format(
                idx_layer, num_sets, self.max_stars))
            self.widened_layers.add(idx_layer)
            method = 'approx-star'

        def activate(s):
            isImage = isinstance(s, ImageStar)
            if isImage:
                s = s.to_star()

            if method == 'approx-zono':
                sets_new = [activation.reach_zono_approx(s, self.lp_solver)]
            elif method == 'exact-star':
                sets_new, isExact = activation.reach_exact(
                    [s], self.lp_solver, n_jobs=1, max_stars=self.max_stars,
                    deadline=self.deadline, return_exactness=True)
                if not isExact:
                    self.widened_layers.add(idx_layer)
            elif method == 'approx-star':
                sets_new = [activation.reach_star_approx(s, self.lp_solver)]
            else:
                sets_new = [activation.reach_star_approx_fast(s, self.lp_solver)]

            sets_new = [x for x in sets_new if x is not None]
            if isImage:
                sets_new = [ImageStar.from_star(x, *shape) for x in sets_new]
            return sets_new

        self.map_sets(idx_layer, activate, shape, parallel=method == 'exact-star')

        if method == 'exact-star':
            logger.info('Layer {}, {} sets split into {}'.format(
                idx_layer, num_sets, len(self.relaxation_at_layers[-1])))

    def get_output_bounds(self):
        lower_bounds, upper_bounds = [], []

        for s in self.relaxation_at_layers[-1]:
            if isinstance(s, ImageStar):
                s = s.to_star()

            if isinstance(s, Star):
                bounds = s.get_bounds(self.lp_solver)
            else:
                bounds = s.get_bounds()

            if bounds is None:
                continue
            lower_bounds.append(bounds[0])
            upper_bounds.append(bounds[1])

        if not lower_bounds:
            return None

        return torch.stack(lower_bounds, 0).min(0)[0], torch.stack(upper_bounds, 0).max(0)[0]

    def check_safety(self, H, g):
        isIntersecting = False

        for s in self.relaxation_at_layers[-1]:
            if isinstance(s, ImageStar):
                s = s.to_star()
            elif isinstance(s, (Box, Zonotope)):
                s = s.to_star()

            if s.intersect_halfspace(H, g, prune_empty=True, solver=self.lp_solver) is not None:
                isIntersecting = True
                break

        if not isIntersecting and not self.failures:
            return 'SAFE'
        if isIntersecting and self.is_exact:
            return 'UNSAFE'
        return 'UNKNOWN'
