import sys
import logging

import torch

import utils


def init_logger(log_dir=None):
    global logger
    global stream

    if log_dir is None:
        log_dir = config.log_dir[0]

    logger = utils.initialize_logger(log_dir)
    stream = utils.Stream2Logger(sys.stderr, logger, logging.INFO)


class config:
    # Reachability options
    reach_method = (
        'approx-star', 'reachability method: exact-star, approx-star, approx-star-fast or approx-zono')
    max_stars = (
        10000, 'number of stars exact reachability may hold before pending branches are over-approximated')
    timeout = (
        None, 'time budget in seconds for one reachability computation, None for no limit')
    n_jobs = (1, 'number of parallel workers for exact splitting and convolution')

    # Linear programming
    lp_solver = ('gurobi', 'LP backend for bound and feasibility queries: gurobi or scipy')

    # Numerics
    dtype = (torch.float64, 'dtype of all set tensors')
    constraint_tolerance = (
        1E-4, 'largest norm difference for two constraint systems to count as identical')
    containment_tolerance = (1E-6, 'slack allowed when checking point containment')

    # Sampling
    num_samples = (100, 'number of points drawn when sampling a set')
    sample_iterations = (100, 'rounds of rejection sampling before giving up')

    # Logging
    log_dir = ('log/', 'directory for rotating log files')
