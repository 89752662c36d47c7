import os
import logging
import logging.handlers
import datetime
from time import time

import numpy as np
import torch

import config


def to_tensor(x, dtype=None):
    if dtype is None:
        dtype = config.config.dtype[0]

    if isinstance(x, torch.Tensor):
        return x.detach().to(dtype)
    return torch.as_tensor(np.asarray(x), dtype=dtype)


def to_numpy(x):
    if isinstance(x, torch.Tensor):
        return x.detach().cpu().numpy().astype(np.float64)
    return np.asarray(x, dtype=np.float64)


def pair(x):
    if isinstance(x, (tuple, list)):
        if len(x) != 2:
            raise ValueError('Expected an int or a pair, got {}'.format(x))
        return int(x[0]), int(x[1])
    return int(x), int(x)


def padding4(padding):
    # (top, bottom, left, right)
    if isinstance(padding, (tuple, list)):
        if len(padding) == 4:
            return tuple(int(p) for p in padding)
        ph, pw = pair(padding)
        return ph, ph, pw, pw
    p = int(padding)
    return p, p, p, p


def positive_negative(A):
    return A.clamp(min=0), A.clamp(max=0)


class TimeLogger:

    def __init__(self):
        self.timers = {}

    def add_timers(self, names):
        if not isinstance(names, list):
            names = [names]

        for name in names:
            if name not in self.timers:
                self.timers[name] = Timer()

    def start_timer(self, name):
        self.add_timers(name)
        self.timers[name].start()

    def stop_timer(self, name):
        if name not in self.timers:
            raise KeyError('Unknown timer: {}'.format(name))
        self.timers[name].stop()

    def print_summary(self, names=None):
        if names is None:
            names = list(self.timers.keys())

        if not names:
            return ''

        print_strs = []
        longest_name_length = len(max(names, key=len))
        longest_name_length = int(1.5*longest_name_length) + 7

        for name in names:
            timer = self.timers[name]
            print_str = 'Timer {}:'.format(name).ljust(longest_name_length)
            print_str += 'Counts: {},'.format(timer.count).ljust(15)

            print_str += 'Total Time: {:.3f},   Average Time: {:.5f}'.format(
                timer.cumulative_time, timer.average_time)

            print_strs.append(print_str)

        return '\n'.join(print_strs)


class Timer:
    def __init__(self):
        self.cumulative_time = 0
        self.count = 0
        self.start_time = None
        self.average_time = 0

    def start(self):
        self.start_time = time()

    def stop(self):
        self.count += 1
        if self.start_time is not None:
            self.cumulative_time += (time() - self.start_time)
            self.start_time = None
            self.average_time = self.get_average()

    def get_average(self):
        return self.cumulative_time / self.count


def initialize_logger(log_dir='log/'):
    # Source: https://github.com/acschaefer/duallog/blob/master/duallog/duallog.py

    # Define the log rotation criteria.
    max_bytes = 1024**2
    backup_count = 100

    file_msg_format = '%(asctime)s %(levelname)-8s: %(message)s'
    console_msg_format = '%(message)s'

    file_name_format = '{year:04d}{month:02d}{day:02d}_'\
        '{hour:02d}{minute:02d}{second:02d}.txt'
    t = datetime.datetime.now()
    file_name = file_name_format.format(year=t.year, month=t.month, day=t.day,
                                        hour=t.hour, minute=t.minute, second=t.second)
    os.makedirs(log_dir, exist_ok=True)
    file_name = os.path.join(log_dir, file_name)

    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    # Set up logging to the logfile.
    file_handler = logging.handlers.RotatingFileHandler(
        filename=file_name, maxBytes=max_bytes, backupCount=backup_count)
    file_handler.setLevel(logging.DEBUG)
    file_formatter = logging.Formatter(file_msg_format)
    file_handler.setFormatter(file_formatter)
    logger.addHandler(file_handler)

    # Set up logging to the console.
    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(logging.INFO)
    stream_formatter = logging.Formatter(console_msg_format)
    stream_handler.setFormatter(stream_formatter)
    logger.addHandler(stream_handler)

    return logger


class Stream2Logger(object):
    # Source https://gist.github.com/Kerrigan29a/1c281e2fd6cf4b4de4f6

    def __init__(self, stream, logger, level):
        self._stream = stream
        self._logger = logger
        self._level = level
        self._buffer = []

    def write(self, message):
        self._buffer.append(message)
        if "\n" in message:
            self.flush()

    def flush(self):
        if self._buffer:
            message = "".join(self._buffer)
            if "\n" in message:
                self._logger.log(self._level, message.rstrip())
                self._buffer = []
            else:
                self._buffer = [message]
