import copy
import threading

import numpy as np
import pytest


class _Exchange:
    def __init__(self, size):
        self.size = size
        self.barrier = threading.Barrier(size)
        self.slots = [None] * size


class ThreadComm:
    """In-process communicator with the mpi4py lowercase collective API."""

    def __init__(self, exchange, rank):
        self._exchange = exchange
        self._rank = rank

    def Get_rank(self):
        return self._rank

    def Get_size(self):
        return self._exchange.size

    def _exchange_all(self, value):
        ex = self._exchange
        ex.slots[self._rank] = value
        ex.barrier.wait()
        out = list(ex.slots)
        ex.barrier.wait()
        return out

    def allgather(self, value):
        return [copy.deepcopy(v) for v in self._exchange_all(value)]

    def allreduce(self, value):
        parts = self.allgather(value)
        total = parts[0]
        for part in parts[1:]:
            total = total + part
        return total

    def alltoall(self, values):
        values = list(values)
        assert len(values) == self.Get_size()
        parts = self._exchange_all(values)
        return [copy.deepcopy(parts[src][self._rank]) for src in range(self.Get_size())]

    def bcast(self, value, root=0):
        return copy.deepcopy(self._exchange_all(value)[root])


def _run_spmd(size, fn, timeout=120.0):
    exchange = _Exchange(size)
    results = [None] * size
    errors = [None] * size

    def target(rank):
        try:
            results[rank] = fn(ThreadComm(exchange, rank))
        except BaseException as exc:  # re-raised in the main thread
            errors[rank] = exc
            exchange.barrier.abort()

    threads = [threading.Thread(target=target, args=(rank,)) for rank in range(size)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout)
        assert not t.is_alive(), "SPMD worker did not finish"
    for exc in errors:
        if exc is not None and not isinstance(exc, threading.BrokenBarrierError):
            raise exc
    for exc in errors:
        if exc is not None:
            raise exc
    return results


@pytest.fixture
def spmd():
    """Run ``fn(comm)`` on ``size`` threads and return the per-rank results."""
    return _run_spmd


@pytest.fixture
def tiny_lp():
    A = np.array([[1.0, 1.0]])
    b = np.array([1.0])
    c = np.array([1.0, 1.0])
    return A, b, c
