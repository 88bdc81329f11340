"""
Data-parallel kernels on CSR arrays.

Every kernel processes one row, edge or element per ``prange`` iteration
and writes only to its own output slot, so one call is one parallel pass.
Consecutive passes are ordered by the caller.

Hamiltonian convention (per gauge component c, node i):

    (H x)_i = V_i x_i + sum_k w_ik (x_i - x_k)

i.e. weighted graph Laplacian plus diagonal potential.
"""

from __future__ import annotations
import numpy as np
from numba import jit, prange


# ===== Hamiltonian / Cayley operators =====

@jit(nopython=True, parallel=True, cache=True)
def hamiltonian_apply(row_offsets, col_indices, weights, potential,
                      x, gauge_dim, out):
    """out = H x for a node-major state with ``gauge_dim`` components."""
    n = row_offsets.shape[0] - 1
    for i in prange(n):
        start = row_offsets[i]
        end = row_offsets[i + 1]
        for c in range(gauge_dim):
            xi = x[i * gauge_dim + c]
            acc = potential[i] * xi
            for k in range(start, end):
                acc += weights[k] * (xi - x[col_indices[k] * gauge_dim + c])
            out[i * gauge_dim + c] = acc


@jit(nopython=True, parallel=True, cache=True)
def cayley_apply(row_offsets, col_indices, weights, potential,
                 x, alpha, sign, gauge_dim, out):
    """out = (I + sign*i*alpha*H) x. sign=+1 is the operator, -1 the RHS."""
    n = row_offsets.shape[0] - 1
    factor = 1j * alpha * sign
    for i in prange(n):
        start = row_offsets[i]
        end = row_offsets[i + 1]
        for c in range(gauge_dim):
            xi = x[i * gauge_dim + c]
            acc = potential[i] * xi
            for k in range(start, end):
                acc += weights[k] * (xi - x[col_indices[k] * gauge_dim + c])
            out[i * gauge_dim + c] = xi + factor * acc


@jit(nopython=True, parallel=True, cache=True)
def cayley_diagonal(row_offsets, weights, potential, alpha, gauge_dim, out):
    """Diagonal of (I + i*alpha*H): 1 + i*alpha*(V_i + d_i)."""
    n = row_offsets.shape[0] - 1
    for i in prange(n):
        d = 0.0
        for k in range(row_offsets[i], row_offsets[i + 1]):
            d += weights[k]
        val = 1.0 + 1j * alpha * (potential[i] + d)
        for c in range(gauge_dim):
            out[i * gauge_dim + c] = val


@jit(nopython=True, parallel=True, cache=True)
def weighted_degree(row_offsets, weights, out):
    """out[i] = sum of weights in row i."""
    n = row_offsets.shape[0] - 1
    for i in prange(n):
        d = 0.0
        for k in range(row_offsets[i], row_offsets[i + 1]):
            d += weights[k]
        out[i] = d


# ===== Stream compaction =====

@jit(nopython=True, parallel=True, cache=True)
def count_surviving(row_offsets, weights, threshold, counts):
    """Pass 1: counts[i] = number of entries in row i with w >= threshold."""
    n = row_offsets.shape[0] - 1
    for i in prange(n):
        c = 0
        for k in range(row_offsets[i], row_offsets[i + 1]):
            if weights[k] >= threshold:
                c += 1
        counts[i] = c


@jit(nopython=True, parallel=True, cache=True)
def scatter_surviving(row_offsets, col_indices, weights, threshold,
                      new_offsets, new_cols, new_weights):
    """Pass 2: copy surviving entries to their compacted slots, order kept."""
    n = row_offsets.shape[0] - 1
    for i in prange(n):
        dst = new_offsets[i]
        for k in range(row_offsets[i], row_offsets[i + 1]):
            if weights[k] >= threshold:
                new_cols[dst] = col_indices[k]
                new_weights[dst] = weights[k]
                dst += 1


@jit(nopython=True, parallel=True, cache=True)
def scatter_kept(row_offsets, col_indices, weights, keep,
                 new_offsets, new_cols, new_weights):
    """Like ``scatter_surviving`` but driven by a per-entry keep mask."""
    n = row_offsets.shape[0] - 1
    for i in prange(n):
        dst = new_offsets[i]
        for k in range(row_offsets[i], row_offsets[i + 1]):
            if keep[k]:
                new_cols[dst] = col_indices[k]
                new_weights[dst] = weights[k]
                dst += 1


@jit(nopython=True, parallel=True, cache=True)
def count_kept(row_offsets, keep, counts):
    n = row_offsets.shape[0] - 1
    for i in prange(n):
        c = 0
        for k in range(row_offsets[i], row_offsets[i + 1]):
            if keep[k]:
                c += 1
        counts[i] = c


# ===== Edge lookup =====

@jit(nopython=True, cache=True)
def find_entry(row_offsets, col_indices, i, j):
    """Binary search for column j in row i. Returns entry index or -1."""
    lo = row_offsets[i]
    hi = row_offsets[i + 1]
    while lo < hi:
        mid = (lo + hi) // 2
        c = col_indices[mid]
        if c == j:
            return mid
        elif c < j:
            lo = mid + 1
        else:
            hi = mid
    return -1


@jit(nopython=True, parallel=True, cache=True)
def edges_exist(row_offsets, col_indices, us, vs, out):
    """out[p] = True if edge (us[p], vs[p]) is present."""
    for p in prange(us.shape[0]):
        out[p] = find_entry(row_offsets, col_indices, us[p], vs[p]) >= 0


@jit(nopython=True, parallel=True, cache=True)
def mark_pair_removals(row_offsets, col_indices, pair_u, pair_v, keep, found):
    """
    Clear ``keep`` for both directed entries of each canonical pair.

    Pairs must be unique with pair_u < pair_v; each pair is owned by a
    single iteration, which is the only writer of its two entries.
    """
    for p in prange(pair_u.shape[0]):
        u = pair_u[p]
        v = pair_v[p]
        a = find_entry(row_offsets, col_indices, u, v)
        b = find_entry(row_offsets, col_indices, v, u)
        if a >= 0 and b >= 0:
            keep[a] = False
            keep[b] = False
            found[p] = True
        else:
            found[p] = False


@jit(nopython=True, parallel=True, cache=True)
def mirror_indices(row_offsets, col_indices, out):
    """out[k] = index of the reverse entry of k, or -1 if it is missing."""
    n = row_offsets.shape[0] - 1
    for i in prange(n):
        for k in range(row_offsets[i], row_offsets[i + 1]):
            out[k] = find_entry(row_offsets, col_indices, col_indices[k], i)


# ===== Health classification =====

# Element codes
CODE_OK = 0
CODE_NAN = 1
CODE_INF = 2
CODE_NEGATIVE = 3


@jit(nopython=True, parallel=True, cache=True)
def classify_real(values, inf_magnitude, check_negative, codes):
    for k in prange(values.shape[0]):
        x = values[k]
        if np.isnan(x):
            codes[k] = 1
        elif abs(x) > inf_magnitude:
            codes[k] = 2
        elif check_negative and x < 0.0:
            codes[k] = 3
        else:
            codes[k] = 0


@jit(nopython=True, parallel=True, cache=True)
def classify_complex(values, inf_magnitude, codes):
    for k in prange(values.shape[0]):
        re = values[k].real
        im = values[k].imag
        if np.isnan(re) or np.isnan(im):
            codes[k] = 1
        elif abs(re) > inf_magnitude or abs(im) > inf_magnitude:
            codes[k] = 2
        else:
            codes[k] = 0
