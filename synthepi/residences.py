"""Block populations and residences.

Implements the first half of the generation pipeline:
  - gen_pop_blocks:  total population → non-negative integer block matrix
  - gen_res_blocks:  block populations → exact-sum residence-size tables
  - gen_residences:  residence tables → concrete residences with positions
                     and contiguous member ranges

Residence allocation per block (population n, size weights p_j, j = 1..J):
  m   = n / Σ_j j p_j                 (expected residences, left fractional)
  m_j = floor(m p_j)                  (provisional count per size)
  then, while residents remain, add one residence of a size drawn from the
  weights restricted to sizes ≤ remaining. Each extra residence holds at
  least one person, so the loop ends with Σ_j j m_j == n exactly.

Draw order (scenario stream):
  1. one integer per visited block (row-major) while the running total
     is below N, plus one block index if a shortfall remains;
  2. one weighted draw per extra residence, blocks in row-major order;
  3. one sample-without-replacement of sub-grid cells per non-empty block.
"""

from __future__ import annotations

import logging
import math
from typing import Sequence, Tuple

import numpy as np

from synthepi.config import ConfigurationError, check_residence_weights
from synthepi.types import InvariantViolation, Residences

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# BLOCK POPULATIONS
# ═══════════════════════════════════════════════════════════════════════

def gen_pop_blocks(
    rng: np.random.Generator,
    num_population: int,
    region_size: Tuple[int, int],
) -> np.ndarray:
    """Randomly distribute a population over a rectangle of square blocks.

    Each block (row-major) receives a count drawn uniformly from
    [1, 2 × mean-per-block] while the running total is below N, capped at
    the shortfall. Any remaining shortfall goes to one random block.

    Args:
        rng: Scenario random generator.
        num_population: Total population N (>= 0).
        region_size: (rows, cols) of the block grid.

    Returns:
        (rows, cols) int64 matrix, non-negative, summing exactly to N.
    """
    rows, cols = region_size
    if rows < 1 or cols < 1:
        raise ConfigurationError(f"region_size must be positive, got {region_size}")
    if num_population < 0:
        raise ConfigurationError(f"num_population must be >= 0, got {num_population}")

    n_blocks = rows * cols
    mean_per_block = num_population // n_blocks
    high = max(1, 2 * mean_per_block)

    blocks = np.zeros(n_blocks, dtype=np.int64)
    total = 0
    for k in range(n_blocks):
        if total < num_population:
            draw = int(rng.integers(1, high + 1))
            blocks[k] = min(num_population - total, draw)
            total += int(blocks[k])
    if total < num_population:
        k = int(rng.integers(n_blocks))
        blocks[k] += num_population - total

    return blocks.reshape(rows, cols)


# ═══════════════════════════════════════════════════════════════════════
# RESIDENCE-SIZE TABLES
# ═══════════════════════════════════════════════════════════════════════

def gen_res_blocks(
    rng: np.random.Generator,
    pop_blocks: np.ndarray,
    res_size_weights: Sequence[float],
) -> np.ndarray:
    """Number of residences of each size in each block.

    Args:
        rng: Scenario random generator.
        pop_blocks: (rows, cols) block populations.
        res_size_weights: Weights for residence sizes 1..J.

    Returns:
        (rows, cols, J) int64 array; entry [i, j, s] is the number of
        residences of size s+1 in block (i, j).

    Raises:
        ConfigurationError: On malformed weights or negative populations.
        InvariantViolation: If a block total does not match after allocation.
    """
    p = check_residence_weights(res_size_weights)
    pop_blocks = np.asarray(pop_blocks, dtype=np.int64)
    if pop_blocks.ndim != 2:
        raise ConfigurationError(
            f"pop_blocks must be a 2-D matrix, got shape {pop_blocks.shape}"
        )
    if np.any(pop_blocks < 0):
        raise ConfigurationError("pop_blocks must be non-negative")

    J = len(p)
    sizes = np.arange(1, J + 1)
    mean_size = float(np.dot(p, sizes))

    res_blocks = np.zeros(pop_blocks.shape + (J,), dtype=np.int64)
    for idx in np.ndindex(*pop_blocks.shape):
        n = int(pop_blocks[idx])
        counts = np.floor(n / mean_size * p).astype(np.int64)
        remaining = n - int(np.dot(counts, sizes))
        while remaining > 0:
            res_max_size = min(remaining, J)
            w = p[:res_max_size] / p[:res_max_size].sum()
            s = int(rng.choice(res_max_size, p=w))
            counts[s] += 1
            remaining -= s + 1
        res_blocks[idx] = counts

    allocated = (res_blocks * sizes).sum(axis=-1)
    discrepancy = int(np.abs(allocated - pop_blocks).sum())
    if discrepancy != 0:
        raise InvariantViolation(
            f"discrepancy of {discrepancy} individuals in the distribution "
            f"of the population within blocks"
        )
    logger.info(
        "population successfully distributed within %d blocks (%d residences)",
        pop_blocks.size, int(res_blocks.sum()),
    )
    return res_blocks


# ═══════════════════════════════════════════════════════════════════════
# CONCRETE RESIDENCES
# ═══════════════════════════════════════════════════════════════════════

def block_grid_num(num_residences: int) -> int:
    """Sub-grid size per axis for placing residences inside a block.

    2 × isqrt(r) cells per axis leaves room between residences:
    (2s)² ≥ (s+1)² > r for r ≥ 1, so every residence gets its own cell.
    """
    return 2 * math.isqrt(int(num_residences))


def gen_residences(
    rng: np.random.Generator,
    res_blocks: np.ndarray,
) -> Residences:
    """Instantiate residences with positions and member ranges.

    Blocks are visited in row-major order. Within a block, r residences are
    placed on distinct cells of a bgn × bgn sub-grid sampled without
    replacement, residences of smaller size first. Individuals are numbered
    contiguously in this generation order.

    Args:
        rng: Scenario random generator.
        res_blocks: (rows, cols, J) residence counts per size.

    Returns:
        Residences container.
    """
    res_blocks = np.asarray(res_blocks, dtype=np.int64)
    if res_blocks.ndim != 3:
        raise ConfigurationError(
            f"res_blocks must have shape (rows, cols, J), got {res_blocks.shape}"
        )
    rows, cols, J = res_blocks.shape
    sizes = np.arange(1, J + 1)
    block_res_counts = res_blocks.sum(axis=-1)
    num_residences = int(block_res_counts.sum())

    block = np.empty(num_residences, dtype=np.int64)
    x = np.empty(num_residences, dtype=np.float64)
    y = np.empty(num_residences, dtype=np.float64)
    num_residents = np.empty(num_residences, dtype=np.int64)

    res_index = 0
    for i in range(rows):
        for j in range(cols):
            r = int(block_res_counts[i, j])
            if r == 0:
                continue
            bgn = block_grid_num(r)
            cells = rng.choice(bgn * bgn, size=r, replace=False)
            a, b = np.divmod(cells, bgn)
            sl = slice(res_index, res_index + r)
            block[sl] = i * cols + j
            x[sl] = i + a / bgn
            y[sl] = j + b / bgn
            num_residents[sl] = np.repeat(sizes, res_blocks[i, j])
            res_index += r

    first_resident = np.zeros(num_residences, dtype=np.int64)
    if num_residences > 1:
        first_resident[1:] = np.cumsum(num_residents)[:-1]

    logger.info(
        "generated %d residences for %d individuals",
        num_residences, int(num_residents.sum()),
    )
    return Residences(
        block=block,
        x=x,
        y=y,
        num_residents=num_residents,
        first_resident=first_resident,
        block_res_counts=block_res_counts,
    )


def check_residences(residences: Residences, pop_blocks: np.ndarray) -> None:
    """Verify that residences partition 0..N-1 and match block populations.

    Raises:
        InvariantViolation: On any gap, overlap or per-block mismatch.
    """
    pop_blocks = np.asarray(pop_blocks, dtype=np.int64)
    if len(residences) > 0:
        expected_first = np.concatenate(
            ([0], np.cumsum(residences.num_residents)[:-1])
        )
        if not np.array_equal(residences.first_resident, expected_first):
            raise InvariantViolation("residence member ranges are not contiguous")
        if np.any(residences.num_residents < 1):
            raise InvariantViolation("empty residence generated")
    per_block = np.bincount(
        residences.block,
        weights=residences.num_residents,
        minlength=pop_blocks.size,
    ).astype(np.int64)
    if not np.array_equal(per_block, pop_blocks.ravel()):
        raise InvariantViolation("residents per block do not match block populations")
