"""SynthEpi: agent-based epidemic simulation on a synthetic population.

A discrete-time, individual-based stochastic model:
  - Synthetic population on a grid of blocks, grouped into residences
  - Optional clusters (schools, workplaces, ...) as secondary contact groups
  - Per-individual force of infection from infectious co-residents and
    co-members, with Gamma-distributed susceptibility and infectivity
  - SEIAR+D phases with scheduled look-ahead transitions
  - Dense phase history and per-step compartment summaries
"""

__version__ = "0.1.0"
