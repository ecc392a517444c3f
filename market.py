from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

import numpy as np

from guardrail_settings import SimulationConfig

SeedLike = Union[None, int, np.random.SeedSequence, np.random.Generator]


def as_seed_sequence(seed: SeedLike) -> np.random.SeedSequence:
    """Normalise any accepted seed into a SeedSequence that can spawn independent streams."""
    if isinstance(seed, np.random.SeedSequence):
        return seed
    if isinstance(seed, np.random.Generator):
        return np.random.SeedSequence(int(seed.integers(0, 2**63 - 1)))
    return np.random.SeedSequence(seed)


def child_seed_sequences(seed: np.random.SeedSequence, count: int) -> List[np.random.SeedSequence]:
    """
    The first `count` children of `seed`, without advancing its spawn counter.

    SeedSequence.spawn() is stateful; deriving children by spawn key lets the
    same seed be reused for every estimate inside a solver.
    """
    return [
        np.random.SeedSequence(seed.entropy, spawn_key=tuple(seed.spawn_key) + (i,), pool_size=seed.pool_size)
        for i in range(int(count))
    ]


@dataclass(frozen=True)
class Scenario:
    real_return: float
    inflation: float

    @property
    def nominal_return(self) -> float:
        return (1.0 + self.real_return) * (1.0 + self.inflation) - 1.0


def draw_returns(z, mean: float, volatility: float, distribution: str):
    """
    Turn standard normal variates into annual returns.

    "normal" is additive (mean + vol * Z) and can fall below -100%.
    "lognormal" is variance corrected so the arithmetic mean stays at `mean`
    and a return can never reach -100%.
    """
    if distribution == "lognormal":
        return np.exp(mean - volatility * volatility / 2.0 + volatility * z) - 1.0
    return mean + volatility * z


class MarketScenarioSampler:
    """
    Draws yearly (real return, inflation) scenarios from the configured distributions.

    Real returns are what the portfolio earns. When the config describes nominal
    returns, the sampled nominal return is deflated by the same year's inflation.
    """

    def __init__(self, config: SimulationConfig, seed: SeedLike = None, honor_shocks: bool = True):
        self.config = config
        self.honor_shocks = honor_shocks
        if isinstance(seed, np.random.Generator):
            self.rng = seed
        else:
            self.rng = np.random.default_rng(as_seed_sequence(seed))

    def _inflation(self, size=None):
        cfg = self.config
        if cfg.inflation_volatility > 0:
            return cfg.inflation_mean + cfg.inflation_volatility * self.rng.standard_normal(size)
        if size is None:
            return float(cfg.inflation_mean)
        return np.full(size, cfg.inflation_mean, dtype=np.float64)

    def _to_real(self, returns, inflation):
        if self.config.return_basis == "nominal":
            return (1.0 + returns) / (1.0 + inflation) - 1.0
        return returns

    def sample(self, year: Optional[int] = None) -> Scenario:
        cfg = self.config
        z = self.rng.standard_normal()
        inflation = float(self._inflation())

        shock = cfg.shock_for(year) if (self.honor_shocks and year is not None) else None
        if shock is not None:
            return Scenario(real_return=shock, inflation=inflation)

        raw = float(draw_returns(z, cfg.mean_return, cfg.return_volatility, cfg.return_distribution))
        return Scenario(real_return=float(self._to_real(raw, inflation)), inflation=inflation)

    def sample_paths(self, num_paths: int, start_year: int, num_years: int) -> Tuple[np.ndarray, np.ndarray]:
        """Draw `num_paths` independent paths covering plan years start_year .. start_year + num_years - 1."""
        cfg = self.config
        shape = (int(num_paths), int(num_years))
        z = self.rng.standard_normal(shape)
        inflation = self._inflation(shape)

        real_returns = self._to_real(
            draw_returns(z, cfg.mean_return, cfg.return_volatility, cfg.return_distribution),
            inflation,
        )

        if self.honor_shocks:
            for shock in cfg.shocks:
                col = shock.year - start_year
                if 0 <= col < num_years:
                    real_returns[:, col] = shock.real_return

        return real_returns, inflation

    def expected_scenario(self) -> Scenario:
        """The scenario used when a path's history is unknown."""
        cfg = self.config
        if cfg.return_basis == "nominal":
            real = (1.0 + cfg.mean_return) / (1.0 + cfg.inflation_mean) - 1.0
        else:
            real = cfg.mean_return
        return Scenario(real_return=float(real), inflation=float(cfg.inflation_mean))
