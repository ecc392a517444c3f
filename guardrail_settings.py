from __future__ import annotations

import base64
import dataclasses
import gzip
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

RETURN_DISTRIBUTIONS = ("normal", "lognormal")
RETURN_BASES = ("real", "nominal")


@dataclass(frozen=True)
class ShockSetting:
    """A forced real return for one plan year (sequence-of-returns stress)."""

    year: int
    real_return: float

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["ShockSetting"]:
        if not isinstance(data, dict):
            return None
        try:
            year = int(data.get("year", -1))
            real_return = float(data.get("real_return", 0.0))
        except (TypeError, ValueError):
            return None
        if year < 0:
            return None
        return cls(year=year, real_return=real_return)

    def to_serializable(self) -> Dict[str, Any]:
        return {"year": int(self.year), "real_return": float(self.real_return)}


@dataclass(frozen=True)
class SimulationConfig:
    num_trials: int = 10_000
    horizon_years: int = 30
    mean_return: float = 0.039
    return_volatility: float = 0.1089
    return_distribution: str = "normal"
    return_basis: str = "real"
    inflation_mean: float = 0.025
    inflation_volatility: float = 0.0
    target_risk: float = 0.15
    lower_guardrail_risk: float = 0.20
    upper_guardrail_risk: float = 0.05
    go_go_multiplier: float = 1.0
    go_go_start_year: int = 0
    go_go_years: int = 0
    spending_start_year: int = 0
    shocks: Tuple[ShockSetting, ...] = field(default_factory=tuple)
    stress_projections: bool = False
    adjustment_fraction: float = 1.0
    spending_search_ceiling: float = 0.30
    balance_search_multiple: float = 5.0
    solver_iterations: int = 30
    workers: int = 1
    shard_size: int = 10_000
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        # Shocks may arrive as a list; keep the frozen instance hashable
        if not isinstance(self.shocks, tuple):
            object.__setattr__(self, "shocks", tuple(self.shocks))

        if self.num_trials <= 0:
            raise ValueError(f"Number of trials must be positive, got {self.num_trials}")
        if self.horizon_years < 0:
            raise ValueError(f"Horizon cannot be negative, got {self.horizon_years} years")
        if self.return_volatility < 0:
            raise ValueError(f"Return volatility cannot be negative, got {self.return_volatility}")
        if self.inflation_volatility < 0:
            raise ValueError(f"Inflation volatility cannot be negative, got {self.inflation_volatility}")
        if self.return_distribution not in RETURN_DISTRIBUTIONS:
            raise ValueError(
                f"Return distribution must be one of {RETURN_DISTRIBUTIONS}, got {self.return_distribution!r}"
            )
        if self.return_basis not in RETURN_BASES:
            raise ValueError(f"Return basis must be one of {RETURN_BASES}, got {self.return_basis!r}")
        if self.inflation_mean <= -1.0:
            raise ValueError(f"Mean inflation must be above -100%, got {self.inflation_mean * 100:.0f}%")
        for name, value in (
            ("Target risk", self.target_risk),
            ("Lower guardrail risk", self.lower_guardrail_risk),
            ("Upper guardrail risk", self.upper_guardrail_risk),
        ):
            if not (0.0 <= value <= 1.0):
                raise ValueError(f"{name} must be between 0% and 100%, got {value * 100:.0f}%")
        if self.go_go_multiplier <= 0:
            raise ValueError(f"Go-go multiplier must be positive, got {self.go_go_multiplier}")
        if self.go_go_start_year < 0 or self.go_go_years < 0:
            raise ValueError(
                f"Go-go window cannot be negative, got start {self.go_go_start_year} "
                f"for {self.go_go_years} years"
            )
        if self.spending_start_year < 0:
            raise ValueError(f"Spending start year cannot be negative, got {self.spending_start_year}")
        if not (0.0 < self.adjustment_fraction <= 1.0):
            raise ValueError(
                f"Adjustment fraction must be in (0%, 100%], got {self.adjustment_fraction * 100:.0f}%"
            )
        if self.spending_search_ceiling <= 0:
            raise ValueError(f"Spending search ceiling must be positive, got {self.spending_search_ceiling}")
        if self.balance_search_multiple <= 0:
            raise ValueError(f"Balance search multiple must be positive, got {self.balance_search_multiple}")
        if self.solver_iterations <= 0:
            raise ValueError(f"Solver iterations must be positive, got {self.solver_iterations}")
        if self.workers < 1:
            raise ValueError(f"Worker count must be at least 1, got {self.workers}")
        if self.shard_size < 1:
            raise ValueError(f"Shard size must be at least 1, got {self.shard_size}")

        years = [shock.year for shock in self.shocks]
        if len(years) != len(set(years)):
            raise ValueError(f"Shock years must be unique, got {sorted(years)}")

    def replace(self, **overrides: Any) -> "SimulationConfig":
        """Return a copy with the given fields changed (e.g. a cheaper trial count)."""
        return dataclasses.replace(self, **overrides)

    def shock_for(self, year: int) -> Optional[float]:
        for shock in self.shocks:
            if shock.year == year:
                return float(shock.real_return)
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "num_trials": int(self.num_trials),
            "horizon_years": int(self.horizon_years),
            "mean_return": float(self.mean_return),
            "return_volatility": float(self.return_volatility),
            "return_distribution": self.return_distribution,
            "return_basis": self.return_basis,
            "inflation_mean": float(self.inflation_mean),
            "inflation_volatility": float(self.inflation_volatility),
            "target_risk": float(self.target_risk),
            "lower_guardrail_risk": float(self.lower_guardrail_risk),
            "upper_guardrail_risk": float(self.upper_guardrail_risk),
            "go_go_multiplier": float(self.go_go_multiplier),
            "go_go_start_year": int(self.go_go_start_year),
            "go_go_years": int(self.go_go_years),
            "spending_start_year": int(self.spending_start_year),
            "shocks": [shock.to_serializable() for shock in self.shocks],
            "stress_projections": bool(self.stress_projections),
            "adjustment_fraction": float(self.adjustment_fraction),
            "spending_search_ceiling": float(self.spending_search_ceiling),
            "balance_search_multiple": float(self.balance_search_multiple),
            "solver_iterations": int(self.solver_iterations),
            "workers": int(self.workers),
            "shard_size": int(self.shard_size),
            "seed": None if self.seed is None else int(self.seed),
        }

    def to_base64(self) -> str:
        payload = json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")
        compressed = gzip.compress(payload)
        encoded = base64.urlsafe_b64encode(compressed).decode("utf-8")
        return encoded.rstrip("=")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SimulationConfig":
        defaults = cls()
        shocks_data = [ShockSetting.from_dict(item) for item in data.get("shocks", [])]
        seed = data.get("seed", defaults.seed)

        try:
            return cls(
                num_trials=int(data.get("num_trials", defaults.num_trials)),
                horizon_years=int(data.get("horizon_years", defaults.horizon_years)),
                mean_return=float(data.get("mean_return", defaults.mean_return)),
                return_volatility=float(data.get("return_volatility", defaults.return_volatility)),
                return_distribution=str(data.get("return_distribution", defaults.return_distribution)),
                return_basis=str(data.get("return_basis", defaults.return_basis)),
                inflation_mean=float(data.get("inflation_mean", defaults.inflation_mean)),
                inflation_volatility=float(data.get("inflation_volatility", defaults.inflation_volatility)),
                target_risk=float(data.get("target_risk", defaults.target_risk)),
                lower_guardrail_risk=float(data.get("lower_guardrail_risk", defaults.lower_guardrail_risk)),
                upper_guardrail_risk=float(data.get("upper_guardrail_risk", defaults.upper_guardrail_risk)),
                go_go_multiplier=float(data.get("go_go_multiplier", defaults.go_go_multiplier)),
                go_go_start_year=int(data.get("go_go_start_year", defaults.go_go_start_year)),
                go_go_years=int(data.get("go_go_years", defaults.go_go_years)),
                spending_start_year=int(data.get("spending_start_year", defaults.spending_start_year)),
                shocks=tuple(shock for shock in shocks_data if shock is not None),
                stress_projections=bool(data.get("stress_projections", defaults.stress_projections)),
                adjustment_fraction=float(data.get("adjustment_fraction", defaults.adjustment_fraction)),
                spending_search_ceiling=float(
                    data.get("spending_search_ceiling", defaults.spending_search_ceiling)
                ),
                balance_search_multiple=float(
                    data.get("balance_search_multiple", defaults.balance_search_multiple)
                ),
                solver_iterations=int(data.get("solver_iterations", defaults.solver_iterations)),
                workers=int(data.get("workers", defaults.workers)),
                shard_size=int(data.get("shard_size", defaults.shard_size)),
                seed=None if seed is None else int(seed),
            )
        except (TypeError, ValueError) as exc:
            # Re-raise coercion failures with the same type validation uses
            raise ValueError(f"Invalid simulation configuration: {exc}") from exc

    @classmethod
    def from_base64(cls, payload: str) -> "SimulationConfig":
        padding = "=" * (-len(payload) % 4)
        try:
            decoded = base64.urlsafe_b64decode((payload + padding).encode("utf-8"))
        except Exception:
            raise ValueError("The configuration token is corrupted or invalid.")
        try:
            decompressed = gzip.decompress(decoded)
        except Exception:
            raise ValueError(
                "The configuration token could not be decompressed. "
                "It may be incomplete or corrupted."
            )
        try:
            data = json.loads(decompressed.decode("utf-8"))
        except Exception:
            raise ValueError("The configuration token contains invalid data.")
        if not isinstance(data, dict):
            raise ValueError(
                "The configuration token format is invalid. "
                "Expected a configuration object."
            )
        return cls.from_dict(data)
