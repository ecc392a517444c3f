from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Iterable, List, Optional, Sequence

import numpy as np


class IncomeSource:
    """
    One external income stream, expressed in today's dollars.

    Sources are evaluated for a batch of paths at once. `nominal_returns` and
    `inflation` are (num_paths, num_history_years) arrays indexed by absolute
    plan year, and must cover every year before the latest year requested.
    """

    path_dependent: ClassVar[bool] = False

    def amounts(self, years: np.ndarray, nominal_returns: np.ndarray, inflation: np.ndarray) -> np.ndarray:
        raise NotImplementedError


@dataclass(frozen=True)
class FixedIncome(IncomeSource):
    """A level real income with delayed onset and optional first-year proration."""

    amount: float
    start_year: int = 0
    end_year: Optional[int] = None
    first_year_fraction: float = 1.0
    label: str = ""

    def __post_init__(self) -> None:
        if self.start_year < 0:
            raise ValueError(f"Income start year cannot be negative, got {self.start_year}")
        if self.end_year is not None and self.end_year < self.start_year:
            raise ValueError(
                f"Income end year ({self.end_year}) cannot be before start year ({self.start_year})"
            )
        if not (0.0 <= self.first_year_fraction <= 1.0):
            raise ValueError(
                f"First-year fraction must be between 0% and 100%, got {self.first_year_fraction * 100:.0f}%"
            )

    def amount_for_year(self, year: int) -> float:
        if year < self.start_year:
            return 0.0
        if self.end_year is not None and year > self.end_year:
            return 0.0
        if year == self.start_year:
            return float(self.amount) * float(self.first_year_fraction)
        return float(self.amount)

    def amounts(self, years, nominal_returns, inflation):
        row = np.array([self.amount_for_year(int(y)) for y in years], dtype=np.float64)
        return np.broadcast_to(row, (nominal_returns.shape[0], len(row)))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["FixedIncome"]:
        if not isinstance(data, dict):
            return None
        try:
            start = int(data.get("start_year", 0))
            end_raw = data.get("end_year")
            end = int(end_raw) if end_raw is not None else None
            amount = float(data.get("amount", 0.0))
            fraction = float(data.get("first_year_fraction", 1.0))
        except (TypeError, ValueError):
            return None
        if start < 0 or (end is not None and end < start) or not (0.0 <= fraction <= 1.0):
            return None
        label_raw = data.get("label")
        label = str(label_raw).strip() if label_raw is not None else ""
        return cls(amount=amount, start_year=start, end_year=end, first_year_fraction=fraction, label=label)

    def to_serializable(self) -> Dict[str, Any]:
        return {
            "amount": float(self.amount),
            "start_year": int(self.start_year),
            "end_year": None if self.end_year is None else int(self.end_year),
            "first_year_fraction": float(self.first_year_fraction),
            "label": self.label,
        }


@dataclass(frozen=True)
class SteppedAnnuity(IncomeSource):
    """
    An annuity paying a fixed nominal amount with return-conditional step-ups.

    The first year pays `first_year_fraction` of the amount. Each later year the
    real value is carried forward by the step-up earned in the prior year
    (nominal return above `step_up_threshold`) and eroded by that year's inflation.
    """

    amount: float
    start_year: int = 0
    first_year_fraction: float = 0.75
    step_up_threshold: float = 0.07
    label: str = ""
    path_dependent: ClassVar[bool] = True

    def __post_init__(self) -> None:
        if self.start_year < 0:
            raise ValueError(f"Annuity start year cannot be negative, got {self.start_year}")
        if not (0.0 <= self.first_year_fraction <= 1.0):
            raise ValueError(
                f"First-year fraction must be between 0% and 100%, got {self.first_year_fraction * 100:.0f}%"
            )

    def amounts(self, years, nominal_returns, inflation):
        num_paths, num_history = nominal_returns.shape
        result = np.zeros((num_paths, len(years)), dtype=np.float64)
        start = int(self.start_year)

        growth = None
        if num_history > start:
            step_up = np.maximum(nominal_returns[:, start:] - self.step_up_threshold, 0.0)
            growth = np.cumprod((1.0 + step_up) / (1.0 + inflation[:, start:]), axis=1)

        for j, year in enumerate(years):
            year = int(year)
            if year < start:
                continue
            if year == start:
                result[:, j] = self.amount * self.first_year_fraction
                continue
            if growth is None or year - 1 - start >= growth.shape[1]:
                raise ValueError(f"Market history does not cover the years before {year}")
            result[:, j] = self.amount * growth[:, year - 1 - start]
        return result


class IncomeSchedule:
    """
    The sum of a household's external income sources.

    Evaluation is pure: the same year and the same path history always give the
    same income, whether inside a Monte Carlo trial or on the realized path.
    """

    def __init__(self, sources: Optional[Iterable[IncomeSource]] = None):
        self.sources: List[IncomeSource] = list(sources or [])

    @property
    def path_dependent(self) -> bool:
        return any(source.path_dependent for source in self.sources)

    def __bool__(self) -> bool:
        return bool(self.sources)

    def income_matrix(self, start_year: int, nominal_returns: np.ndarray, inflation: np.ndarray) -> np.ndarray:
        """Income for years start_year .. end of history, one row per path."""
        nominal_returns = np.atleast_2d(np.asarray(nominal_returns, dtype=np.float64))
        inflation = np.atleast_2d(np.asarray(inflation, dtype=np.float64))
        num_paths, num_history = nominal_returns.shape
        years = np.arange(int(start_year), num_history)

        total = np.zeros((num_paths, len(years)), dtype=np.float64)
        for source in self.sources:
            total += source.amounts(years, nominal_returns, inflation)
        return total

    def income_for(self, year: int, nominal_returns: Optional[Sequence[float]] = None,
                   inflation: Optional[Sequence[float]] = None,
                   fill_nominal_return: float = 0.0, fill_inflation: float = 0.0) -> float:
        """
        Income for a single path in one year.

        `nominal_returns` and `inflation` hold the path's realized values from
        year 0; years they don't cover are filled with the given defaults.
        """
        year = int(year)
        width = year + 1
        history_returns = np.full(width, fill_nominal_return, dtype=np.float64)
        history_inflation = np.full(width, fill_inflation, dtype=np.float64)
        if nominal_returns is not None:
            known = np.asarray(nominal_returns, dtype=np.float64)[:width]
            history_returns[:len(known)] = known
        if inflation is not None:
            known = np.asarray(inflation, dtype=np.float64)[:width]
            history_inflation[:len(known)] = known

        matrix = self.income_matrix(year, history_returns[None, :], history_inflation[None, :])
        return float(matrix[0, 0])
