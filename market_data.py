import numpy as np
import pandas as pd


def annual_market_history(df, stock_pct=0.75, start_year=None, end_year=None):
    """
    January-to-January real portfolio returns and CPI inflation by year.

    `df` is a monthly frame in the layout of Shiller's `ie_data` sheet, with a
    `Date` column and the `Real Total Return Price`, `Real Total Bond Returns`
    and `CPI` series. Each row's return and inflation cover the year that starts
    in January of `Year`, with the portfolio rebalanced to `stock_pct` once a year.
    """
    if not (0.0 <= float(stock_pct) <= 1.0):
        raise ValueError(f"Stock percentage must be between 0% and 100%, got {float(stock_pct) * 100:.0f}%")

    frame = df.assign(Date=pd.to_datetime(df['Date']))
    january = frame[frame['Date'].dt.month == 1].sort_values('Date').reset_index(drop=True)
    years = january['Date'].dt.year
    if start_year is not None:
        january = january[years >= int(start_year)]
    if end_year is not None:
        # The last return needs the following January
        january = january[january['Date'].dt.year <= int(end_year) + 1]
    january = january.reset_index(drop=True)

    stock_prices = january['Real Total Return Price'].to_numpy(dtype=np.float64)
    bond_prices = january['Real Total Bond Returns'].to_numpy(dtype=np.float64)
    cpi = january['CPI'].to_numpy(dtype=np.float64)

    stock_growth = stock_prices[1:] / stock_prices[:-1]
    bond_growth = bond_prices[1:] / bond_prices[:-1]
    gross = float(stock_pct) * stock_growth + (1 - float(stock_pct)) * bond_growth

    return pd.DataFrame({
        'Year': january['Date'].dt.year.to_numpy()[:-1],
        'Real_Return': gross - 1.0,
        'Inflation': cpi[1:] / cpi[:-1] - 1.0,
    })


def estimate_market_assumptions(df, stock_pct=0.75, start_year=None, end_year=None) -> dict:
    """
    Calibrate the sampler's mean/volatility inputs from historical annual data.

    The result can be passed straight to SimulationConfig.replace(**assumptions).
    """
    history = annual_market_history(df, stock_pct=stock_pct, start_year=start_year, end_year=end_year)
    if len(history) < 2:
        raise ValueError(
            f"Need at least two years of history to estimate assumptions, got {len(history)}"
        )

    return {
        'mean_return': float(history['Real_Return'].mean()),
        'return_volatility': float(history['Real_Return'].std(ddof=1)),
        'inflation_mean': float(history['Inflation'].mean()),
        'inflation_volatility': float(history['Inflation'].std(ddof=1)),
    }
