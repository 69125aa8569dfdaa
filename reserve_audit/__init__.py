"""Solvency audit for concentrated-liquidity AMM pools."""

__version__ = "0.1.0"
