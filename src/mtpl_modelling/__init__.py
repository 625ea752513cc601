"""Exploration and Bayesian claim-frequency modelling of the French MTPL datasets."""

__version__ = "0.1.0"
