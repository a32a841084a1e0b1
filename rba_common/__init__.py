"""Utilities shared by the RBA backend and its tooling.

This package hosts modules that are independent of the estimation engine
(KPI logging, trajectory metrics, plotting).
"""
