"""Common utilities shared by the single-robot core and the distributed backend.

This package hosts modules that are backend-agnostic (data model, SE(d) and
lifted-pose geometry, KPI logging, CSV persistence, metrics and plotting).
"""
