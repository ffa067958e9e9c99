"""Operational scripts for the retrieval platform.

Scripts include:
- ``fit_calibration.py``: fit the impact score calibration table from a gold set.
"""
