"""Search ranking and scoring components.

Contents
- ``fusion``: weighted-sum and RRF rank fusion plus result diagnostics
- ``alpha``: blend weight heuristic and weight selectors
- ``confidence``: composite confidence from independent quality signals
- ``calibration``: piece-wise constant mapping of raw scores
"""
