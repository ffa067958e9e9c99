"""Quality monitoring for the retrieval engine.

Contents
- ``drift_monitor``: nightly closed-loop adjustment of the default alpha
- ``quality``: sample/audit types and the RAGAS-style evaluator client
- ``repository``: PostgreSQL storage for samples and audit records
"""
