"""
diffnet_report: Differential gene connectivity report for microarray
experiments comparing a control and a treatment state.

Analyses:
    1. reshape            — wide microarray table → control / treatment matrices
    2. connectivity_test  — permutation test of individual gene connectivity
    3. networks           — per-condition association networks of hit genes
    4. report             — aggregation, filtering, and table rendering
"""

__version__ = "0.1.0"
