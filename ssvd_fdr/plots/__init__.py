"""Figures for eFDR experiment results."""
