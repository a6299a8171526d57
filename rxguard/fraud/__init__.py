"""Fraud scoring and claim decisions."""
