"""Completion reconciliation: snapshot diff, classification, scoring and polling."""
