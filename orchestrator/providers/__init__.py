"""Scoring providers: one remote backend each, behind BaseProvider."""
