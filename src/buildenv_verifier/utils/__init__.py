"""Utilities for buildenv-verifier."""
