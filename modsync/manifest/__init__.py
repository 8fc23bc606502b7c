"""Manifest generation for remote drift detection."""
