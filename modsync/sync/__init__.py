"""Reconciliation — the engine that moves installations towards the desired state.

This package provides the primitives for:
- Applying the staged state: installs, queued removals, locked-file deferral
- The deferred-apply script that finishes work after the authority stops
- Drift detection: comparing a local installation against the manifest
- Exclusion patterns shared by the manifest and the drift detector
"""
