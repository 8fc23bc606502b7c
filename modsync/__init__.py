"""modsync — distribute versioned file bundles and keep installations in sync.

An authority holds a Live and a Staged desired state, reconciles them into real
install locations, and serves a hash manifest that remote installations use to
detect and repair drift.
"""

__version__ = "0.1.0"
