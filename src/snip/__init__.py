"""
Snip URL shortener - update and backup orchestration.

This package implements the self-update subsystem of the Snip URL shortener:
release checking against the release registry, point-in-time backups, the
maintenance-mode gate, and the update orchestrator that ties them together.
"""

__version__ = "1.0.3"
