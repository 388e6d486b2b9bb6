"""
Control Plane Engine: SQLite-backed workflow state for multi-agent feature work.

Ticket: 0091_workflow_control_plane
Design: DESIGN.md

This package is the engine core. Each module owns one subsystem (features,
gating, coordination, durations, iterations, knowledge, propagation,
evaluation) and takes an open sqlite3 connection as its first argument.
Project-specific settings come from the consuming repository's
.controlplane/config.yaml.
"""
