"""
REST API for the workflow control plane

Ticket: 0091_workflow_control_plane
"""
