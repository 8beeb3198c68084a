"""Provisioning pipeline: orchestration, ports, remediation and rollback."""
