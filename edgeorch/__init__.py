"""edgeorch: orchestration agent for edge devices.

Keeps the apps running on a device in line with a declared target state:
 - one driver contract with Docker and k3s backends
 - a reconciliation engine (diff, plan, apply with retries and backoff)
 - per-service health monitoring and error escalation
 - a small management API and CLI on top
"""
