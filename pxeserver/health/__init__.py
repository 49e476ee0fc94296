"""Health probes, monitoring, metrics, and the health endpoint."""
