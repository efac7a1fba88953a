"""
Pod Healer
==========

Self-healing control loop for Kubernetes workloads.

- Scan: list pods matching the configured selector
- Detect: classify unhealthy pods with deterministic heuristics
- Decide: gate each workload through the cooldown / circuit-breaker store
- Act: delete the pod or roll out its owning controller, with retries
"""

__version__ = "0.1.0"
__author__ = "Pod Healer Team"
