"""
Workload Scanner Operator

Watches workload pods, runs one Trivy scan Job per workload and stores the
results as VulnerabilityReport objects owned by the workload.
"""

__version__ = "0.1.0"
