"""HTTP management server for eBPF components, tasks and clusters, with Prometheus task metrics."""

__version__ = "0.1.0"