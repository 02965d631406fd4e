"""kubetally - Kubernetes pod usage and cost tracker."""

__version__ = "0.4.0"
