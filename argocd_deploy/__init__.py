"""Deploy ArgoCD from an ordered set of manifests and wait for it to converge."""

__version__ = "1.0.0"
