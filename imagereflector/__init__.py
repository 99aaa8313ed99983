"""Image repository and image policy resources, and a reconciler that records a policy's latest image."""

__version__ = "0.1.0"
__all__ = ["meta", "v1beta1", "v1beta2", "controller"]