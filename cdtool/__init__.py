"""Convert disk images into container disk images with Kubernetes Jobs."""

__version__ = "0.1.0"
