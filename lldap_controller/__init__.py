"""Kubernetes controller for LLDAP service users."""

__version__ = "0.1.0"
