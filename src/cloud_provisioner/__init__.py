"""Declarative provisioning of cloud virtual machines, key pairs and security groups."""

__version__ = "0.1.0"
