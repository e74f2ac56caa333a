"""Kustomization tooling: inventories, substitution, secure paths, decryption and generation."""

__version__ = "0.1.0"