"""Utility modules for Seshat."""

from seshat.shared.utils.secrets import SecretManagerClient, get_secret_manager

__all__ = ["SecretManagerClient", "get_secret_manager"]
