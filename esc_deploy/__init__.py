"""Provisioning orchestrator for the ESC Django application stack."""

from esc_deploy.settings import VERSION

__version__ = VERSION
